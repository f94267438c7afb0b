"""Tests for the MCP transports."""

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

from capgate.bridge.errors import BackendCallError, TransportError
from capgate.bridge.transport import (
    HttpTransport,
    StdioTransport,
    content_text,
    create_transport,
    unwrap_response,
)
from capgate.validation.config import BackendConfig

ECHO_SERVER = Path(__file__).parent / "fixtures" / "echo_server.py"


def stdio_transport() -> StdioTransport:
    return StdioTransport(sys.executable, args=[str(ECHO_SERVER)])


class TestHelpers:
    """Tests for JSON-RPC helpers."""

    def test_unwrap_result(self):
        assert unwrap_response({"jsonrpc": "2.0", "id": 1, "result": {"a": 1}}) == {"a": 1}
        assert unwrap_response({"jsonrpc": "2.0", "id": 1, "result": [1]}) == {"value": [1]}

    def test_unwrap_error(self):
        with pytest.raises(BackendCallError) as exc_info:
            unwrap_response({"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad"}})
        assert exc_info.value.name == "jsonrpc:-32602"
        assert exc_info.value.message == "bad"

    def test_content_text(self):
        result = {"content": [{"type": "text", "text": "a"}, {"type": "image"}, {"type": "text", "text": "b"}]}
        assert content_text(result) == "a\nb"
        assert content_text({}) == ""

    def test_create_transport(self):
        http = create_transport(BackendConfig(url="http://crm/mcp", headers={"X-Key": "k"}))
        stdio = create_transport(BackendConfig(command="fs-server", args=["/data"]))

        assert isinstance(http, HttpTransport)
        assert http.headers == {"X-Key": "k"}
        assert isinstance(stdio, StdioTransport)
        assert stdio.address == "fs-server /data"


class TestStdioTransport:
    """Tests for StdioTransport against a real subprocess."""

    @pytest.mark.asyncio
    async def test_session(self):
        transport = stdio_transport()
        notifications = []
        transport.on_notification = lambda method, params: notifications.append(method)
        await transport.connect()
        try:
            info = await transport.initialize()
            assert info["serverInfo"]["name"] == "echo-server"

            tools = await transport.list_tools()
            assert [t["name"] for t in tools] == ["echo", "fail", "announce", "crash"]

            result = await transport.call_tool("echo", {"text": "abc"})
            assert result["structuredContent"] == {"text": "abc"}

            with pytest.raises(BackendCallError) as exc_info:
                await transport.call_tool("fail")
            assert exc_info.value.message == "it broke"

            with pytest.raises(BackendCallError):
                await transport.call_tool("missing")

            await transport.call_tool("announce")
            assert notifications == ["notifications/tools/list_changed"]

            await transport.ping()
        finally:
            await transport.close()
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_concurrent_requests(self):
        transport = stdio_transport()
        await transport.connect()
        try:
            await transport.initialize()
            results = await asyncio.gather(
                *(transport.call_tool("echo", {"text": str(i)}) for i in range(10))
            )
            assert [r["structuredContent"]["text"] for r in results] == [str(i) for i in range(10)]
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_process_exit_fails_pending_calls(self):
        transport = stdio_transport()
        await transport.connect()
        try:
            await transport.initialize()
            with pytest.raises(TransportError):
                await asyncio.wait_for(transport.call_tool("crash"), timeout=5)
            assert not transport.is_connected
            with pytest.raises(TransportError):
                await transport.ping()
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_missing_command(self):
        transport = StdioTransport("capgate-no-such-command")
        with pytest.raises(TransportError):
            await transport.connect()

    @pytest.mark.asyncio
    async def test_request_before_connect(self):
        with pytest.raises(TransportError):
            await stdio_transport().request("ping")


class FakeHttpServer:
    """httpx.MockTransport handler speaking JSON-RPC."""

    def __init__(self, status=200, event_stream=False):
        self.status = status
        self.event_stream = event_stream
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        message = json.loads(request.content)
        self.requests.append((message, dict(request.headers)))
        if self.status != 200:
            return httpx.Response(self.status, text="nope")
        if "id" not in message:
            return httpx.Response(202)
        if message["method"] == "tools/list":
            value = {"tools": [{"name": "echo"}]}
        else:
            value = {"ok": True}
        response = {"jsonrpc": "2.0", "id": message["id"], "result": value}
        headers = {"Mcp-Session-Id": "session-1"}
        if self.event_stream:
            body = (
                'event: message\ndata: {"jsonrpc": "2.0", "method": "notifications/tools/list_changed"}\n\n'
                f"event: message\ndata: {json.dumps(response)}\n\n"
            )
            headers["Content-Type"] = "text/event-stream"
            return httpx.Response(200, text=body, headers=headers)
        return httpx.Response(200, json=response, headers=headers)


def http_transport(server) -> HttpTransport:
    return HttpTransport(
        "http://backend/mcp",
        headers={"Authorization": "Bearer t"},
        http_transport=httpx.MockTransport(server),
    )


class TestHttpTransport:
    """Tests for HttpTransport with a mocked server."""

    @pytest.mark.asyncio
    async def test_json_responses_and_session_header(self):
        server = FakeHttpServer()
        transport = http_transport(server)
        await transport.connect()
        try:
            await transport.initialize()
            tools = await transport.list_tools()
        finally:
            await transport.close()

        assert tools == [{"name": "echo"}]
        methods = [message.get("method") for message, _ in server.requests]
        assert methods == ["initialize", "notifications/initialized", "tools/list"]
        first_headers = server.requests[0][1]
        last_headers = server.requests[-1][1]
        assert first_headers["authorization"] == "Bearer t"
        assert "mcp-session-id" not in first_headers
        assert last_headers["mcp-session-id"] == "session-1"

    @pytest.mark.asyncio
    async def test_event_stream_response(self):
        transport = http_transport(FakeHttpServer(event_stream=True))
        notifications = []
        transport.on_notification = lambda method, params: notifications.append(method)
        await transport.connect()
        try:
            result = await transport.request("ping")
        finally:
            await transport.close()

        assert result == {"ok": True}
        assert notifications == ["notifications/tools/list_changed"]

    @pytest.mark.asyncio
    async def test_overlapping_event_stream_requests(self):
        """Each of two overlapping requests decodes its own response id."""
        server = FakeHttpServer(event_stream=True)

        async def slow(request):
            await asyncio.sleep(0.05)
            return server(request)

        transport = http_transport(slow)
        await transport.connect()
        try:
            results = await asyncio.gather(transport.request("ping"), transport.request("ping"))
        finally:
            await transport.close()

        assert results == [{"ok": True}, {"ok": True}]
        assert sorted(message["id"] for message, _ in server.requests) == [1, 2]

    @pytest.mark.asyncio
    async def test_server_error_is_transport_error(self):
        transport = http_transport(FakeHttpServer(status=503))
        await transport.connect()
        try:
            with pytest.raises(TransportError):
                await transport.ping()
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_client_error_is_call_error(self):
        transport = http_transport(FakeHttpServer(status=404))
        await transport.connect()
        try:
            with pytest.raises(BackendCallError) as exc_info:
                await transport.ping()
        finally:
            await transport.close()
        assert exc_info.value.name == "http:404"

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        transport = http_transport(refuse)
        await transport.connect()
        try:
            with pytest.raises(TransportError):
                await transport.initialize()
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_request_before_connect(self):
        with pytest.raises(TransportError):
            await http_transport(FakeHttpServer()).ping()
