"""Backend communication over MCP JSON-RPC (stdio subprocess or HTTP)."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

import httpx

from capgate import __version__
from capgate.bridge.errors import BackendCallError, TransportError

if TYPE_CHECKING:
    from capgate.validation.config import BackendConfig

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
MAX_LIST_PAGES = 100

NotificationHandler = Callable[[str, Dict[str, Any]], None]


def unwrap_response(response: Dict[str, Any]) -> Dict[str, Any]:
    """Return the ``result`` of a JSON-RPC response or raise its ``error``."""
    if "error" in response and response["error"] is not None:
        err = response["error"]
        if isinstance(err, dict):
            raise BackendCallError(f"jsonrpc:{err.get('code')}", str(err.get("message", "")))
        raise BackendCallError("jsonrpc", str(err))
    result = response.get("result", {})
    return result if isinstance(result, dict) else {"value": result}


def content_text(result: Dict[str, Any]) -> str:
    """Join the text parts of an MCP ``content`` list."""
    parts = []
    for part in result.get("content") or []:
        if isinstance(part, dict):
            parts.append(str(part.get("text", "")))
        else:
            parts.append(str(part))
    return "\n".join(p for p in parts if p)


class Transport(ABC):
    """
    One connection to one backend, speaking MCP.

    Subclasses implement the JSON-RPC plumbing (``connect``, ``close``,
    ``request``, ``notify``); the MCP calls themselves are shared.
    """

    address: str = ""

    def __init__(self) -> None:
        self.on_notification: Optional[NotificationHandler] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection. Raises ``TransportError`` on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    @abstractmethod
    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a request and return its result."""

    @abstractmethod
    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification (no response expected)."""

    def _dispatch_notification(self, method: str, params: Dict[str, Any]) -> None:
        if self.on_notification is None:
            return
        try:
            self.on_notification(method, params)
        except Exception:
            logger.exception("Notification handler failed for %s", method)

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def initialize(self) -> Dict[str, Any]:
        """Perform the MCP initialize handshake."""
        result = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "capgate", "version": __version__},
        })
        await self.notify("notifications/initialized")
        return result

    async def list_tools(self) -> List[Any]:
        """Fetch the full tool list, following pagination cursors."""
        tools: List[Any] = []
        cursor = None
        for _ in range(MAX_LIST_PAGES):
            result = await self.request("tools/list", {"cursor": cursor} if cursor else None)
            page = result.get("tools", [])
            if not isinstance(page, list):
                raise ValueError(f"tools/list returned a non-list 'tools': {type(page).__name__}")
            tools.extend(page)
            cursor = result.get("nextCursor")
            if not cursor:
                return tools
        logger.warning("%s: stopped paging tools/list after %d pages", self.address, MAX_LIST_PAGES)
        return tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Call a tool; an ``isError`` result raises ``BackendCallError``."""
        result = await self.request("tools/call", {"name": name, "arguments": arguments or {}})
        if result.get("isError"):
            raise BackendCallError(name, content_text(result) or "tool reported an error")
        return result

    async def ping(self) -> None:
        await self.request("ping")


class StdioTransport(Transport):
    """
    Communicate with an MCP server over stdin/stdout.

    A single reader task demultiplexes responses by request id, so any
    number of requests may be in flight at once.
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        super().__init__()
        self.command = command
        self.args = args or []
        self.env = env or {}
        self.address = " ".join([command] + self.args)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._stderr: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._background: Set[asyncio.Task] = set()
        self._request_id = 0
        self._write_lock = asyncio.Lock()
        self._alive = False

    async def connect(self) -> None:
        """Spawn the MCP server subprocess."""
        if self.is_connected:
            return

        merged_env = {**os.environ, **self.env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
                limit=16 * 1024 * 1024,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise TransportError(f"MCP server command not runnable: {self.command} ({exc})") from exc

        self._alive = True
        self._reader = asyncio.create_task(self._read_loop())
        self._stderr = asyncio.create_task(self._drain_stderr())

    async def close(self) -> None:
        """Terminate the MCP server subprocess."""
        for task in (self._reader, self._stderr):
            if task is not None and not task.done():
                task.cancel()
        self._alive = False
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=5)
            except (asyncio.TimeoutError, ProcessLookupError):
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
        self._fail_pending(TransportError("transport closed"))

    @property
    def is_connected(self) -> bool:
        return self._alive and self._process is not None and self._process.returncode is None

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.is_connected:
            raise TransportError(f"not connected to {self.address}")

        self._request_id += 1
        request_id = self._request_id
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params:
            message["params"] = params

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._write(message)
            response = await future
        except asyncio.CancelledError:
            self._spawn(self._cancel_remote(request_id))
            raise
        finally:
            self._pending.pop(request_id, None)
        return unwrap_response(response)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            message["params"] = params
        await self._write(message)

    # ── Internals ─────────────────────────────────────────────────────────

    async def _write(self, message: Dict[str, Any]) -> None:
        if not self.is_connected:
            raise TransportError(f"not connected to {self.address}")
        line = json.dumps(message) + "\n"
        try:
            async with self._write_lock:
                self._process.stdin.write(line.encode())
                await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            raise TransportError(f"MCP transport error: {exc}") from exc

    async def _read_loop(self) -> None:
        try:
            while self._process is not None:
                raw = await self._process.stdout.readline()
                if not raw:
                    break
                try:
                    message = json.loads(raw.decode())
                except (UnicodeDecodeError, json.JSONDecodeError):
                    logger.debug("%s: ignoring non-JSON output line", self.address)
                    continue
                if isinstance(message, dict):
                    await self._handle_message(message)
        except (ValueError, OSError) as exc:
            logger.warning("%s: reader stopped: %s", self.address, exc)
        finally:
            self._alive = False
            self._fail_pending(TransportError(f"MCP server closed connection: {self.address}"))

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        if "method" not in message:
            future = self._pending.get(message.get("id"))
            if future is not None and not future.done():
                future.set_result(message)
            return
        if "id" in message:
            # server-to-client request; only ping is meaningful for a gateway
            if message["method"] == "ping":
                reply = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
            else:
                reply = {
                    "jsonrpc": "2.0",
                    "id": message["id"],
                    "error": {"code": -32601, "message": "Method not found"},
                }
            try:
                await self._write(reply)
            except TransportError:
                pass
            return
        self._dispatch_notification(message["method"], message.get("params") or {})

    async def _drain_stderr(self) -> None:
        while self._process is not None:
            line = await self._process.stderr.readline()
            if not line:
                return
            logger.debug("%s stderr: %s", self.address, line.decode(errors="replace").rstrip())

    async def _cancel_remote(self, request_id: int) -> None:
        try:
            await self.notify("notifications/cancelled", {"requestId": request_id, "reason": "caller cancelled"})
        except TransportError:
            pass

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _fail_pending(self, exc: Exception) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()


class HttpTransport(Transport):
    """Communicate with an MCP server that accepts JSON-RPC over HTTP POST."""

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        self._http_transport = http_transport
        self.url = url
        self.address = url
        self.headers = headers or {}
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._session_id: Optional[str] = None
        self._request_id = 0

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"Accept": "application/json, text/event-stream", **self.headers},
                timeout=self.timeout,
                transport=self._http_transport,
            )

    async def close(self) -> None:
        client, self._client = self._client, None
        self._session_id = None
        if client is not None:
            await client.aclose()

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._request_id += 1
        request_id = self._request_id
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params:
            message["params"] = params
        response = await self._post(message)
        payload = self._decode(response, request_id)
        return unwrap_response(payload)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            message["params"] = params
        await self._post(message)

    async def _post(self, message: Dict[str, Any]) -> httpx.Response:
        if self._client is None:
            raise TransportError(f"not connected to {self.url}")
        headers = {"Mcp-Session-Id": self._session_id} if self._session_id else {}
        try:
            response = await self._client.post(self.url, json=message, headers=headers)
        except httpx.HTTPError as exc:
            raise TransportError(f"HTTP transport error for {self.url}: {exc}") from exc

        if response.status_code >= 500:
            raise TransportError(f"{self.url} answered HTTP {response.status_code}")
        if response.status_code >= 400:
            raise BackendCallError(f"http:{response.status_code}", response.text[:500])
        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self._session_id = session_id
        return response

    def _decode(self, response: httpx.Response, request_id: int) -> Dict[str, Any]:
        content_type = response.headers.get("content-type", "")
        try:
            if content_type.startswith("text/event-stream"):
                return self._decode_event_stream(response.text, request_id)
            payload = response.json()
        except ValueError as exc:
            raise TransportError(f"{self.url} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise TransportError(f"{self.url} returned a non-object JSON-RPC response")
        return payload

    def _decode_event_stream(self, text: str, request_id: int) -> Dict[str, Any]:
        for line in text.splitlines():
            if not line.startswith("data:"):
                continue
            message = json.loads(line[5:].strip())
            if not isinstance(message, dict):
                continue
            if message.get("id") == request_id:
                return message
            if "method" in message and "id" not in message:
                self._dispatch_notification(message["method"], message.get("params") or {})
        raise TransportError(f"{self.url} event stream carried no response for request {request_id}")


def create_transport(config: "BackendConfig") -> Transport:
    """Build the transport a backend configuration asks for."""
    if config.url:
        return HttpTransport(config.url, headers=config.headers, timeout=config.request_timeout)
    return StdioTransport(config.command, args=config.args, env=config.env)
