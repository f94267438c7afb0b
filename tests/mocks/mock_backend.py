"""
In-memory MCP backend for tests.

``MockBackend`` holds the tools a backend advertises and the knobs tests
turn (latency, reachability, a broken connection). Every session
connection gets its own ``MockTransport`` from ``backend.transport()``.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

from capgate.bridge.errors import BackendCallError, TransportError
from capgate.bridge.supervisor import Supervisor
from capgate.bridge.transport import PROTOCOL_VERSION, Transport
from capgate.validation.config import GatewayConfig

Handler = Callable[[Dict[str, Any]], Dict[str, Any]]

ECHO_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string", "description": "Text to echo back"}},
    "required": ["text"],
}


def structured(value: Dict[str, Any]) -> Dict[str, Any]:
    """A tools/call result carrying structured content."""
    return {
        "content": [{"type": "text", "text": json.dumps(value)}],
        "structuredContent": value,
    }


def text(value: str) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": value}]}


class MockBackend:
    """A fake MCP server shared by all transports opened against it."""

    def __init__(self, name: str = "mock"):
        self.name = name
        self.tools: List[Any] = []
        self.handlers: Dict[str, Handler] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.delay = 0.0
        self.reachable = True
        self.broken = False
        self.cancelled = 0
        self.connects = 0
        self.list_result: Optional[Dict[str, Any]] = None
        self.transports: List["MockTransport"] = []

    def add_tool(
        self,
        name: str,
        handler: Optional[Handler] = None,
        input_schema: Optional[Dict[str, Any]] = None,
        output_schema: Optional[Dict[str, Any]] = None,
        read_only: Optional[bool] = None,
        description: str = "",
    ) -> "MockBackend":
        tool: Dict[str, Any] = {
            "name": name,
            "description": description or f"{name} tool",
            "inputSchema": input_schema or {"type": "object", "properties": {}},
        }
        if output_schema is not None:
            tool["outputSchema"] = output_schema
        if read_only is not None:
            tool["annotations"] = {"readOnlyHint": read_only}
        self.tools = [t for t in self.tools if not (isinstance(t, dict) and t.get("name") == name)]
        self.tools.append(tool)
        self.handlers[name] = handler or (lambda args: structured({}))
        return self

    def remove_tool(self, name: str) -> None:
        self.tools = [t for t in self.tools if not (isinstance(t, dict) and t.get("name") == name)]
        self.handlers.pop(name, None)

    def add_echo(self) -> "MockBackend":
        return self.add_tool(
            "echo",
            lambda args: structured({"text": args["text"]}),
            input_schema=ECHO_SCHEMA,
            output_schema=ECHO_SCHEMA,
            description="Echo the input text",
        )

    def notify_changed(self) -> None:
        """Push a list_changed notification over every open connection."""
        for transport in self.transports:
            if transport.is_connected:
                transport._dispatch_notification("notifications/tools/list_changed", {})

    def transport(self) -> "MockTransport":
        transport = MockTransport(self)
        self.transports.append(transport)
        return transport


class MockTransport(Transport):
    """Transport answering MCP requests from a ``MockBackend``."""

    def __init__(self, backend: MockBackend):
        super().__init__()
        self.backend = backend
        self.address = f"memory://{backend.name}"
        self._open = False

    async def connect(self) -> None:
        if not self.backend.reachable:
            raise TransportError(f"connection refused: {self.address}")
        self.backend.connects += 1
        self._open = True

    async def close(self) -> None:
        self._open = False

    @property
    def is_connected(self) -> bool:
        return self._open

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        self._check()

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._check()
        params = params or {}
        if method == "initialize":
            return {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {"listChanged": True}},
                "serverInfo": {"name": self.backend.name, "version": "1.0"},
            }
        if method == "ping":
            return {}
        if method == "tools/list":
            if self.backend.list_result is not None:
                return self.backend.list_result
            return {"tools": list(self.backend.tools)}
        if method == "tools/call":
            return await self._call(params["name"], params.get("arguments") or {})
        raise BackendCallError("jsonrpc:-32601", f"Method not found: {method}")

    async def _call(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        self.backend.calls.append((name, arguments))
        if self.backend.delay:
            try:
                await asyncio.sleep(self.backend.delay)
            except asyncio.CancelledError:
                self.backend.cancelled += 1
                raise
        self._check()
        handler = self.backend.handlers.get(name)
        if handler is None:
            raise BackendCallError("jsonrpc:-32602", f"Unknown tool: {name}")
        return handler(arguments)

    def _check(self) -> None:
        if not self._open:
            raise TransportError(f"not connected to {self.address}")
        if self.backend.broken:
            raise TransportError(f"connection reset by {self.address}")


def fast_config(*backend_ids: str, **invocation: Any) -> GatewayConfig:
    """Gateway configuration with short timers, one memory backend per id."""
    return GatewayConfig(
        invocation={"default_timeout": 2.0, "max_concurrency": 8, "overload_wait": 0.05, **invocation},
        reconnect={
            "connect_timeout": 1.0,
            "initial_backoff": 0.01,
            "max_backoff": 0.05,
            "probe_interval": 0.02,
            "probe_failures": 3,
            "refresh_interval": 0,
        },
        backends={backend_id: {"url": f"memory://{backend_id}"} for backend_id in backend_ids},
    )


def mock_supervisor(config: GatewayConfig, backends: Dict[str, MockBackend], **kwargs: Any) -> Supervisor:
    """Supervisor whose sessions connect to ``backends`` instead of real servers."""
    return Supervisor(
        config,
        transport_factory=lambda backend_id, _cfg: backends[backend_id].transport(),
        **kwargs,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    give_up = loop.time() + timeout
    while loop.time() < give_up:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
