"""
Backend session - one backend's connection, capability set and liveness.

State machine::

    Disconnected → Connecting → Discovering → Ready ⇄ Degraded
                       ↑                        │        │
                       └──── Reconnecting ←─────┴────────┘

A background task drives the machine; invocations run concurrently on
top of it, bounded by a per-backend semaphore.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

from capgate.bridge.errors import (
    BackendCallError,
    BackendOverloadedError,
    BackendUnavailableError,
    BackendUnreachableError,
    BusinessError,
    InvocationCancelledError,
    InvocationTimeoutError,
    TransportError,
)
from capgate.bridge.schema import BackendState, InvocationContext, OperationDescriptor
from capgate.bridge.transport import Transport, content_text
from capgate.validation.config import ReconnectConfig

logger = logging.getLogger(__name__)

DiscoveryListener = Callable[["BackendSession", List[OperationDescriptor]], None]
StateListener = Callable[["BackendSession", BackendState, BackendState], None]


def backoff_delay(attempt: int, initial: float, cap: float, rng: Optional[random.Random] = None) -> float:
    """Capped exponential backoff with jitter in [delay/2, delay]."""
    rng = rng or random
    delay = min(cap, initial * (2 ** min(max(attempt - 1, 0), 30)))
    return rng.uniform(delay / 2, delay)


def extract_payload(result: Dict[str, Any], structured: bool) -> Dict[str, Any]:
    """Turn an MCP ``tools/call`` result into the canonical response payload."""
    if isinstance(result.get("structuredContent"), dict):
        return result["structuredContent"]
    content = result.get("content") or []
    if structured:
        text = content_text(result)
        try:
            decoded = json.loads(text)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            return decoded
    return {"content": content}


class BackendSession:
    """
    Own one backend: connect, discover, serve invocations, recover.

    The session never touches the route registry. It reports discovery
    results and state changes to its listeners (the supervisor).
    """

    def __init__(
        self,
        backend_id: str,
        transport_factory: Callable[[], Transport],
        *,
        address: str = "",
        max_concurrency: int = 8,
        default_timeout: float = 30.0,
        overload_wait: float = 0.25,
        reconnect: Optional[ReconnectConfig] = None,
        on_discovery: Optional[DiscoveryListener] = None,
        on_state: Optional[StateListener] = None,
        rng: Optional[random.Random] = None,
    ):
        self.backend_id = backend_id
        self.address = address
        self.max_concurrency = max_concurrency
        self.default_timeout = default_timeout
        self.overload_wait = overload_wait
        self.reconnect = reconnect or ReconnectConfig()
        self.on_discovery = on_discovery
        self.on_state = on_state
        self.last_error: Optional[str] = None
        self.last_discovery: Optional[float] = None
        self.in_flight = 0

        self._transport_factory = transport_factory
        self._transport: Optional[Transport] = None
        self._users: Dict[int, int] = {}
        self._operations: Dict[str, OperationDescriptor] = {}
        self._state = BackendState.DISCONNECTED
        self._slots = asyncio.Semaphore(max_concurrency)
        self._wake = asyncio.Event()
        self._degraded_reason: Optional[str] = None
        # reason the latest connection attempt failed, cleared once a handshake succeeds
        self._connect_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._retiring: set = set()
        self._rng = rng or random.Random()

    # ── Introspection ─────────────────────────────────────────────────────

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def operations(self) -> List[OperationDescriptor]:
        return list(self._operations.values())

    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "address": self.address,
            "operations": len(self._operations),
            "in_flight": self.in_flight,
            "max_concurrency": self.max_concurrency,
            "last_error": self.last_error,
            "last_discovery": self.last_discovery,
        }

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        """Launch the background task driving this session."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name=f"capgate-session-{self.backend_id}")
        self._task.add_done_callback(self._task_finished)

    async def stop(self) -> None:
        """Stop the session for good and release its transport."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()
        for retiring in list(self._retiring):
            retiring.cancel()
        self._set_state(BackendState.REMOVED)

    def request_refresh(self) -> None:
        """Ask for re-discovery at the next opportunity."""
        self._wake.set()

    def mark_degraded(self, reason: str) -> None:
        """Record a transport failure seen while serving a call."""
        self.last_error = reason
        if self._state is BackendState.READY:
            self._degraded_reason = reason
            self._set_state(BackendState.DEGRADED)
            self._wake.set()

    def _task_finished(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Session task for %s crashed", self.backend_id, exc_info=task.exception()
            )

    def _set_state(self, new: BackendState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        logger.info("backend %s: %s -> %s", self.backend_id, old.value, new.value)
        if self.on_state is not None:
            self.on_state(self, old, new)

    # ── State machine ─────────────────────────────────────────────────────

    async def _run(self) -> None:
        attempt = 0
        while True:
            if attempt:
                self._set_state(BackendState.RECONNECTING)
                delay = backoff_delay(
                    attempt, self.reconnect.initial_backoff, self.reconnect.max_backoff, self._rng
                )
                logger.warning(
                    "backend %s: reconnect attempt %d in %.2fs (%s)",
                    self.backend_id, attempt, delay, self.last_error,
                )
                await asyncio.sleep(delay)

            self._set_state(BackendState.CONNECTING)
            try:
                await asyncio.wait_for(self._open(), timeout=self.reconnect.connect_timeout)
            except asyncio.TimeoutError:
                self._connect_error = f"no handshake within {self.reconnect.connect_timeout}s"
                self.last_error = f"BackendUnreachable: {self._connect_error}"
                await self._drop_transport()
                attempt += 1
                continue
            except (TransportError, BackendCallError, OSError) as exc:
                self._connect_error = str(exc)
                self.last_error = f"BackendUnreachable: {exc}"
                await self._drop_transport()
                attempt += 1
                continue

            self._connect_error = None
            self._set_state(BackendState.DISCOVERING)
            try:
                await self._discover()
            except TransportError as exc:
                self.last_error = f"discovery failed: {exc}"
                await self._drop_transport()
                attempt += 1
                continue

            attempt = 0
            self._set_state(BackendState.READY)
            await self._serve()
            await self._drop_transport()
            attempt = 1

    async def _open(self) -> None:
        transport = self._transport_factory()
        transport.on_notification = self._on_notification
        self._transport = transport
        await transport.connect()
        await transport.initialize()

    async def _discover(self) -> None:
        """Fetch the operation list and hand it to the discovery listener."""
        transport = self._require_transport()
        try:
            raw_tools = await asyncio.wait_for(
                transport.list_tools(), timeout=self.reconnect.connect_timeout
            )
        except asyncio.TimeoutError as exc:
            raise TransportError("discovery timed out") from exc
        except BackendCallError as exc:
            logger.warning("backend %s rejected discovery: %s", self.backend_id, exc)
            raw_tools = []
        except ValueError as exc:
            logger.warning("backend %s returned a malformed tool list: %s", self.backend_id, exc)
            raw_tools = []

        operations: List[OperationDescriptor] = []
        for raw in raw_tools:
            try:
                operations.append(OperationDescriptor.from_mcp(raw))
            except ValueError as exc:
                logger.warning("backend %s: skipping tool entry: %s", self.backend_id, exc)

        self._operations = {op.name: op for op in operations}
        self.last_discovery = time.time()
        if self.on_discovery is not None:
            self.on_discovery(self, operations)

    async def _serve(self) -> None:
        """Stay Ready until probing gives up on the backend."""
        while True:
            await self._sleep_until_woken(self.reconnect.refresh_interval or None)
            if self._degraded_reason is not None:
                if not await self._probe():
                    return
                continue
            try:
                await self._discover()
            except TransportError as exc:
                self.mark_degraded(f"re-discovery failed: {exc}")

    async def _probe(self) -> bool:
        failures = 0
        while failures < self.reconnect.probe_failures:
            await asyncio.sleep(self.reconnect.probe_interval)
            try:
                transport = self._require_transport()
                await asyncio.wait_for(transport.ping(), timeout=self.reconnect.connect_timeout)
                self._degraded_reason = None
                await self._discover()
            except BackendCallError:
                # it answered; an unsupported ping still proves liveness
                self._degraded_reason = None
                try:
                    await self._discover()
                except TransportError as exc:
                    failures += 1
                    self._degraded_reason = str(exc)
                    continue
            except (TransportError, asyncio.TimeoutError) as exc:
                failures += 1
                self._degraded_reason = str(exc) or "probe timed out"
                logger.warning(
                    "backend %s: probe %d/%d failed: %s",
                    self.backend_id, failures, self.reconnect.probe_failures, self._degraded_reason,
                )
                continue
            self._set_state(BackendState.READY)
            return True
        self.last_error = f"unreachable after {failures} probes: {self._degraded_reason}"
        self._degraded_reason = None
        return False

    async def _sleep_until_woken(self, timeout: Optional[float]) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            self._wake.clear()

    def _on_notification(self, method: str, params: Dict[str, Any]) -> None:
        if method == "notifications/tools/list_changed":
            logger.info("backend %s announced a capability change", self.backend_id)
            self.request_refresh()

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise TransportError(f"backend {self.backend_id} has no open transport")
        return self._transport

    async def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        if self._users.get(id(transport)):
            # calls dispatched before the transition run to their own deadline
            task = asyncio.create_task(self._retire(transport))
            self._retiring.add(task)
            task.add_done_callback(self._retiring.discard)
        else:
            await transport.close()

    async def _retire(self, transport: Transport) -> None:
        give_up = time.monotonic() + self.default_timeout
        try:
            while self._users.get(id(transport)) and time.monotonic() < give_up:
                await asyncio.sleep(0.05)
        finally:
            await transport.close()

    # ── Invocation ────────────────────────────────────────────────────────

    async def invoke(self, ctx: InvocationContext) -> Dict[str, Any]:
        """
        Forward one call to the backend within ``ctx``'s deadline.

        Raises a ``GatewayError`` subclass on every failure path; transport
        failures also move the session to Degraded.
        """
        if self._state is not BackendState.READY or self._transport is None:
            if self._connect_error is not None and self._state in (
                BackendState.CONNECTING,
                BackendState.RECONNECTING,
            ):
                raise BackendUnreachableError(
                    f"cannot connect: {self._connect_error}", ctx.backend, ctx.operation
                )
            raise BackendUnavailableError(
                f"backend is {self._state.value}", ctx.backend, ctx.operation
            )
        await self._acquire_slot(ctx)
        transport = self._transport
        key = id(transport)
        self.in_flight += 1
        self._users[key] = self._users.get(key, 0) + 1
        try:
            return await self._call(transport, ctx)
        finally:
            self.in_flight -= 1
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
            self._slots.release()

    async def _acquire_slot(self, ctx: InvocationContext) -> None:
        if not self._slots.locked():
            await self._slots.acquire()
            return
        wait = min(self.overload_wait, ctx.remaining())
        if wait > 0:
            try:
                await asyncio.wait_for(self._slots.acquire(), timeout=wait)
                return
            except asyncio.TimeoutError:
                pass
        raise BackendOverloadedError(
            f"{self.max_concurrency} invocation(s) already in flight",
            ctx.backend,
            ctx.operation,
        )

    async def _call(self, transport: Transport, ctx: InvocationContext) -> Dict[str, Any]:
        call = asyncio.ensure_future(transport.call_tool(ctx.operation, ctx.payload))
        cancelled = asyncio.ensure_future(ctx.cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancelled}, timeout=ctx.remaining(), return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            cancelled.cancel()

        if call not in done:
            call.cancel()
            await asyncio.gather(call, return_exceptions=True)
            if ctx.is_cancelled:
                raise InvocationCancelledError(
                    "caller went away before the backend answered", ctx.backend, ctx.operation
                )
            raise InvocationTimeoutError(
                f"no response before the deadline ({ctx.elapsed_ms()} ms)", ctx.backend, ctx.operation
            )

        try:
            result = call.result()
        except BackendCallError as exc:
            raise BusinessError(exc.message, ctx.backend, ctx.operation, details={"name": exc.name}) from exc
        except TransportError as exc:
            self.mark_degraded(str(exc))
            raise BackendUnavailableError(str(exc), ctx.backend, ctx.operation) from exc

        operation = self._operations.get(ctx.operation)
        structured = bool(operation and operation.output_schema)
        return extract_payload(result, structured)
