"""Supervisor - owns the backend sessions and is the only writer to the route registry."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from capgate.bridge.registry import RouteConflictError, RouteRegistry
from capgate.bridge.schema import BackendState, OperationDescriptor
from capgate.bridge.session import BackendSession
from capgate.bridge.translator import translate_all
from capgate.bridge.transport import Transport, create_transport
from capgate.validation.config import BackendConfig, GatewayConfig, validate_backend_id

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str, BackendConfig], Transport]

# states in which a backend's routes must not be visible
WITHDRAWN_STATES = (BackendState.RECONNECTING, BackendState.DISCONNECTED, BackendState.REMOVED)


class Supervisor:
    """
    Drive every backend session and mirror their state into the registry.

    Sessions report discoveries and state changes through callbacks; the
    supervisor turns those into registry swaps. Callbacks from a session
    that has since been replaced or removed are ignored, so a stale
    session can never clobber its successor's routes.
    """

    def __init__(
        self,
        config: GatewayConfig,
        registry: Optional[RouteRegistry] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.config = config
        self.registry = registry or RouteRegistry()
        self._transport_factory = transport_factory or (lambda _id, cfg: create_transport(cfg))
        self._sessions: Dict[str, BackendSession] = {}
        self._backends: Dict[str, BackendConfig] = {}

    @property
    def route_prefix(self) -> str:
        return self.config.server.route_prefix

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start a session for every enabled backend in the configuration."""
        for backend_id, backend in self.config.enabled_backends().items():
            await self.add_backend(backend_id, backend)

    async def stop(self) -> None:
        for backend_id in list(self._sessions):
            await self.remove_backend(backend_id)

    async def add_backend(self, backend_id: str, backend: BackendConfig) -> BackendSession:
        """
        Start serving ``backend`` under ``backend_id``.

        Re-adding an existing id purges the old session and its routes
        before the new session begins discovery.
        """
        validate_backend_id(backend_id)
        if backend_id in self._sessions:
            await self.remove_backend(backend_id)

        session = BackendSession(
            backend_id,
            lambda: self._transport_factory(backend_id, backend),
            address=backend.address,
            max_concurrency=self.config.concurrency_for(backend),
            default_timeout=self.config.timeout_for(backend),
            overload_wait=self.config.invocation.overload_wait,
            reconnect=self.config.reconnect,
            on_discovery=self._apply_discovery,
            on_state=self._apply_state,
        )
        self._sessions[backend_id] = session
        self._backends[backend_id] = backend
        session.start()
        logger.info("backend %s added (%s)", backend_id, backend.address)
        return session

    async def remove_backend(self, backend_id: str) -> bool:
        session = self._sessions.pop(backend_id, None)
        self._backends.pop(backend_id, None)
        if session is None:
            return False
        removed = self.registry.remove_backend(backend_id)
        await session.stop()
        logger.info("backend %s removed (%d routes withdrawn)", backend_id, removed)
        return True

    def refresh(self, backend_id: str) -> bool:
        """Request re-discovery for one backend."""
        session = self._sessions.get(backend_id)
        if session is None:
            return False
        session.request_refresh()
        return True

    async def wait_ready(self, timeout: float = 10.0) -> bool:
        """Wait until every session is Ready. Returns False on timeout."""
        give_up = time.monotonic() + timeout
        while time.monotonic() < give_up:
            if all(s.state is BackendState.READY for s in self._sessions.values()):
                return True
            await asyncio.sleep(0.05)
        return all(s.state is BackendState.READY for s in self._sessions.values())

    # ── Lookup ────────────────────────────────────────────────────────────

    def session(self, backend_id: str) -> Optional[BackendSession]:
        return self._sessions.get(backend_id)

    def sessions(self) -> Dict[str, BackendSession]:
        return dict(self._sessions)

    def backend_config(self, backend_id: str) -> Optional[BackendConfig]:
        return self._backends.get(backend_id)

    # ── Session callbacks ─────────────────────────────────────────────────

    def _is_current(self, session: BackendSession) -> bool:
        return self._sessions.get(session.backend_id) is session

    def _apply_discovery(self, session: BackendSession, operations: List[OperationDescriptor]) -> None:
        if not self._is_current(session):
            return
        backend_id = session.backend_id
        routes = translate_all(operations, backend_id, self.route_prefix)
        fingerprints = frozenset(route.fingerprint for route in routes)
        if self.registry.has_backend(backend_id) and self.registry.fingerprints(backend_id) == fingerprints:
            logger.debug("backend %s: capabilities unchanged", backend_id)
            return
        try:
            self.registry.replace_backend(backend_id, session, routes)
        except RouteConflictError as exc:
            logger.error("backend %s: routes not registered: %s", backend_id, exc)
            return
        logger.info("backend %s: %d route(s) registered", backend_id, len(routes))

    def _apply_state(self, session: BackendSession, old: BackendState, new: BackendState) -> None:
        if not self._is_current(session):
            return
        if new in WITHDRAWN_STATES:
            removed = self.registry.remove_backend(session.backend_id)
            if removed:
                logger.warning(
                    "backend %s is %s: %d route(s) withdrawn", session.backend_id, new.value, removed
                )

    # ── Reporting ─────────────────────────────────────────────────────────

    def health(self) -> Dict[str, Any]:
        snapshot = self.registry.snapshot()
        backends = {}
        for backend_id, session in sorted(self._sessions.items()):
            entry = session.status()
            entry["routes"] = len(snapshot.backend_routes(backend_id))
            backends[backend_id] = entry

        if not backends:
            status = "empty"
        elif all(s.state is BackendState.READY for s in self._sessions.values()):
            status = "ok"
        else:
            status = "degraded"
        return {"status": status, "routes": len(snapshot), "backends": backends}
