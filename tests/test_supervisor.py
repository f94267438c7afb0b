"""Tests for the supervisor: registry ownership across backend lifecycles."""

import asyncio

import pytest

from capgate.bridge.errors import BackendUnavailableError
from capgate.bridge.registry import RouteRegistry
from capgate.bridge.schema import BackendState, InvocationContext, OperationDescriptor
from capgate.validation.config import BackendConfig
from tests.mocks.mock_backend import MockBackend, fast_config, mock_supervisor, wait_until


class RecordingRegistry(RouteRegistry):
    """Registry that remembers every operation set a backend was visible with."""

    def __init__(self, backend: str):
        super().__init__()
        self.backend = backend
        self.history = []

    def _record(self):
        self.history.append({r.operation for r in self.snapshot().backend_routes(self.backend)})

    def replace_backend(self, backend, session, routes):
        snapshot = super().replace_backend(backend, session, routes)
        self._record()
        return snapshot

    def remove_backend(self, backend):
        removed = super().remove_backend(backend)
        self._record()
        return removed


def operations(registry, backend):
    return {route.operation for route in registry.snapshot().backend_routes(backend)}


class TestSupervisor:
    """Tests for starting, stopping and reporting."""

    @pytest.mark.asyncio
    async def test_start_registers_every_backend(self):
        backends = {
            "fs": MockBackend("fs").add_tool("read", read_only=True).add_tool("write"),
            "crm": MockBackend("crm").add_echo(),
        }
        supervisor = mock_supervisor(fast_config("fs", "crm"), backends)
        await supervisor.start()
        try:
            assert await supervisor.wait_ready(2.0)
            paths = [(r.method, r.path) for r in supervisor.registry.list_routes()]
            assert paths == [
                ("POST", "/tools/crm/echo"),
                ("GET", "/tools/fs/read"),
                ("POST", "/tools/fs/write"),
            ]
            health = supervisor.health()
            assert health["status"] == "ok"
            assert health["routes"] == 3
            assert health["backends"]["fs"]["routes"] == 2
            assert health["backends"]["fs"]["state"] == "Ready"
        finally:
            await supervisor.stop()
        assert supervisor.registry.list_routes() == []
        assert supervisor.health()["status"] == "empty"

    @pytest.mark.asyncio
    async def test_disabled_backends_are_skipped(self):
        config = fast_config("fs")
        config.backends["off"] = BackendConfig(url="memory://off", enabled=False)
        supervisor = mock_supervisor(config, {"fs": MockBackend("fs").add_echo()})
        await supervisor.start()
        try:
            assert await supervisor.wait_ready(2.0)
            assert list(supervisor.sessions()) == ["fs"]
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_zero_operation_backend(self):
        supervisor = mock_supervisor(fast_config("empty"), {"empty": MockBackend("empty")})
        await supervisor.start()
        try:
            assert await supervisor.wait_ready(2.0)
            assert supervisor.registry.has_backend("empty")
            assert supervisor.health()["backends"]["empty"]["routes"] == 0
            assert supervisor.health()["status"] == "ok"
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_unreachable_backend_reports_degraded(self):
        down = MockBackend("down")
        down.reachable = False
        backends = {"up": MockBackend("up").add_echo(), "down": down}
        supervisor = mock_supervisor(fast_config("up", "down"), backends)
        await supervisor.start()
        try:
            assert not await supervisor.wait_ready(0.3)
            health = supervisor.health()
            assert health["status"] == "degraded"
            assert health["backends"]["up"]["state"] == "Ready"
            assert "BackendUnreachable" in health["backends"]["down"]["last_error"]
            assert not supervisor.registry.has_backend("down")
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_invalid_backend_id(self):
        supervisor = mock_supervisor(fast_config(), {})
        with pytest.raises(ValueError):
            await supervisor.add_backend("no spaces", BackendConfig(url="memory://x"))
        assert supervisor.sessions() == {}


class TestCapabilityChanges:
    """Tests for re-discovery and registry swaps."""

    @pytest.mark.asyncio
    async def test_swap_has_no_empty_window(self):
        """Going from {a, b} to {b, c} never exposes an empty or mixed set."""
        backend = MockBackend("x").add_tool("a").add_tool("b")
        registry = RecordingRegistry("x")
        supervisor = mock_supervisor(fast_config("x"), {"x": backend}, registry=registry)
        await supervisor.start()
        try:
            assert await wait_until(lambda: operations(registry, "x") == {"a", "b"})

            backend.remove_tool("a")
            backend.add_tool("c")
            backend.notify_changed()

            assert await wait_until(lambda: operations(registry, "x") == {"b", "c"})
            assert all(seen in ({"a", "b"}, {"b", "c"}) for seen in registry.history)
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_unchanged_capabilities_skip_the_swap(self):
        backend = MockBackend("x").add_echo()
        supervisor = mock_supervisor(fast_config("x"), {"x": backend})
        await supervisor.start()
        try:
            assert await supervisor.wait_ready(2.0)
            session = supervisor.session("x")
            version = supervisor.registry.snapshot().version
            discovered_at = session.last_discovery

            assert supervisor.refresh("x")
            assert await wait_until(lambda: session.last_discovery != discovered_at)
            assert supervisor.registry.snapshot().version == version
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_refresh_unknown_backend(self):
        supervisor = mock_supervisor(fast_config(), {})
        assert supervisor.refresh("nope") is False


class TestBackendLifecycle:
    """Tests for adding, replacing and losing backends."""

    @pytest.mark.asyncio
    async def test_readd_purges_old_routes(self):
        backend = MockBackend("x").add_tool("old")
        supervisor = mock_supervisor(fast_config("x"), {"x": backend})
        await supervisor.start()
        try:
            assert await wait_until(lambda: operations(supervisor.registry, "x") == {"old"})
            old_session = supervisor.session("x")

            backend.remove_tool("old")
            backend.add_tool("new")
            new_session = await supervisor.add_backend("x", BackendConfig(url="memory://x"))

            assert old_session.state is BackendState.REMOVED
            assert new_session is not old_session
            assert not supervisor.registry.has_backend("x")
            assert await wait_until(lambda: operations(supervisor.registry, "x") == {"new"})
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stale_session_cannot_write(self):
        backend = MockBackend("x").add_echo()
        supervisor = mock_supervisor(fast_config("x"), {"x": backend})
        await supervisor.start()
        try:
            assert await supervisor.wait_ready(2.0)
            stale = supervisor.session("x")
            assert await supervisor.remove_backend("x")

            supervisor._apply_discovery(stale, [OperationDescriptor(name="ghost")])
            assert supervisor.registry.list_routes() == []
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_remove_backend(self):
        supervisor = mock_supervisor(fast_config("x"), {"x": MockBackend("x").add_echo()})
        await supervisor.start()
        try:
            assert await supervisor.wait_ready(2.0)
            assert await supervisor.remove_backend("x") is True
            assert await supervisor.remove_backend("x") is False
            assert supervisor.registry.list_routes() == []
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_failing_backend_is_isolated(self):
        """One backend losing its connection withdraws only its own routes; calls to the others keep succeeding."""
        backends = {"a": MockBackend("a").add_echo(), "b": MockBackend("b").add_echo()}
        supervisor = mock_supervisor(fast_config("a", "b"), backends)
        await supervisor.start()
        try:
            assert await supervisor.wait_ready(2.0)
            backends["a"].broken = True
            ctx = InvocationContext.with_timeout("a", "echo", {"text": "x"}, 1.0)
            with pytest.raises(BackendUnavailableError):
                await supervisor.session("a").invoke(ctx)

            assert await wait_until(lambda: not supervisor.registry.has_backend("a"))
            assert operations(supervisor.registry, "b") == {"echo"}
            assert supervisor.session("b").state is BackendState.READY

            # every call to the healthy backend succeeds while "a" keeps failing
            healthy = supervisor.session("b")
            for i in range(20):
                ctx = InvocationContext.with_timeout("b", "echo", {"text": str(i)}, 1.0)
                assert await healthy.invoke(ctx) == {"text": str(i)}
                assert supervisor.session("a").state is not BackendState.READY
            assert [args["text"] for _, args in backends["b"].calls] == [str(i) for i in range(20)]

            backends["a"].broken = False
            assert await wait_until(lambda: operations(supervisor.registry, "a") == {"echo"})
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        supervisor = mock_supervisor(fast_config("x"), {"x": MockBackend("x")})
        await supervisor.start()
        await supervisor.stop()
        await supervisor.stop()
        await asyncio.sleep(0)
        assert supervisor.sessions() == {}
