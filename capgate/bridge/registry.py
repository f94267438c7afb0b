"""Route registry - the live (method, path) → backend mapping used for dispatch."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Mapping, Optional

from capgate.bridge.schema import RouteDescriptor

if TYPE_CHECKING:
    from capgate.bridge.session import BackendSession


class RouteConflictError(Exception):
    """Raised when a backend tries to claim a path another backend owns."""


@dataclass(frozen=True)
class RouteEntry:
    """A registered route and the session that serves it."""

    route: RouteDescriptor
    session: "BackendSession"


class RegistrySnapshot:
    """
    Immutable view of every registered route.

    Readers grab one snapshot and use it for the whole request; writers
    build a new snapshot and swap it in, so a reader sees each backend's
    route set either entirely or not at all.
    """

    __slots__ = ("by_path", "by_backend", "version")

    def __init__(
        self,
        by_path: Mapping[str, RouteEntry],
        by_backend: Mapping[str, Mapping[str, RouteEntry]],
        version: int = 0,
    ):
        self.by_path = by_path
        self.by_backend = by_backend
        self.version = version

    @classmethod
    def empty(cls) -> "RegistrySnapshot":
        return cls(MappingProxyType({}), MappingProxyType({}))

    def lookup(self, path: str) -> Optional[RouteEntry]:
        return self.by_path.get(path)

    def match(self, method: str, path: str) -> Optional[RouteEntry]:
        entry = self.by_path.get(path)
        if entry is None or entry.route.method != method.upper():
            return None
        return entry

    def routes(self) -> List[RouteDescriptor]:
        """All routes, ordered by path."""
        return [self.by_path[path].route for path in sorted(self.by_path)]

    def backend_routes(self, backend: str) -> List[RouteDescriptor]:
        entries = self.by_backend.get(backend, {})
        return [entries[path].route for path in sorted(entries)]

    def backends(self) -> List[str]:
        return sorted(self.by_backend)

    def __len__(self) -> int:
        return len(self.by_path)


class RouteRegistry:
    """
    Holds the current ``RegistrySnapshot``.

    Only the supervisor writes (``replace_backend``/``remove_backend``);
    everything else reads through ``snapshot()`` or ``match()``.
    """

    def __init__(self) -> None:
        self._snapshot = RegistrySnapshot.empty()
        self._lock = threading.Lock()

    # ── Reads ─────────────────────────────────────────────────────────────

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def match(self, method: str, path: str) -> Optional[RouteEntry]:
        return self._snapshot.match(method, path)

    def list_routes(self) -> List[RouteDescriptor]:
        return self._snapshot.routes()

    def fingerprints(self, backend: str) -> FrozenSet[str]:
        return frozenset(route.fingerprint for route in self._snapshot.backend_routes(backend))

    def has_backend(self, backend: str) -> bool:
        return backend in self._snapshot.by_backend

    # ── Writes ────────────────────────────────────────────────────────────

    def replace_backend(
        self,
        backend: str,
        session: "BackendSession",
        routes: Iterable[RouteDescriptor],
    ) -> RegistrySnapshot:
        """Swap ``backend``'s whole route set for ``routes`` in one step."""
        with self._lock:
            current = self._snapshot
            entries: Dict[str, RouteEntry] = {}
            for route in routes:
                if route.backend != backend:
                    raise RouteConflictError(
                        f"route {route.path} belongs to {route.backend!r}, not {backend!r}"
                    )
                owner = current.by_path.get(route.path)
                if owner is not None and owner.route.backend != backend:
                    raise RouteConflictError(
                        f"path {route.path} already registered by {owner.route.backend!r}"
                    )
                entries[route.path] = RouteEntry(route=route, session=session)

            by_path = {p: e for p, e in current.by_path.items() if e.route.backend != backend}
            by_path.update(entries)
            by_backend = dict(current.by_backend)
            by_backend[backend] = MappingProxyType(entries)
            self._snapshot = RegistrySnapshot(
                MappingProxyType(by_path),
                MappingProxyType(by_backend),
                current.version + 1,
            )
            return self._snapshot

    def remove_backend(self, backend: str) -> int:
        """Drop every route ``backend`` owns. Returns how many were removed."""
        with self._lock:
            current = self._snapshot
            if backend not in current.by_backend:
                return 0
            removed = len(current.by_backend[backend])
            by_path = {p: e for p, e in current.by_path.items() if e.route.backend != backend}
            by_backend = {b: r for b, r in current.by_backend.items() if b != backend}
            self._snapshot = RegistrySnapshot(
                MappingProxyType(by_path),
                MappingProxyType(by_backend),
                current.version + 1,
            )
            return removed

    # ── Reporting ─────────────────────────────────────────────────────────

    def report(self) -> Dict[str, Dict[str, int]]:
        """Route counts per backend and method."""
        report: Dict[str, Dict[str, int]] = {}
        snapshot = self._snapshot
        for backend in snapshot.backends():
            routes = snapshot.backend_routes(backend)
            report[backend] = {
                "routes": len(routes),
                "get": sum(1 for r in routes if r.method == "GET"),
                "post": sum(1 for r in routes if r.method == "POST"),
            }
        return report
