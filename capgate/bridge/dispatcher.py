"""Dispatcher - matches inbound calls to routes, validates, forwards, and checks responses."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote, unquote

from capgate.bridge.errors import (
    GatewayError,
    PayloadValidationError,
    SchemaViolationError,
    UnknownRouteError,
)
from capgate.bridge.registry import RouteEntry, RouteRegistry
from capgate.bridge.schema import InvocationContext, RouteDescriptor
from capgate.validation.payload import PayloadError, validate_payload

logger = logging.getLogger(__name__)

DisconnectProbe = Callable[[], Awaitable[bool]]


@dataclass
class DispatchResult:
    """Outcome of one successful routed call."""

    route: RouteDescriptor
    payload: Dict[str, Any]
    request_id: str
    duration_ms: int


def normalize_path(path: str) -> str:
    """Re-quote a decoded request path the way route paths are built."""
    return "/".join(quote(unquote(segment), safe="-._~") for segment in path.split("/"))


def parse_timeout_hint(value: Optional[str]) -> Optional[float]:
    """Positive seconds from a client timeout header, else None."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


class Dispatcher:
    """
    Serve routed calls against the registry's current snapshot.

    Framework-neutral: the HTTP layer hands over method, path, body and
    query, and renders whatever ``GatewayError`` comes back.
    """

    def __init__(self, registry: RouteRegistry, disconnect_poll: float = 0.1):
        self.registry = registry
        self.disconnect_poll = disconnect_poll

    # ── Matching ──────────────────────────────────────────────────────────

    def resolve(self, method: str, path: str) -> RouteEntry:
        snapshot = self.registry.snapshot()
        path = normalize_path(path)
        entry = snapshot.match(method, path)
        if entry is not None:
            return entry
        other = snapshot.lookup(path)
        if other is not None:
            raise UnknownRouteError(
                f"{method.upper()} is not routed here; this operation accepts {other.route.method}",
                other.route.backend,
                other.route.operation,
            )
        raise UnknownRouteError(f"no operation is registered at {method.upper()} {path}")

    # ── Payload extraction ────────────────────────────────────────────────

    def payload_from_body(self, route: RouteDescriptor, body: Optional[bytes]) -> Dict[str, Any]:
        if not body or not body.strip():
            return {}
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PayloadValidationError(
                f"request body is not valid JSON: {exc}", route.backend, route.operation, field="<body>"
            ) from exc
        if not isinstance(payload, dict):
            raise PayloadValidationError(
                "request body must be a JSON object", route.backend, route.operation, field="<body>"
            )
        return payload

    def payload_from_query(
        self, route: RouteDescriptor, query: Iterable[Tuple[str, str]]
    ) -> Dict[str, Any]:
        """Build a payload from query parameters, decoding non-string fields as JSON."""
        grouped: Dict[str, List[str]] = {}
        for key, value in query:
            grouped.setdefault(key, []).append(value)

        properties = route.request_schema.get("properties") or {}
        payload: Dict[str, Any] = {}
        for key, values in grouped.items():
            schema = properties.get(key, {})
            if _has_type(schema, "array"):
                items = schema.get("items") or {}
                payload[key] = [_decode_scalar(items, v) for v in values]
            else:
                payload[key] = _decode_scalar(schema, values[-1])
        return payload

    # ── Dispatch ──────────────────────────────────────────────────────────

    async def dispatch(
        self,
        method: str,
        path: str,
        body: Optional[bytes] = None,
        query: Iterable[Tuple[str, str]] = (),
        timeout_hint: Optional[float] = None,
        request_id: Optional[str] = None,
        disconnected: Optional[DisconnectProbe] = None,
    ) -> DispatchResult:
        entry = self.resolve(method, path)
        route = entry.route
        if route.method == "GET":
            payload = self.payload_from_query(route, query)
        else:
            payload = self.payload_from_body(route, body)

        try:
            validate_payload(route.request_schema, payload)
        except PayloadError as exc:
            raise PayloadValidationError(
                f"invalid field '{exc.field}': {exc.message}",
                route.backend,
                route.operation,
                field=exc.field,
                details={"errors": exc.errors},
            ) from exc

        session = entry.session
        timeout = session.default_timeout
        if timeout_hint is not None:
            timeout = min(timeout, timeout_hint)
        ctx = InvocationContext.with_timeout(
            route.backend, route.operation, payload, timeout, request_id=request_id
        )
        logger.debug("dispatch %s %s -> %s (%s)", route.method, route.path, route.operation, ctx.request_id)

        watcher = None
        if disconnected is not None:
            watcher = asyncio.create_task(self._watch_disconnect(disconnected, ctx))
        try:
            result = await session.invoke(ctx)
        except GatewayError as exc:
            logger.info("%s %s failed: %s (%s)", route.method, route.path, exc.code, ctx.request_id)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()

        try:
            validate_payload(route.success_schema, result)
        except PayloadError as exc:
            logger.error(
                "backend %s violated its own response schema for %s at '%s': %s (%s)",
                route.backend, route.operation, exc.field, exc.message, ctx.request_id,
            )
            raise SchemaViolationError(
                f"response field '{exc.field}' does not match the declared schema: {exc.message}",
                route.backend,
                route.operation,
                field=exc.field,
            ) from exc

        return DispatchResult(
            route=route, payload=result, request_id=ctx.request_id, duration_ms=ctx.elapsed_ms()
        )

    async def _watch_disconnect(self, disconnected: DisconnectProbe, ctx: InvocationContext) -> None:
        while not ctx.is_cancelled:
            if await disconnected():
                logger.debug("caller disconnected (%s)", ctx.request_id)
                ctx.cancel()
                return
            await asyncio.sleep(self.disconnect_poll)


def _has_type(schema: Dict[str, Any], kind: str) -> bool:
    declared = schema.get("type")
    if isinstance(declared, list):
        return kind in declared
    return declared == kind


def _decode_scalar(schema: Dict[str, Any], raw: str) -> Any:
    if _has_type(schema, "string"):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return raw
