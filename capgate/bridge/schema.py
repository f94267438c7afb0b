"""Data models for operation descriptors, route descriptors, and invocation contexts."""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class BackendState(str, Enum):
    """Lifecycle states of a backend session."""

    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    DISCOVERING = "Discovering"
    READY = "Ready"
    DEGRADED = "Degraded"
    RECONNECTING = "Reconnecting"
    REMOVED = "Removed"


def canonical_json(value: Any) -> str:
    """Serialize ``value`` with sorted keys and no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class OperationDescriptor(BaseModel):
    """One callable operation as reported by a backend's discovery call."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object"})
    output_schema: Optional[Dict[str, Any]] = None
    read_only: Optional[bool] = None  # None: backend did not classify it

    @classmethod
    def from_mcp(cls, raw: Dict[str, Any]) -> "OperationDescriptor":
        """
        Build a descriptor from an MCP ``tools/list`` entry.

        Raises ``ValueError`` when the entry has no usable name or its
        schemas are not JSON objects.
        """
        if not isinstance(raw, dict):
            raise ValueError(f"tool entry is not an object: {raw!r}")
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError(f"tool entry has no name: {raw!r}")

        input_schema = raw.get("inputSchema") or {"type": "object"}
        output_schema = raw.get("outputSchema")
        if not isinstance(input_schema, dict):
            raise ValueError(f"tool {name!r} has a non-object inputSchema")
        if output_schema is not None and not isinstance(output_schema, dict):
            raise ValueError(f"tool {name!r} has a non-object outputSchema")

        annotations = raw.get("annotations") or {}
        read_only = annotations.get("readOnlyHint") if isinstance(annotations, dict) else None

        return cls(
            name=name,
            description=raw.get("description") or "",
            input_schema=input_schema,
            output_schema=output_schema,
            read_only=read_only if isinstance(read_only, bool) else None,
        )


class RouteDescriptor(BaseModel):
    """Canonical, protocol-agnostic description of one routed operation."""

    model_config = ConfigDict(frozen=True)

    path: str
    method: str  # "GET" or "POST"
    backend: str
    operation: str  # operation name exactly as the backend reported it
    summary: str = ""
    description: str = ""
    read_only: bool = False
    request_schema: Dict[str, Any] = Field(default_factory=dict)
    response_schema: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.method, self.path)

    @property
    def success_schema(self) -> Dict[str, Any]:
        return self.response_schema.get("success", {})

    @property
    def fingerprint(self) -> str:
        """Stable digest of the descriptor; equal descriptors share a fingerprint."""
        return hashlib.sha256(canonical_json(self.model_dump()).encode()).hexdigest()


@dataclass
class InvocationContext:
    """Per-request state handed from the dispatcher to a backend session."""

    backend: str
    operation: str
    payload: Dict[str, Any]
    deadline: float  # time.monotonic() value
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def with_timeout(
        cls,
        backend: str,
        operation: str,
        payload: Dict[str, Any],
        timeout: float,
        request_id: Optional[str] = None,
    ) -> "InvocationContext":
        ctx = cls(
            backend=backend,
            operation=operation,
            payload=payload,
            deadline=time.monotonic() + timeout,
        )
        if request_id:
            ctx.request_id = request_id
        return ctx

    def remaining(self) -> float:
        """Seconds left before the deadline (never negative)."""
        return max(self.deadline - time.monotonic(), 0.0)

    def cancel(self) -> None:
        self.cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)
