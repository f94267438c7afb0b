"""Capability publisher - renders the registry into one OpenAPI 3.1 document."""

from __future__ import annotations

import copy
from typing import Any, Dict, List

from capgate import __version__
from capgate.bridge.errors import ERROR_CLASSES, ERROR_RESPONSE_SCHEMA
from capgate.bridge.registry import RouteRegistry
from capgate.bridge.schema import RouteDescriptor

OPENAPI_VERSION = "3.1.0"
ERROR_REF = {"$ref": "#/components/schemas/ErrorResponse"}


def _error_responses() -> Dict[str, Any]:
    by_status: Dict[int, List[str]] = {}
    for cls in ERROR_CLASSES:
        by_status.setdefault(cls.status_code, []).append(cls.code)
    return {
        str(status): {
            "description": " or ".join(codes),
            "content": {"application/json": {"schema": dict(ERROR_REF)}},
        }
        for status, codes in sorted(by_status.items())
    }


def operation_id(route: RouteDescriptor) -> str:
    return f"{route.backend}__{route.operation}"


def query_parameters(route: RouteDescriptor) -> List[Dict[str, Any]]:
    schema = route.request_schema
    required = set(schema.get("required") or [])
    parameters = []
    for name, prop in (schema.get("properties") or {}).items():
        parameter: Dict[str, Any] = {
            "name": name,
            "in": "query",
            "required": name in required,
            "schema": copy.deepcopy(prop),
        }
        if prop.get("description"):
            parameter["description"] = prop["description"]
        parameters.append(parameter)
    return parameters


def render_route(route: RouteDescriptor) -> Dict[str, Any]:
    """OpenAPI operation object for one route."""
    operation: Dict[str, Any] = {
        "operationId": operation_id(route),
        "summary": route.summary,
        "description": route.description,
        "tags": [route.backend],
        "x-capgate-backend": route.backend,
        "x-capgate-operation": route.operation,
        "x-capgate-read-only": route.read_only,
    }
    if route.method == "GET":
        operation["parameters"] = query_parameters(route)
    else:
        operation["requestBody"] = {
            "required": bool(route.request_schema.get("required")),
            "content": {"application/json": {"schema": copy.deepcopy(route.request_schema)}},
        }
    responses: Dict[str, Any] = {
        "200": {
            "description": "Operation result",
            "content": {"application/json": {"schema": copy.deepcopy(route.success_schema)}},
        }
    }
    responses.update(_error_responses())
    operation["responses"] = responses
    return operation


class CapabilityPublisher:
    """
    Build the aggregated API description from the registry.

    Rendered fresh on every call so a registry swap is visible to the
    very next reader.
    """

    def __init__(self, registry: RouteRegistry, title: str = "capgate", description: str = ""):
        self.registry = registry
        self.title = title
        self.description = description or "Operations discovered from the configured backends."

    def render(self) -> Dict[str, Any]:
        snapshot = self.registry.snapshot()
        paths: Dict[str, Dict[str, Any]] = {}
        for route in snapshot.routes():
            paths.setdefault(route.path, {})[route.method.lower()] = render_route(route)

        return {
            "openapi": OPENAPI_VERSION,
            "info": {
                "title": self.title,
                "version": __version__,
                "description": self.description,
            },
            "tags": [{"name": backend} for backend in snapshot.backends()],
            "paths": paths,
            "components": {"schemas": {"ErrorResponse": copy.deepcopy(ERROR_RESPONSE_SCHEMA)}},
        }
