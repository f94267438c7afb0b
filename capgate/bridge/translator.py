"""
Schema translator - operation descriptors in, route descriptors out.

Pure functions, no I/O. The backend schema language (MCP tool schemas,
i.e. JSON Schema) is narrowed to the subset OpenAPI 3.1 callers can rely
on. Anything outside that subset is kept as an opaque value whose
original constraints travel along in the description.

Translation is deterministic: the same descriptor always yields an equal
route descriptor (and therefore the same fingerprint).
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterable, List
from urllib.parse import quote

from capgate.bridge.errors import ERROR_RESPONSE_SCHEMA
from capgate.bridge.schema import OperationDescriptor, RouteDescriptor, canonical_json

DEFAULT_ROUTE_PREFIX = "/tools"

CANONICAL_TYPES = {"string", "integer", "number", "boolean", "null", "array", "object"}
UNSUPPORTED_KEYWORDS = ("anyOf", "oneOf", "allOf", "not", "$ref", "if", "then", "else")

ANNOTATION_KEYS = ("title", "description", "default", "format")
CONSTRAINT_KEYS = {
    "string": ("minLength", "maxLength", "pattern"),
    "integer": ("minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum", "multipleOf"),
    "number": ("minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum", "multipleOf"),
    "array": ("minItems", "maxItems", "uniqueItems"),
    "object": ("minProperties", "maxProperties"),
}

# Success shape for operations that declare no output schema
CONTENT_ENVELOPE: Dict[str, Any] = {
    "type": "object",
    "description": "Raw content parts returned by the backend.",
    "properties": {"content": {"type": "array", "items": {"type": "object"}}},
    "required": ["content"],
}


def route_path(prefix: str, backend: str, operation: str) -> str:
    """Namespaced route path for ``operation`` on ``backend``."""
    base = prefix.rstrip("/")
    return f"{base}/{quote(backend, safe='-._~')}/{quote(operation, safe='-._~')}"


def opaque(fragment: Any) -> Dict[str, Any]:
    """Wrap a construct with no canonical equivalent, keeping its constraints readable."""
    description = fragment.get("description", "") if isinstance(fragment, dict) else ""
    text = f"{description} Backend constraints: {canonical_json(fragment)}".strip()
    return {
        "x-opaque": True,
        "description": text,
        "x-backend-schema": copy.deepcopy(fragment),
    }


def is_opaque(schema: Dict[str, Any]) -> bool:
    return bool(schema.get("x-opaque"))


def translate_schema(fragment: Any) -> Dict[str, Any]:
    """Translate one JSON-Schema fragment into the canonical subset."""
    if not isinstance(fragment, dict):
        return opaque(fragment)
    if any(key in fragment for key in UNSUPPORTED_KEYWORDS):
        return opaque(fragment)

    kind = fragment.get("type")
    nullable = False
    if isinstance(kind, list):
        nullable = "null" in kind
        kinds = [k for k in kind if k != "null"]
        if len(kinds) != 1:
            return opaque(fragment)
        kind = kinds[0]

    enum = fragment.get("enum")
    if kind is None and isinstance(enum, list) and enum:
        return _with_annotations(fragment, {"enum": copy.deepcopy(enum)})

    if kind not in CANONICAL_TYPES:
        return opaque(fragment)

    out: Dict[str, Any] = {"type": [kind, "null"] if nullable else kind}
    out = _with_annotations(fragment, out)
    if isinstance(enum, list) and enum:
        out["enum"] = copy.deepcopy(enum)
    for key in CONSTRAINT_KEYS.get(kind, ()):
        if key in fragment:
            out[key] = copy.deepcopy(fragment[key])

    if kind == "array":
        items = fragment.get("items")
        if isinstance(items, list):
            return opaque(fragment)
        if items is not None:
            out["items"] = translate_schema(items)
    elif kind == "object":
        properties = fragment.get("properties") or {}
        if isinstance(properties, dict):
            out["properties"] = {
                str(name): translate_schema(sub) for name, sub in properties.items()
            }
        required = fragment.get("required") or []
        if isinstance(required, list):
            names = [r for r in required if isinstance(r, str)]
            if names:
                out["required"] = names
        extra = fragment.get("additionalProperties")
        if isinstance(extra, bool):
            out["additionalProperties"] = extra
        elif isinstance(extra, dict):
            out["additionalProperties"] = translate_schema(extra)
    return out


def _with_annotations(fragment: Dict[str, Any], out: Dict[str, Any]) -> Dict[str, Any]:
    for key in ANNOTATION_KEYS:
        if key in fragment:
            out[key] = copy.deepcopy(fragment[key])
    return out


def request_schema_for(operation: OperationDescriptor) -> Dict[str, Any]:
    schema = translate_schema(operation.input_schema)
    if is_opaque(schema) or schema.get("type") != "object":
        # the HTTP body is always a JSON object; keep the backend's schema as guidance
        return {"type": "object", **opaque(operation.input_schema)}
    return schema


def response_schema_for(operation: OperationDescriptor) -> Dict[str, Any]:
    if operation.output_schema:
        success = translate_schema(operation.output_schema)
    else:
        success = copy.deepcopy(CONTENT_ENVELOPE)
    return {"success": success, "error": copy.deepcopy(ERROR_RESPONSE_SCHEMA)}


def choose_method(operation: OperationDescriptor, request_schema: Dict[str, Any]) -> str:
    """GET only for read-only operations with no required body fields."""
    if operation.read_only is not True:
        return "POST"
    return "POST" if request_schema.get("required") else "GET"


def summarize(description: str, name: str) -> str:
    first = description.strip().split("\n")[0] if description else ""
    return first[:120] if first else name


def translate(
    operation: OperationDescriptor,
    backend: str,
    prefix: str = DEFAULT_ROUTE_PREFIX,
) -> RouteDescriptor:
    """Map one operation descriptor to its canonical route descriptor."""
    request_schema = request_schema_for(operation)
    return RouteDescriptor(
        path=route_path(prefix, backend, operation.name),
        method=choose_method(operation, request_schema),
        backend=backend,
        operation=operation.name,
        summary=summarize(operation.description, operation.name),
        description=operation.description,
        read_only=operation.read_only is True,
        request_schema=request_schema,
        response_schema=response_schema_for(operation),
    )


def translate_all(
    operations: Iterable[OperationDescriptor],
    backend: str,
    prefix: str = DEFAULT_ROUTE_PREFIX,
) -> List[RouteDescriptor]:
    """Translate a discovery result, dropping later duplicates of a name."""
    routes: List[RouteDescriptor] = []
    seen = set()
    for operation in operations:
        if operation.name in seen:
            continue
        seen.add(operation.name)
        routes.append(translate(operation, backend, prefix))
    return routes
