"""
Payload validation against canonical route schemas.

Canonical schemas are compiled into pydantic types (strict mode, so
``"123"`` is never accepted for an integer) and cached by their JSON
text. Validation only checks; callers forward the original payload so
nothing is coerced or defaulted on its way to a backend.
"""

from __future__ import annotations

import json
import re
from functools import lru_cache
from typing import Annotated, Any, Dict, List, Optional, Tuple, Type

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    create_model,
)

from capgate.bridge.schema import canonical_json

_ADAPTER_CONFIG = ConfigDict(regex_engine="python-re")


class PayloadError(ValueError):
    """Raised when a payload does not match a schema."""

    def __init__(self, field: str, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message
        self.errors = errors or []


def validate_payload(schema: Dict[str, Any], payload: Any) -> None:
    """Raise ``PayloadError`` naming the first offending field, if any."""
    adapter = _adapter_for(canonical_json(schema))
    try:
        adapter.validate_python(payload)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        first = errors[0] if errors else {"loc": (), "msg": str(exc)}
        field = ".".join(str(part) for part in first["loc"]) or "<root>"
        raise PayloadError(field, first["msg"], errors=[_plain(e) for e in errors]) from exc


def _plain(error: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "field": ".".join(str(part) for part in error.get("loc", ())) or "<root>",
        "type": error.get("type"),
        "message": error.get("msg"),
    }


@lru_cache(maxsize=1024)
def _adapter_for(schema_json: str) -> TypeAdapter:
    annotation = annotation_for(json.loads(schema_json))
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return TypeAdapter(annotation)
    return TypeAdapter(annotation, config=_ADAPTER_CONFIG)


# ── Schema → type compilation ─────────────────────────────────────────────


def annotation_for(schema: Dict[str, Any], name: str = "Payload") -> Any:
    """Compile a canonical schema into a pydantic-compatible annotation."""
    if not isinstance(schema, dict) or schema.get("x-opaque"):
        if isinstance(schema, dict) and schema.get("type") == "object":
            return Dict[str, Any]
        return Any

    kind, nullable = _kind(schema)
    if kind is None:
        base: Any = Any
    elif kind == "string":
        base = _constrained(StrictStr, _string_constraints(schema))
    elif kind == "integer":
        base = _constrained(StrictInt, _numeric_constraints(schema))
    elif kind == "number":
        base = Annotated[Any, AfterValidator(_number_check(_numeric_constraints(schema)))]
    elif kind == "boolean":
        base = StrictBool
    elif kind == "null":
        base = type(None)
    elif kind == "array":
        items = schema.get("items")
        item_type = annotation_for(items, f"{name}Item") if isinstance(items, dict) else Any
        base = _constrained(List[item_type], _length_constraints(schema, "minItems", "maxItems"))
    elif kind == "object":
        base = _object_annotation(schema, name)
    else:
        base = Any

    enum = schema.get("enum")
    if isinstance(enum, list) and enum:
        base = Annotated[base, AfterValidator(_member_of(enum))]
    if nullable and kind != "null":
        base = Optional[base]
    return base


def _kind(schema: Dict[str, Any]) -> Tuple[Optional[str], bool]:
    kind = schema.get("type")
    if isinstance(kind, list):
        kinds = [k for k in kind if k != "null"]
        return (kinds[0] if kinds else "null"), "null" in kind
    return kind, False


def _object_annotation(schema: Dict[str, Any], name: str) -> Any:
    properties = schema.get("properties") or {}
    extra = schema.get("additionalProperties", True)
    if not properties:
        if isinstance(extra, dict):
            return Dict[str, annotation_for(extra, f"{name}Value")]
        if extra is False:
            return _model(name, {}, forbid=True)
        return Dict[str, Any]

    required = set(schema.get("required") or [])
    fields: Dict[str, Tuple[Any, Any]] = {}
    for index, (prop, sub) in enumerate(properties.items()):
        annotation = annotation_for(sub, f"{name}_{index}")
        if prop in required:
            fields[f"f{index}"] = (annotation, Field(alias=prop))
        else:
            # no default validation: a missing field passes, an explicit wrong value does not
            fields[f"f{index}"] = (annotation, Field(default=None, alias=prop))
    return _model(name, fields, forbid=extra is False)


def _model(name: str, fields: Dict[str, Tuple[Any, Any]], forbid: bool) -> Type[BaseModel]:
    config = ConfigDict(
        extra="forbid" if forbid else "allow",
        regex_engine="python-re",
        populate_by_name=False,
    )
    return create_model(name, __config__=config, **fields)


def _constrained(base: Any, constraints: Dict[str, Any]) -> Any:
    if not constraints:
        return base
    return Annotated[base, Field(**constraints)]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _string_constraints(schema: Dict[str, Any]) -> Dict[str, Any]:
    constraints = _length_constraints(schema, "minLength", "maxLength")
    pattern = schema.get("pattern")
    if isinstance(pattern, str):
        try:
            re.compile(pattern)
        except re.error:
            pattern = None
        if pattern is not None:
            constraints["pattern"] = pattern
    return constraints


def _length_constraints(schema: Dict[str, Any], low: str, high: str) -> Dict[str, Any]:
    constraints: Dict[str, Any] = {}
    if isinstance(schema.get(low), int) and not isinstance(schema.get(low), bool):
        constraints["min_length"] = schema[low]
    if isinstance(schema.get(high), int) and not isinstance(schema.get(high), bool):
        constraints["max_length"] = schema[high]
    return constraints


def _numeric_constraints(schema: Dict[str, Any]) -> Dict[str, Any]:
    mapping = {
        "minimum": "ge",
        "maximum": "le",
        "exclusiveMinimum": "gt",
        "exclusiveMaximum": "lt",
        "multipleOf": "multiple_of",
    }
    return {
        target: schema[source]
        for source, target in mapping.items()
        if _is_number(schema.get(source))
    }


def _member_of(values: List[Any]):
    allowed = {canonical_json(v) for v in values}

    def check(value: Any) -> Any:
        if isinstance(value, BaseModel):
            value = value.model_dump(by_alias=True, exclude_unset=True)
        if canonical_json(value) not in allowed:
            raise ValueError(f"must be one of {values}")
        return value

    return check


def _number_check(constraints: Dict[str, Any]):
    # ints and floats both satisfy "number"; bools and numeric strings do not
    def check(value: Any) -> Any:
        if not _is_number(value):
            raise ValueError("Input should be a valid number")
        if "ge" in constraints and value < constraints["ge"]:
            raise ValueError(f"Input should be greater than or equal to {constraints['ge']}")
        if "le" in constraints and value > constraints["le"]:
            raise ValueError(f"Input should be less than or equal to {constraints['le']}")
        if "gt" in constraints and value <= constraints["gt"]:
            raise ValueError(f"Input should be greater than {constraints['gt']}")
        if "lt" in constraints and value >= constraints["lt"]:
            raise ValueError(f"Input should be less than {constraints['lt']}")
        step = constraints.get("multiple_of")
        if step and abs(value / step - round(value / step)) > 1e-9:
            raise ValueError(f"Input should be a multiple of {step}")
        return value

    return check
