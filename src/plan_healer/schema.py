# schema.py
# Parameter-schema normalization.
#
# Every raw descriptor from either tool source passes through
# normalize_schema() before it is exposed or used for validation. The output
# is always a canonical object schema; running it twice changes nothing.

import copy
import logging
from typing import Any

from plan_healer.models import ToolSchema

logger = logging.getLogger(__name__)

CANONICAL_TYPES = frozenset({"string", "number", "boolean", "array", "object"})

# Polymorphic by design; validating its schema would reject legitimate loops.
META_TOOLS = frozenset({"for_each"})

_MISSING = object()


def _is_null_like(value: Any) -> bool:
    if value is None or value == "":
        return True
    return isinstance(value, str) and value.lower() == "none"


def _normalize_property(name: str, prop: Any, tool_name: str) -> dict[str, Any]:
    if not isinstance(prop, dict):
        logger.warning("Tool %s: property %r is not a schema, using string", tool_name, name)
        return {"type": "string"}

    declared = prop.get("type", _MISSING)
    if declared is _MISSING or _is_null_like(declared):
        # Absent type is the usual shape for optional remote params; only log real junk.
        if declared is not _MISSING:
            logger.warning("Tool %s: property %r type %r -> string", tool_name, name, declared)
        return {**prop, "type": "string"}
    if declared == "integer":
        return {**prop, "type": "number"}
    if declared not in CANONICAL_TYPES:
        logger.warning("Tool %s: property %r has unknown type %r -> string", tool_name, name, declared)
        return {**prop, "type": "string"}
    return prop


def _canonical(properties: Any, required: Any, tool_name: str) -> dict[str, Any]:
    props: dict[str, Any] = {}
    if isinstance(properties, dict):
        for name, prop in properties.items():
            props[name] = _normalize_property(name, prop, tool_name)

    names = [r for r in required if isinstance(r, str)] if isinstance(required, list) else []
    dropped = [r for r in names if r not in props]
    if dropped:
        logger.warning("Tool %s: required %s not in properties, dropping", tool_name, dropped)

    return {
        "type": "object",
        "properties": props,
        "required": [r for r in names if r in props],
    }


def normalize_schema(raw: Any, tool_name: str = "<unknown>") -> dict[str, Any]:
    """
    Coerce an arbitrary input schema into {type: object, properties, required}.

    Rules, in order:
      - missing / non-mapping          -> empty object schema
      - type null-like ("None", "")    -> object, keeping properties/required
      - type absent                    -> zero-parameter object (no warning)
      - type present but not object    -> wrapped as properties.input
    Property types are then coerced to the five canonical types, keeping
    descriptions. Meta tools are returned untouched.
    """
    if tool_name in META_TOOLS:
        return raw

    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning("Tool %s: schema is %s, using empty object schema", tool_name, type(raw).__name__)
        return {"type": "object", "properties": {}, "required": []}

    declared = raw.get("type", _MISSING)

    if declared is _MISSING:
        return _canonical(raw.get("properties"), raw.get("required"), tool_name)

    if _is_null_like(declared):
        logger.warning("Tool %s: schema type %r, fixing to object", tool_name, declared)
        return _canonical(raw.get("properties"), raw.get("required"), tool_name)

    if declared != "object":
        logger.warning("Tool %s: schema type %r is not object, wrapping as 'input'", tool_name, declared)
        wrapped = _normalize_property("input", copy.deepcopy(raw), tool_name)
        return {"type": "object", "properties": {"input": wrapped}, "required": []}

    return _canonical(raw.get("properties"), raw.get("required"), tool_name)


def to_tool_schema(raw: Any, tool_name: str = "<unknown>") -> ToolSchema:
    """normalize_schema() lifted into the pydantic contract."""
    normalized = normalize_schema(raw, tool_name)
    if tool_name in META_TOOLS or not isinstance(normalized, dict) or normalized.get("type") != "object":
        # Meta tools keep their raw schema; the contract shell only takes mapping-valued properties.
        properties = normalized.get("properties") if isinstance(normalized, dict) else None
        if not isinstance(properties, dict):
            properties = {}
        shell = {name: prop for name, prop in properties.items() if isinstance(name, str) and isinstance(prop, dict)}
        required = normalized.get("required") if isinstance(normalized, dict) else None
        names = [r for r in required if isinstance(r, str) and r in shell] if isinstance(required, list) else []
        return ToolSchema(properties=shell, required=names)
    return ToolSchema(
        properties=normalized.get("properties") or {},
        required=list(normalized.get("required") or []),
    )
