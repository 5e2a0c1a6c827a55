# placeholders.py
# Placeholder detection and template resolution.
#
# Two unrelated notations show up in planner output:
#   <step2_latitude>, <city_name>  : unresolved placeholders. Always a defect
#                                      once the step is about to run.
#   {{step1.results[0].url}}       : templates referencing an earlier result.
#                                      Resolved against the ledger right
#                                      before dispatch.

import json
import logging
import re
from typing import Any

from plan_healer.errors import PlaceholderResolutionError
from plan_healer.ledger import ExecutionLedger
from plan_healer.models import ExecutionResult

logger = logging.getLogger(__name__)

STEP_PLACEHOLDER_RE = re.compile(r"<step\d+_\w+>")
GENERIC_PLACEHOLDER_RE = re.compile(r"<[a-zA-Z_][a-zA-Z0-9_]*>")
TEMPLATE_RE = re.compile(r"\{\{\s*([A-Za-z_][\w-]*)(?:\.([^}]+?))?\s*\}\}")

HTML_TAGS = frozenset({
    "h1", "h2", "h3", "h4", "h5", "h6", "p", "div", "span", "a", "img", "br", "hr",
    "ul", "ol", "li", "table", "tr", "td", "th", "strong", "em", "b", "i", "u",
})

# Matched as prefixes too: <strin>, <integer_list>, <array_of_ids> are type hints, not placeholders.
SCHEMA_TYPE_HINTS = (
    "string", "str", "strin", "int", "integer", "float", "double", "bool", "boolean",
    "array", "arr", "map", "object", "obj", "row", "text", "varchar", "char",
)

FIELD_ALIASES: dict[str, list[str]] = {
    "link": ["href", "url"],
    "href": ["link", "url"],
    "url": ["link", "href"],
    "content": ["text", "body", "raw_content"],
    "text": ["content", "body"],
    "title": ["name", "heading"],
    "name": ["title"],
}

_SOURCE_PREFIXES = frozenset({"output", "result", "tool_result"})
_INDEX_RE = re.compile(r"\[(\d+)\]")


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def _serialize(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _is_allowed_token(token: str) -> bool:
    content = token[1:-1].lower()
    if content in HTML_TAGS:
        return True
    return any(content.startswith(hint) for hint in SCHEMA_TYPE_HINTS)


def find_step_placeholders(value: Any) -> list[str]:
    return STEP_PLACEHOLDER_RE.findall(_serialize(value))


def find_generic_placeholders(value: Any) -> list[str]:
    """<word> tokens that are neither HTML tags nor schema type hints."""
    tokens = GENERIC_PLACEHOLDER_RE.findall(_serialize(value))
    return [t for t in tokens if not STEP_PLACEHOLDER_RE.fullmatch(t) and not _is_allowed_token(t)]


def check_placeholders(value: Any) -> tuple[str, str] | None:
    """
    Returns (issue, suggestion) for the first placeholder class found, else None.

    Step-output placeholders are reported before generic ones.
    """
    step_tokens = find_step_placeholders(value)
    if step_tokens:
        return (
            f"Unreplaced step placeholders: {', '.join(step_tokens)}",
            "Ensure the previous steps completed and substitute their concrete output values",
        )
    generic = find_generic_placeholders(value)
    if generic:
        return (
            f"Parameters contain unreplaced placeholders: {', '.join(generic)}",
            "Provide concrete parameter values instead of placeholders",
        )
    return None


def has_templates(value: Any) -> bool:
    return bool(TEMPLATE_RE.search(_serialize(value)))


# ---------------------------------------------------------------------------
# Field discovery
# ---------------------------------------------------------------------------


def available_fields(obj: Any, prefix: str = "", max_depth: int = 3, depth: int = 0) -> list[str]:
    """Dotted field paths present in obj, descending into the first array element."""
    fields: list[str] = []
    if depth >= max_depth or not isinstance(obj, dict):
        return fields
    for key, value in obj.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        fields.append(path)
        if isinstance(value, list) and value:
            fields.append(f"{path}[0]")
            fields.extend(available_fields(value[0], f"{path}[0]", max_depth, depth + 1))
        elif isinstance(value, dict):
            fields.extend(available_fields(value, path, max_depth, depth + 1))
    return fields


def result_payload(tool_result: Any) -> Any:
    """Unwrap a stored tool result to the data templates navigate into."""
    data = tool_result
    if isinstance(data, dict) and "result" in data and data["result"] is not None:
        data = data["result"]
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            return data
    if isinstance(data, dict):
        content = data.get("content")
        if isinstance(content, list) and content and isinstance(content[0], dict):
            if content[0].get("type") == "text" and isinstance(content[0].get("text"), str):
                try:
                    return json.loads(content[0]["text"])
                except json.JSONDecodeError:
                    pass
    return data


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


_NOT_FOUND = object()


def get_nested(obj: Any, path: str) -> Any:
    """Navigate 'results[0].url' style paths. Returns _NOT_FOUND on any miss."""
    if not path:
        return obj
    if isinstance(obj, dict) and path in obj:
        return obj[path]
    current = obj
    for part in _INDEX_RE.sub(r".\1", path).split("."):
        if part == "":
            continue
        if isinstance(current, dict):
            if part not in current:
                return _NOT_FOUND
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _NOT_FOUND
            current = current[index]
        else:
            return _NOT_FOUND
    return current


def _with_aliases(data: Any, path: str) -> Any:
    value = get_nested(data, path)
    if value is not _NOT_FOUND:
        return value
    if path == "content" and isinstance(data, dict):
        for candidate in ("raw_content", "results[0].raw_content", "results[0].content"):
            value = get_nested(data, candidate)
            if value is not _NOT_FOUND and value:
                return value
    last = re.search(r"([^.\[\]]+)(?:\[\d+\])?$", path)
    field = last.group(1) if last else path
    for alias in FIELD_ALIASES.get(field, []):
        alias_path = re.sub(rf"{re.escape(field)}(?=\[|$)", alias, path, count=1)
        value = get_nested(data, alias_path)
        if value is not _NOT_FOUND:
            logger.debug("Resolved %s via alias %s", path, alias_path)
            return value
    return _NOT_FOUND


def _find_entry(ref: str, ledger: ExecutionLedger) -> ExecutionResult | None:
    entry = ledger.latest_for(ref, successful_only=True) or ledger.latest_for(ref)
    if entry is not None:
        return entry
    match = re.fullmatch(r"step(\d+)", ref)
    if match:
        index = int(match.group(1)) - 1
        candidates = [e for e in ledger.entries if e.step_index == index]
        successful = [e for e in candidates if e.success]
        if successful or candidates:
            return (successful or candidates)[-1]
    return None


def _is_reference(ref: str, ledger: ExecutionLedger) -> bool:
    return ref in ledger.known_step_ids() or re.fullmatch(r"step\d+", ref) is not None


def resolve_reference(ref: str, path: str | None, placeholder: str, ledger: ExecutionLedger) -> Any:
    entry = _find_entry(ref, ledger)
    if entry is None:
        raise PlaceholderResolutionError(
            f"Placeholder {placeholder} not found. No execution result for {ref}.",
            placeholder=placeholder,
            available_fields=[],
            step_id=ref,
        )

    data = result_payload(entry.tool_result)
    field_path = path or ""
    head, _, rest = field_path.partition(".")
    if head in _SOURCE_PREFIXES:
        field_path = rest
    if field_path.startswith("result.") and isinstance(data, dict) and "result" not in data:
        field_path = field_path[len("result."):]

    if not field_path:
        return data
    if isinstance(data, (str, int, float, bool)):
        return data

    value = _with_aliases(data, field_path)
    if value is _NOT_FOUND and isinstance(entry.tool_args, dict):
        value = get_nested(entry.tool_args, field_path)
    if value is not _NOT_FOUND:
        return value

    fields = available_fields(data)
    preview = ", ".join(fields[:5]) + ("..." if len(fields) > 5 else "")
    raise PlaceholderResolutionError(
        f'Placeholder {placeholder} not found. Field "{field_path}" does not exist in {ref} result. '
        f"Available fields: {preview}",
        placeholder=placeholder,
        available_fields=fields,
        tool_name=entry.tool_name,
        step_id=entry.step_id,
    )


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def _resolve_string(text: str, ledger: ExecutionLedger) -> Any:
    matches = [m for m in TEMPLATE_RE.finditer(text) if _is_reference(m.group(1), ledger)]
    if not matches:
        return text

    # A string that is exactly one template yields the raw value (lists stay lists).
    if len(matches) == 1 and text.strip() == matches[0].group(0):
        m = matches[0]
        return resolve_reference(m.group(1), m.group(2), m.group(0), ledger)

    def substitute(m: re.Match) -> str:
        if not _is_reference(m.group(1), ledger):
            return m.group(0)
        return _stringify(resolve_reference(m.group(1), m.group(2), m.group(0), ledger))

    return TEMPLATE_RE.sub(substitute, text)


def resolve_templates(value: Any, ledger: ExecutionLedger) -> Any:
    """
    Replace {{stepN.field}} references throughout value with ledger data.

    Raises PlaceholderResolutionError when a reference cannot be satisfied.
    Unknown identifiers ({{name}} with no matching step) are left as-is.
    """
    if isinstance(value, dict):
        return {key: resolve_templates(item, ledger) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_templates(item, ledger) for item in value]
    if isinstance(value, str):
        return _resolve_string(value, ledger)
    return value
