# textparse.py
# Best-effort recovery of JSON objects from model replies.
#
# Two tiers: a direct json.loads of the fenced (or bare) payload, then a
# character scanner that walks the text tracking brace depth, string
# boundaries and escapes, yielding one balanced {...} at a time. Long or
# deeply nested replies often break strict parsing as a whole while every
# individual object is still well-formed.

import json
import logging
import re
from typing import Any, Iterator

from pydantic import ValidationError

from plan_healer.errors import CorrectionParseError, PlanParseError, RegenerationParseError
from plan_healer.models import Correction

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)
_CORRECTIONS_ARRAY_RE = re.compile(r'"corrections"\s*:\s*\[')
_STEPS_ARRAY_RE = re.compile(r'"(?:steps|plan)"\s*:\s*\[')


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


def extract_fenced_block(text: str) -> str | None:
    """Content of the first ``` fenced block, or None."""
    match = _FENCE_RE.search(text)
    return match.group(1) if match else None


def loads_lenient(raw: str) -> Any:
    """json.loads that tolerates literal newlines inside strings."""
    return json.loads(raw, strict=False)


def scan_objects(text: str, stop_at_array_end: bool = False) -> Iterator[str]:
    """
    Yield every top-level balanced {...} substring of `text`, in order.

    Braces inside double-quoted strings are ignored and backslash escapes are
    honored. Quotes are only tracked inside an object, so stray quotes in
    surrounding prose cannot desynchronize the scan. With stop_at_array_end,
    scanning halts at the first ']' found at depth 0.
    """
    depth = 0
    start = -1
    in_string = False
    escape = False

    for i, char in enumerate(text):
        if depth > 0:
            if escape:
                escape = False
                continue
            if char == "\\":
                escape = True
                continue
            if char == '"':
                in_string = not in_string
                continue
            if in_string:
                continue

        if char == "{":
            if depth == 0:
                start = i
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start : i + 1]
                start = -1
        elif char == "]" and depth == 0 and stop_at_array_end:
            return


def first_balanced_object(text: str) -> str | None:
    return next(scan_objects(text), None)


def iter_parsed_objects(text: str, stop_at_array_end: bool = False) -> Iterator[dict[str, Any]]:
    """Balanced objects that actually parse to a dict. Unparseable ones are skipped."""
    for raw in scan_objects(text, stop_at_array_end=stop_at_array_end):
        try:
            value = loads_lenient(raw)
        except json.JSONDecodeError as exc:
            logger.debug("Skipping unparseable object (%s): %s", exc, raw[:200])
            continue
        if isinstance(value, dict):
            yield value


# ---------------------------------------------------------------------------
# Correction replies
# ---------------------------------------------------------------------------


def _to_corrections(items: Any) -> list[Correction]:
    corrections: list[Correction] = []
    if not isinstance(items, list):
        return corrections
    for item in items:
        if not isinstance(item, dict) or not item.get("step_id") or not isinstance(item.get("corrected_input"), dict):
            continue
        try:
            corrections.append(Correction.model_validate(item))
        except ValidationError as exc:
            logger.debug("Dropping malformed correction %r: %s", item, exc)
    return corrections


def parse_corrections(response: str) -> list[Correction]:
    """
    Recover {"corrections": [{step_id, corrected_input}, ...]} from a model reply.

    Raises CorrectionParseError when neither tier yields a correction.
    """
    payload = extract_fenced_block(response)
    if payload is None:
        brace = response.find("{")
        if brace < 0:
            raise CorrectionParseError("No corrections JSON found in response")
        payload = response[brace:]

    try:
        data = loads_lenient(payload)
    except json.JSONDecodeError as exc:
        logger.debug("Direct parse of corrections failed (%s); falling back to brace scan", exc)
    else:
        if isinstance(data, dict):
            corrections = _to_corrections(data.get("corrections"))
            if corrections:
                return corrections

    for source in (payload, response):
        match = _CORRECTIONS_ARRAY_RE.search(source)
        if not match:
            continue
        recovered = _to_corrections(list(iter_parsed_objects(source[match.end() :], stop_at_array_end=True)))
        if recovered:
            logger.debug("Recovered %d corrections by brace scan", len(recovered))
            return recovered

    raise CorrectionParseError("Could not recover any correction from the model reply")


# ---------------------------------------------------------------------------
# Regeneration replies
# ---------------------------------------------------------------------------


def parse_step_object(response: str) -> dict[str, Any]:
    """First balanced object in the reply that parses to a dict."""
    payload = extract_fenced_block(response) or response
    for value in iter_parsed_objects(payload):
        return value
    if payload is not response:
        for value in iter_parsed_objects(response):
            return value
    raise RegenerationParseError("No JSON object found in regeneration reply")


# ---------------------------------------------------------------------------
# Planner output
# ---------------------------------------------------------------------------


def parse_plan_steps(text: str) -> list[dict[str, Any]]:
    """
    Accept a JSON list of steps or {"steps": [...]}, fenced or bare.

    Falls back to scanning for individual step objects carrying a "tool" key.
    """
    payload = extract_fenced_block(text) or text.strip()
    try:
        data = loads_lenient(payload)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        data = data.get("steps") or data.get("plan")
    if isinstance(data, list):
        steps = [s for s in data if isinstance(s, dict)]
        if steps:
            return steps

    match = _STEPS_ARRAY_RE.search(payload)
    scope = payload[match.end() :] if match else payload
    recovered = [obj for obj in iter_parsed_objects(scope, stop_at_array_end=bool(match)) if "tool" in obj]
    if recovered:
        return recovered
    raise PlanParseError("Planner output holds no recognizable steps")
