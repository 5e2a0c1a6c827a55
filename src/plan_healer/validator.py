# validator.py
# Pre-execution plan validation and model-driven parameter correction.
#
# Static checks run first and cost nothing. Only when they find something
# does the validator spend a model call, and then exactly one, covering
# every offending step at once.

import json
import logging
import re
import threading
from typing import Any

from plan_healer.errors import CorrectionParseError, GenerationCancelled
from plan_healer.llm import LanguageModel
from plan_healer.models import Correction, PlanStep, ToolDescriptor, ToolSchema, ValidationIssue, ValidationReport
from plan_healer.placeholders import check_placeholders
from plan_healer.registry import ToolRegistry
from plan_healer.schema import META_TOOLS
from plan_healer.textparse import loads_lenient, parse_corrections

logger = logging.getLogger(__name__)

FILE_OPERATION_TOOLS = frozenset({
    "view", "create", "str_replace", "sed", "create_file", "write_file", "file_write", "append_file",
})

_EXT = r"(?:md|markdown|txt|json|csv|ya?ml|html?|py|js|ts)"
_PATH_PATTERNS = [
    re.compile(rf"""["'“「]([^"'”」\n]+?\.{_EXT})["'”」]""", re.IGNORECASE),
    re.compile(rf"""(?:file|文件)\s*([^\s"',，。！？]+\.{_EXT})(?=[\s,;:!?)，。！？]|\.(?:\s|$)|$)""", re.IGNORECASE),
    re.compile(rf"""([^\s"',;()，。！？]+\.{_EXT})(?=[\s,;:!?)，。！？]|\.(?:\s|$)|$)""", re.IGNORECASE),
]

CORRECTION_PROMPT = """\
# Parameter correction task

Some steps of an execution plan have parameter problems. Fix ONLY those problems.

## Issues to fix
{issues}

## Steps with issues
{steps}

## Relevant tool requirements
{schemas}

## Requirements
- Use only parameter names the tool supports.
- Supply every required parameter with a concrete value (no placeholders).
- Keep values that are already correct exactly as they are.

Respond with a fenced JSON block in exactly this shape:

```json
{{
  "corrections": [
    {{
      "step_id": "step1",
      "corrected_input": {{"parameter_name": "corrected value"}}
    }}
  ]
}}
```

Include only the parameters that need correcting.\
"""


# ---------------------------------------------------------------------------
# Input shape helpers (shared with the executor)
# ---------------------------------------------------------------------------


def parse_step_input(raw: Any, schema: ToolSchema) -> dict[str, Any] | None:
    """
    Coerce a step input into a dict. None means it cannot be structured.

    A string that is not JSON is bound to the sole required parameter when
    the schema has exactly one.
    """
    if isinstance(raw, dict):
        return raw
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            parsed = loads_lenient(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
        if len(schema.required) == 1:
            return {schema.required[0]: raw}
        return None
    return {}


def check_parameters(params: dict[str, Any], schema: ToolSchema) -> tuple[str, str] | None:
    """(issue, suggestion) describing missing and unknown parameters, or None."""
    missing = [name for name in schema.required if name not in params]
    unknown = [name for name in params if name not in schema.properties]
    if not missing and not unknown:
        return None

    issues: list[str] = []
    suggestions: list[str] = []
    if missing:
        issues.append(f"Missing required parameters: {', '.join(missing)}")
        described = []
        for name in missing:
            desc = schema.properties.get(name, {}).get("description")
            described.append(f"{name} ({desc})" if desc else name)
        suggestions.append(f"Provide: {', '.join(described)}")
    if unknown:
        issues.append(f"Unknown parameters: {', '.join(unknown)}")
        supported = ", ".join(schema.properties) or "(none)"
        suggestions.append(f"Supported parameters: {supported}")
    return "; ".join(issues), "; ".join(suggestions)


def extract_path_from_text(text: str | None) -> str | None:
    """Find a file-name-shaped token (quoted or bare, known extension) in free text."""
    if not text:
        return None
    for pattern in _PATH_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1).strip().strip("\"'")
            if candidate:
                return candidate
    return None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _looks_like_example_path(value: Any) -> bool:
    return isinstance(value, str) and ("example" in value or "file.txt" in value)


def merge_correction(step: PlanStep, patch: dict[str, Any], schema: ToolSchema | None = None) -> PlanStep:
    """
    Apply a sparse patch to a step's input.

    Every patched key overwrites the original, except `path`: a valid
    original path is never replaced by an example-looking one. When the
    schema is known, keys it does not define are dropped. File tools still
    missing a path after merging recover one from the step's reason.
    """
    current = step.input
    if schema is not None:
        base = parse_step_input(current, schema) or {}
    else:
        base = current if isinstance(current, dict) else {}
    merged = dict(base)

    for key, corrected in patch.items():
        if key != "path":
            merged[key] = corrected
            continue
        original = base.get("path")
        if _is_blank(original):
            merged["path"] = corrected
        elif _looks_like_example_path(corrected):
            logger.debug("Keeping original path %r over example %r", original, corrected)
            merged["path"] = original
        else:
            merged["path"] = corrected

    if schema is not None and schema.properties:
        dropped = [k for k in merged if k not in schema.properties]
        for key in dropped:
            merged.pop(key)
        if dropped:
            logger.debug("Step %s: dropped unsupported parameters %s", step.step_id, dropped)

    if step.tool in FILE_OPERATION_TOOLS and _is_blank(merged.get("path")):
        inferred = extract_path_from_text(step.reason)
        if inferred:
            logger.debug("Step %s: inferred path %r from reason", step.step_id, inferred)
            merged["path"] = inferred

    return step.model_copy(update={"input": merged})


def _describe_schema(descriptor: ToolDescriptor) -> str:
    schema = descriptor.input_schema
    lines = [f"{descriptor.name}:"]
    for name, prop in schema.properties.items():
        flag = "required" if name in schema.required else "optional"
        kind = f" [{prop.get('type')}]" if prop.get("type") else ""
        desc = f" - {prop['description']}" if prop.get("description") else ""
        lines.append(f"    {name} ({flag}){kind}{desc}")
    if len(lines) == 1:
        lines.append("    (no parameters)")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# PlanValidator
# ---------------------------------------------------------------------------


class PlanValidator:
    """
    Validates plan steps against the live registry and, when needed, asks
    the model for targeted corrections.

    Example:
        validator = PlanValidator(registry, model)
        report = validator.validate(steps)
        executor.run(report.steps)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        model: LanguageModel,
        abort_signal: threading.Event | None = None,
        conversation: list[dict] | None = None,
    ) -> None:
        self._registry = registry
        self._model = model
        self._abort_signal = abort_signal
        self._conversation = list(conversation or [])

    # ------------------------------------------------------------------
    # Static checks
    # ------------------------------------------------------------------

    def check_step(self, step: PlanStep, tools: dict[str, ToolDescriptor]) -> ValidationIssue | None:
        descriptor = tools.get(step.tool)
        if descriptor is None and self._registry.is_disabled(step.tool):
            return ValidationIssue(
                step_id=step.step_id,
                tool_name=step.tool,
                issue=f'Tool "{step.tool}" is disabled by user settings',
                suggestion="Enable the tool in settings to run this step",
            )
        if descriptor is None:
            return ValidationIssue(
                step_id=step.step_id,
                tool_name=step.tool,
                issue=f'Tool "{step.tool}" does not exist',
                suggestion=f"Available tools: {', '.join(tools)}",
            )

        placeholder_problem = check_placeholders(step.input)
        if placeholder_problem:
            issue, suggestion = placeholder_problem
            return ValidationIssue(step_id=step.step_id, tool_name=step.tool, issue=issue, suggestion=suggestion)

        if step.tool in META_TOOLS:
            return None

        params = parse_step_input(step.input, descriptor.input_schema)
        if params is None:
            return ValidationIssue(
                step_id=step.step_id,
                tool_name=step.tool,
                issue="Parameter format error: input must be a JSON object",
                suggestion='Use JSON format: {"parameter": "value"}',
            )

        problem = check_parameters(params, descriptor.input_schema)
        if problem:
            issue, suggestion = problem
            return ValidationIssue(step_id=step.step_id, tool_name=step.tool, issue=issue, suggestion=suggestion)
        return None

    def analyze(self, steps: list[PlanStep], tools: dict[str, ToolDescriptor] | None = None) -> list[ValidationIssue]:
        if tools is None:
            tools = {d.name: d for d in self._registry.list_available()}
        issues = []
        for step in steps:
            issue = self.check_step(step, tools)
            if issue is not None:
                issues.append(issue)
        return issues

    # ------------------------------------------------------------------
    # Correction
    # ------------------------------------------------------------------

    def build_correction_prompt(
        self,
        steps: list[PlanStep],
        issues: list[ValidationIssue],
        tools: dict[str, ToolDescriptor],
    ) -> str:
        offending_ids = {i.step_id for i in issues}
        offending_tools = {i.tool_name for i in issues}

        issue_lines = [f"- Step {i.step_id} ({i.tool_name}): {i.issue}. Suggestion: {i.suggestion}" for i in issues]
        step_lines = [
            json.dumps(
                {"step_id": s.step_id, "tool": s.tool, "input": s.input, "reason": s.reason},
                ensure_ascii=False,
                default=str,
            )
            for s in steps
            if s.step_id in offending_ids
        ]
        schema_blocks = [_describe_schema(tools[name]) for name in offending_tools if name in tools]

        return CORRECTION_PROMPT.format(
            issues="\n".join(issue_lines),
            steps="\n".join(step_lines),
            schemas="\n\n".join(schema_blocks) or "(the referenced tools are not available)",
        )

    def request_corrections(
        self,
        steps: list[PlanStep],
        issues: list[ValidationIssue],
        tools: dict[str, ToolDescriptor],
    ) -> list[Correction]:
        """One model round-trip. Raises CorrectionParseError if nothing is recoverable."""
        prompt = self.build_correction_prompt(steps, issues, tools)
        messages = self._conversation + [{"role": "user", "content": prompt}]
        response = self._model.send_streaming_message(messages, abort_signal=self._abort_signal)
        return parse_corrections(response)

    def apply_corrections(
        self,
        steps: list[PlanStep],
        corrections: list[Correction],
        tools: dict[str, ToolDescriptor] | None = None,
    ) -> list[PlanStep]:
        patches = {c.step_id: c.corrected_input for c in corrections}
        tools = tools or {}
        result = []
        for step in steps:
            patch = patches.get(step.step_id)
            if patch is None:
                result.append(step)
                continue
            descriptor = tools.get(step.tool)
            schema = descriptor.input_schema if descriptor and step.tool not in META_TOOLS else None
            result.append(merge_correction(step, patch, schema))
        logger.debug("Applied %d corrections", len(patches))
        return result

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def validate(self, steps: list[PlanStep]) -> ValidationReport:
        """
        Validate, and correct when needed.

        Steps whose tool is disabled are reported but never sent for
        correction. GenerationCancelled propagates. Any other correction
        failure keeps the original steps, marks the report invalid and
        leaves every issue in remaining_issues for the executor to heal.
        """
        tools = {d.name: d for d in self._registry.list_available()}
        issues = self.analyze(steps, tools)
        if not issues:
            return ValidationReport(is_valid=True, steps=list(steps))

        disabled = {s.step_id for s in steps if s.tool not in tools and self._registry.is_disabled(s.tool)}
        correctable = [i for i in issues if i.step_id not in disabled]
        if not correctable:
            return ValidationReport(is_valid=True, steps=list(steps), issues=issues, remaining_issues=issues)

        logger.info("Found %d parameter issues; requesting corrections", len(correctable))
        try:
            corrections = self.request_corrections(steps, correctable, tools)
        except GenerationCancelled:
            raise
        except CorrectionParseError as exc:
            logger.warning("Correction reply unusable, keeping original steps: %s", exc)
            return ValidationReport(is_valid=False, steps=list(steps), issues=issues,
                                    remaining_issues=issues, error=str(exc))
        except Exception as exc:
            logger.error("Correction request failed, keeping original steps: %s", exc)
            return ValidationReport(is_valid=False, steps=list(steps), issues=issues,
                                    remaining_issues=issues, error=str(exc))

        corrections = [c for c in corrections if c.step_id not in disabled]
        corrected = self.apply_corrections(steps, corrections, tools)
        remaining = self.analyze(corrected, tools)
        if remaining:
            logger.warning("%d issues remain after correction; execution will self-heal", len(remaining))
        return ValidationReport(
            is_valid=True,
            steps=corrected,
            issues=issues,
            remaining_issues=remaining,
            corrected=True,
            fixed_count=len(issues) - len(remaining),
        )
