# executor.py
# Self-healing step execution.
#
# The executor owns the attempt loop for every plan step:
#   resolve templates → map input → re-validate → permission gate
#   → dispatch → ledger
# and on failure walks an ordered rule list to pick a regeneration strategy.
# Each rule is a (predicate, strategy) pair; the first predicate that matches
# and whose strategy produces a replacement wins. A replacement always keeps
# the original step_id and dependencies. The model is never trusted with either.
#
# Terminal output is delegated to display.py.

import json
import logging
import re
import threading
from typing import Any, Callable, Literal

from plan_healer import display
from plan_healer.errors import (
    GenerationCancelled,
    PlaceholderResolutionError,
    PlanHealerError,
    RegenerationParseError,
    SchemaViolation,
    ToolDisabledError,
    ToolExecutionError,
    ToolNotFoundError,
    UnresolvedPlaceholderError,
)
from plan_healer.ledger import ExecutionLedger
from plan_healer.llm import LanguageModel
from plan_healer.models import ExecutionResult, PlanStep, StepReport, StepStatus, ToolSchema
from plan_healer.placeholders import (
    available_fields,
    find_generic_placeholders,
    find_step_placeholders,
    resolve_templates,
    result_payload,
)
from plan_healer.registry import ToolRegistry
from plan_healer.schema import META_TOOLS
from plan_healer.textparse import loads_lenient, parse_step_object

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str, dict[str, Any]], bool]
OnUnrecoverable = Literal["fail", "retry"]

CONVENTIONAL_PARAMETERS = ("query", "text", "message", "input", "value", "data")

_KEY_VALUE_RE = re.compile(r"""(\w+)\s*:\s*("[^"]*"|'[^']*'|[^,]+)""")
_FAILED_STATES = frozenset({StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELLED})


# ---------------------------------------------------------------------------
# Regeneration prompts
# ---------------------------------------------------------------------------

FIX_PARAMETERS_PROMPT = """\
A step in an execution plan failed because of a parameter problem. Regenerate
the step with correct parameters.

## Failed step
Step ID: {step_id}
Tool: {tool}
Reason: {reason}
Original input:
{input}

## Error
Type: {error_type}
Message: {error}

## Tool signature (must be followed)
```json
{signature}
```

## Most recent execution results
{context}

Make sure parameter types match the signature, every required parameter is
present, and any reference to an earlier result uses a field that exists.

Respond with ONLY one JSON object:
{{"step_id": "{step_id}", "tool": "{tool}", "input": {{"parameter": "value"}}, "reason": "why"}}\
"""

ALTERNATIVE_TOOL_PROMPT = """\
A step in an execution plan failed because its tool is unavailable. Rewrite the
step to reach the same goal with the replacement tool.

## Failed step
Step ID: {step_id}
Original tool: {tool}
Reason: {reason}
Original input:
{input}

## Error
{error}

## Replacement tool: {alternative}
```json
{signature}
```

## Most recent execution results
{context}

Translate the original input into the replacement tool's parameters.

Respond with ONLY one JSON object:
{{"step_id": "{step_id}", "tool": "{alternative}", "input": {{"parameter": "value"}}, "reason": "why"}}\
"""

PLACEHOLDER_PROMPT = """\
A step in an execution plan failed because it references a field that does not
exist in an earlier step's result.

## Failed step
Step ID: {step_id}
Tool: {tool}
Reason: {reason}
Original input:
{input}

## Placeholder error
Failed placeholder: {placeholder}
Source step: {source_step} ({source_tool})
Fields that actually exist: {fields}

## Source data sample
```json
{sample}
```

## Prior step results
{context}

Either reference one of the fields that actually exist, or drop the placeholder
and write the concrete value directly into the input.

Respond with ONLY one JSON object:
{{"step_id": "{step_id}", "tool": "{tool}", "input": {{"parameter": "value"}}, "reason": "why"}}\
"""


# ---------------------------------------------------------------------------
# Input mapping and validation
# ---------------------------------------------------------------------------


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def map_input(raw: Any, schema: ToolSchema) -> dict[str, Any]:
    """
    Turn an untyped step input into tool arguments.

    Dicts pass through and JSON object strings are decoded. Any other string
    is bound by the first rule that applies:
      1. `key: value, ...` pairs whose keys all exist in the schema
      2. the sole required parameter
      3. the first conventional name (query, text, ...) the schema defines
      4. the first string-typed required parameter, else the first required one
      5. a synthetic `input` key
    """
    if isinstance(raw, dict):
        return raw
    if raw is None:
        return {}
    if not isinstance(raw, str):
        return {"input": raw}

    try:
        parsed = loads_lenient(raw)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    pairs = _KEY_VALUE_RE.findall(raw)
    if pairs and all(key in schema.properties for key, _ in pairs):
        return {key: _unquote(value) for key, value in pairs}

    required = schema.required
    if len(required) == 1:
        return {required[0]: raw}

    for name in CONVENTIONAL_PARAMETERS:
        if name in schema.properties:
            return {name: raw}

    if required:
        for name in required:
            declared = schema.properties.get(name, {}).get("type")
            if declared in (None, "string"):
                return {name: raw}
        return {required[0]: raw}

    return {"input": raw}


def validate_args(tool: str, args: dict[str, Any], schema: ToolSchema) -> None:
    """Raise on leftover placeholders or missing required parameters."""
    placeholders = find_step_placeholders(args) + find_generic_placeholders(args)
    if placeholders:
        raise UnresolvedPlaceholderError(
            f"Tool {tool} input still contains unresolved placeholders: {', '.join(placeholders)}",
            placeholders=placeholders,
        )
    missing = [name for name in schema.required if name not in args]
    if missing:
        raise SchemaViolation(f"Tool {tool} is missing required parameters: {', '.join(missing)}")


def _observation(result: Any, max_len: int = 500) -> str:
    text = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
    return text if len(text) <= max_len else text[: max_len - 1] + "…"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _message_has(error: Exception, keywords: tuple[str, ...]) -> bool:
    message = str(error).lower()
    return any(keyword in message for keyword in keywords)


def is_placeholder_failure(error: Exception) -> bool:
    return isinstance(error, PlaceholderResolutionError)


def is_parameter_failure(error: Exception) -> bool:
    if isinstance(error, (SchemaViolation, UnresolvedPlaceholderError)):
        return True
    return _message_has(error, ("parameter", "required", "validation"))


def is_availability_failure(error: Exception) -> bool:
    if isinstance(error, ToolNotFoundError):
        return True
    return _message_has(error, ("not found", "unavailable", "api key"))


# ---------------------------------------------------------------------------
# SelfHealingExecutor
# ---------------------------------------------------------------------------


class SelfHealingExecutor:
    """
    Runs plan steps one at a time, healing failures by regeneration.

    max_attempts bounds the attempts per step, the first one included.
    on_unrecoverable decides what happens when no rule matches a failure:
    "fail" ends the step with its last error, "retry" re-attempts the
    unchanged step until max_attempts is reached.

    alternatives maps a tool name to the replacement tools it may be swapped
    for. When a tool has an entry, only those names are considered;
    otherwise any available tool whose name contains the failed name is.

    Example:
        executor = SelfHealingExecutor(registry, model, ExecutionLedger())
        reports = executor.run(validated_steps)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        model: LanguageModel,
        ledger: ExecutionLedger,
        max_attempts: int = 3,
        on_unrecoverable: OnUnrecoverable = "fail",
        confirm: ConfirmCallback | None = None,
        alternatives: dict[str, list[str]] | None = None,
        abort_signal: threading.Event | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if on_unrecoverable not in ("fail", "retry"):
            raise ValueError(f"on_unrecoverable must be 'fail' or 'retry', got {on_unrecoverable!r}")
        self._registry = registry
        self._model = model
        self._ledger = ledger
        self._max_attempts = max_attempts
        self._on_unrecoverable = on_unrecoverable
        self._confirm = confirm
        self._alternatives = alternatives or {}
        self._abort_signal = abort_signal

        self.rules: list[tuple[str, Callable[[Exception], bool], Callable[..., PlanStep | None]]] = [
            ("field_correction", is_placeholder_failure, self.regenerate_for_placeholder),
            ("fixed_parameters", is_parameter_failure, self.regenerate_fixed_parameters),
            ("alternative_tool", is_availability_failure, self.regenerate_alternative_tool),
        ]

    @property
    def ledger(self) -> ExecutionLedger:
        return self._ledger

    def _aborted(self) -> bool:
        return self._abort_signal is not None and self._abort_signal.is_set()

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    def _record(self, step: PlanStep, index: int, attempt: int, args: dict[str, Any], **fields: Any) -> ExecutionResult:
        entry = ExecutionResult(
            step_id=step.step_id,
            tool_name=step.tool,
            tool_args=args,
            step_index=index,
            attempt=attempt,
            **fields,
        )
        self._ledger.append(entry)
        return entry

    def _prepare_args(self, step: PlanStep) -> dict[str, Any]:
        descriptor = self._registry.find(step.tool)
        resolved = resolve_templates(step.input, self._ledger)
        if descriptor is None:
            raise ToolNotFoundError(f"Tool not found: {step.tool}")

        schema = descriptor.input_schema
        args = map_input(resolved, schema)
        if step.tool not in META_TOOLS:
            validate_args(step.tool, args, schema)
        return args

    def _check_enabled(self, step: PlanStep) -> None:
        if self._registry.is_disabled(step.tool):
            raise ToolDisabledError(f'Tool "{step.tool}" is disabled by user settings')

    def _gate(self, step: PlanStep, args: dict[str, Any]) -> None:
        if self._registry.requires_confirmation(step.tool):
            approved = self._confirm(step.tool, args) if self._confirm is not None else False
            if not approved:
                raise ToolDisabledError(f'Execution of "{step.tool}" was declined by the user')

    def run_attempt(self, step: PlanStep, index: int, attempt: int) -> ExecutionResult:
        """
        Execute one attempt of a step and record it.

        Every attempt that gets this far lands in the ledger, failed or not.
        Failures are re-raised as engine errors for classification.
        """
        fallback_args = step.input if isinstance(step.input, dict) else {"input": step.input}
        args = fallback_args
        try:
            # Disablement wins over any argument problem; it is never healed.
            self._check_enabled(step)
            args = self._prepare_args(step)
            self._gate(step, args)
            dispatch = self._registry.execute(step.tool, args)
            if not dispatch.success:
                error = dispatch.error or "Unknown error"
                if error.startswith("Tool not found"):
                    raise ToolNotFoundError(error)
                if "disabled by user settings" in error:
                    raise ToolDisabledError(error)
                raise ToolExecutionError(error)
        except PlanHealerError as exc:
            self._record(step, index, attempt, args, tool_error=str(exc), observation=f"Error: {exc}")
            raise

        return self._record(
            step,
            index,
            attempt,
            args,
            tool_result=dispatch.result,
            observation=_observation(dispatch.result),
        )

    # ------------------------------------------------------------------
    # Regeneration
    # ------------------------------------------------------------------

    def classify(self, error: Exception) -> str | None:
        """Name of the first rule whose predicate matches, ignoring candidates."""
        if isinstance(error, ToolDisabledError):
            return None
        for name, predicate, _ in self.rules:
            if predicate(error):
                return name
        return None

    def _ask(self, prompt: str) -> str:
        return self._model.send_streaming_message(
            [{"role": "user", "content": prompt}],
            abort_signal=self._abort_signal,
        )

    def _replacement(self, original: PlanStep, response: str, tool: str | None = None) -> PlanStep:
        try:
            data = parse_step_object(response)
        except RegenerationParseError as exc:
            logger.warning("Step %s: %s; keeping the original step", original.step_id, exc)
            return original

        new_input = data.get("input", original.input)
        if not isinstance(new_input, (dict, str)):
            new_input = original.input
        return PlanStep(
            step_id=original.step_id,
            tool=tool or data.get("tool") or original.tool,
            input=new_input,
            reason=data.get("reason") or original.reason,
            dependencies=original.dependencies,
        )

    def _signature(self, tool: str) -> str:
        descriptor = self._registry.find(tool)
        if descriptor is None:
            return "Tool signature not available"
        return descriptor.input_schema.model_dump_json(indent=2)

    def _prior_summaries(self, index: int) -> list[dict[str, Any]]:
        summaries = []
        for entry in self._ledger.before(index)[-3:]:
            data = result_payload(entry.tool_result)
            summaries.append({
                "step_id": entry.step_id,
                "tool_name": entry.tool_name,
                "available_fields": available_fields(data),
                "sample_data": json.dumps(data, ensure_ascii=False, default=str)[:300],
            })
        return summaries

    @staticmethod
    def _dump(value: Any) -> str:
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)

    def regenerate_fixed_parameters(self, step: PlanStep, index: int, error: Exception) -> PlanStep:
        prompt = FIX_PARAMETERS_PROMPT.format(
            step_id=step.step_id,
            tool=step.tool,
            reason=step.reason or "not provided",
            input=self._dump(step.input),
            error_type=type(error).__name__,
            error=error,
            signature=self._signature(step.tool),
            context=self._ledger.to_context(),
        )
        return self._replacement(step, self._ask(prompt), tool=step.tool)

    def find_alternative(self, tool: str) -> str | None:
        available = self._registry.available_names()
        if tool in self._alternatives:
            candidates = [name for name in self._alternatives[tool] if name in available and name != tool]
        else:
            candidates = [name for name in available if name != tool and tool in name]
        return candidates[0] if candidates else None

    def regenerate_alternative_tool(self, step: PlanStep, index: int, error: Exception) -> PlanStep | None:
        alternative = self.find_alternative(step.tool)
        if alternative is None:
            logger.debug("No alternative for %s; falling through", step.tool)
            return None
        prompt = ALTERNATIVE_TOOL_PROMPT.format(
            step_id=step.step_id,
            tool=step.tool,
            reason=step.reason or "not provided",
            input=self._dump(step.input),
            error=error,
            alternative=alternative,
            signature=self._signature(alternative),
            context=self._ledger.to_context(),
        )
        return self._replacement(step, self._ask(prompt), tool=alternative)

    def regenerate_for_placeholder(self, step: PlanStep, index: int, error: PlaceholderResolutionError) -> PlanStep:
        prior = self._prior_summaries(index)
        source = next((p for p in prior if p["step_id"] == error.step_id), None)
        prompt = PLACEHOLDER_PROMPT.format(
            step_id=step.step_id,
            tool=step.tool,
            reason=step.reason or "not provided",
            input=self._dump(step.input),
            placeholder=error.placeholder,
            source_step=error.step_id or "unknown",
            source_tool=error.tool_name,
            fields=", ".join(error.available_fields) or "(none)",
            sample=source["sample_data"] if source else "",
            context=self._dump(prior),
        )
        return self._replacement(step, self._ask(prompt), tool=step.tool)

    def regenerate_step(self, step: PlanStep, index: int, error: Exception) -> tuple[str | None, PlanStep]:
        """
        Walk the rules in order and return (rule name, replacement).

        A rule whose strategy finds nothing to offer falls through to the
        next. With no match the original step comes back with name None.
        Model failures other than cancellation keep the original step.
        """
        if isinstance(error, ToolDisabledError):
            return None, step
        for name, predicate, strategy in self.rules:
            if not predicate(error):
                continue
            try:
                replacement = strategy(step, index, error)
            except GenerationCancelled:
                raise
            except Exception as exc:
                logger.error("Regeneration (%s) for step %s failed: %s", name, step.step_id, exc)
                return name, step
            if replacement is not None:
                return name, replacement
        return None, step

    # ------------------------------------------------------------------
    # Step and plan loops
    # ------------------------------------------------------------------

    def execute_step(self, step: PlanStep, index: int) -> StepReport:
        current = step
        strategies: list[str] = []
        last_error: Exception | None = None

        for attempt in range(1, self._max_attempts + 1):
            if self._aborted():
                return StepReport(step=current, status=StepStatus.CANCELLED, attempts=attempt - 1,
                                  error="Cancelled", strategies=strategies)
            try:
                result = self.run_attempt(current, index, attempt)
            except ToolDisabledError as exc:
                display.step_blocked(current.step_id, str(exc))
                return StepReport(step=current, status=StepStatus.FAILED, attempts=attempt,
                                  error=str(exc), strategies=strategies)
            except PlanHealerError as exc:
                last_error = exc
                display.attempt_failed(current.step_id, attempt, self._max_attempts, str(exc))
            else:
                display.step_completed(current.step_id, result.observation)
                return StepReport(step=current, status=StepStatus.COMPLETED, attempts=attempt,
                                  strategies=strategies)

            if attempt == self._max_attempts:
                break

            try:
                name, replacement = self.regenerate_step(current, index, last_error)
            except GenerationCancelled:
                return StepReport(step=current, status=StepStatus.CANCELLED, attempts=attempt,
                                  error="Cancelled during regeneration", strategies=strategies)

            if name is None:
                if self._on_unrecoverable == "fail":
                    logger.info("Step %s: no regeneration rule matches; failing", current.step_id)
                    break
                logger.info("Step %s: no regeneration rule matches; retrying unchanged", current.step_id)
                continue

            strategies.append(name)
            display.regenerated(current.step_id, name, current.tool, replacement.tool)
            current = replacement

        display.step_failed(current.step_id, str(last_error))
        return StepReport(
            step=current,
            status=StepStatus.FAILED,
            attempts=attempt,
            error=str(last_error),
            strategies=strategies,
        )

    def run(self, steps: list[PlanStep]) -> list[StepReport]:
        """
        Execute steps in declared order.

        The run continues past failures. A step depending on a failed,
        skipped or cancelled step is skipped. Once cancelled, every
        remaining step is reported cancelled.
        """
        reports: list[StepReport] = []
        status_by_id: dict[str, StepStatus] = {}
        total = len(steps)
        cancelled = False

        display.execution_start(total)

        for index, step in enumerate(steps):
            if cancelled or self._aborted():
                cancelled = True
                report = StepReport(step=step, status=StepStatus.CANCELLED, error="Cancelled")
            else:
                blocked = sorted(d for d in step.dependencies if status_by_id.get(d) in _FAILED_STATES)
                if blocked:
                    reason = f"Dependency not satisfied: {', '.join(blocked)}"
                    display.step_skipped(step.step_id, reason)
                    report = StepReport(step=step, status=StepStatus.SKIPPED, error=reason)
                else:
                    display.step_start(index, total, step.reason or step.tool)
                    report = self.execute_step(step, index)
                    cancelled = report.status == StepStatus.CANCELLED

            status_by_id[step.step_id] = report.status
            reports.append(report)

        return reports
