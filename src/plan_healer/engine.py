# engine.py
# Plan-execution engine.
#
# The engine is the kernel: it owns control flow end to end. The model is a
# passive responder, asked to plan, to correct, or to regenerate, and never
# calls a tool itself.
#
# Control flow:
#   task → planner prompt? → parse steps → PlanValidator (validate, correct)
#   → SelfHealingExecutor (execute, heal) → ExecutionLedger → report
#
# All terminal output is delegated to display.py. No formatting here.

import logging
import threading

from pydantic import ValidationError

from plan_healer import display
from plan_healer.config import EngineConfig
from plan_healer.errors import GenerationCancelled, PlanParseError
from plan_healer.executor import ConfirmCallback, SelfHealingExecutor
from plan_healer.ledger import ExecutionLedger
from plan_healer.llm import LanguageModel, OpenAIChatModel
from plan_healer.models import PlanRunReport, PlanStep, StepReport, StepStatus
from plan_healer.registry import ToolRegistry
from plan_healer.textparse import parse_plan_steps
from plan_healer.validator import PlanValidator

logger = logging.getLogger(__name__)


PLANNER_PROMPT = """\
You are a planning agent with access to tools.

Break the user's task into tool calls and respond with ONLY a JSON object in
this exact shape:

{{
  "steps": [
    {{
      "step_id": "step1",
      "tool": "tool_name",
      "input": {{"param_name": "value"}},
      "reason": "what this step does and why",
      "dependencies": []
    }}
  ]
}}

To use an earlier step's output, write {{{{stepN.field}}}} as the value and list
that step in "dependencies". Never invent placeholders such as <city_name>.

Available tools and their parameters:
{tools}\
"""


def _describe_tools(registry: ToolRegistry) -> str:
    lines = []
    for descriptor in registry.list_available():
        schema = descriptor.input_schema
        params = ", ".join(
            f"{name}{'' if name in schema.required else '?'}: {prop.get('type', 'any')}"
            for name, prop in schema.properties.items()
        )
        lines.append(f"- {descriptor.name}({params}): {descriptor.description}")
    return "\n".join(lines) or "(no tools available)"


def parse_plan(text: str) -> list[PlanStep]:
    """
    Turn planner output into validated PlanStep models.

    Steps lacking a step_id are numbered step1, step2, ... by position.
    Raises PlanParseError if no step survives model validation.
    """
    steps: list[PlanStep] = []
    for position, raw in enumerate(parse_plan_steps(text), start=1):
        data = dict(raw)
        data.setdefault("step_id", data.pop("id", None) or f"step{position}")
        if "input" not in data and "args" in data:
            data["input"] = data.pop("args")
        try:
            steps.append(PlanStep.model_validate(data))
        except ValidationError as exc:
            raise PlanParseError(f"Step {position} is invalid: {exc}") from exc

    ids = [s.step_id for s in steps]
    if len(ids) != len(set(ids)):
        raise PlanParseError(f"Duplicate step_id in plan: {ids}")
    return steps


class PlanEngine:
    """
    Central engine for validated, self-healing plan execution.

    Example:
        engine = PlanEngine(registry, OpenAIChatModel("anthropic/claude-3.5-haiku"))
        report = engine.run_task("Find TODO notes and summarize them.")
    """

    def __init__(
        self,
        registry: ToolRegistry,
        model: LanguageModel,
        max_attempts: int = 3,
        on_unrecoverable: str = "fail",
        confirm: ConfirmCallback | None = None,
        alternatives: dict[str, list[str]] | None = None,
        abort_signal: threading.Event | None = None,
    ) -> None:
        self._registry = registry
        self._model = model
        self._max_attempts = max_attempts
        self._on_unrecoverable = on_unrecoverable
        self._confirm = confirm
        self._alternatives = alternatives
        self._abort_signal = abort_signal or threading.Event()

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        registry: ToolRegistry,
        confirm: ConfirmCallback | None = None,
        abort_signal: threading.Event | None = None,
    ) -> "PlanEngine":
        model = OpenAIChatModel(model=config.model, api_key=config.api_key, base_url=config.base_url)
        return cls(
            registry,
            model,
            max_attempts=config.max_attempts,
            on_unrecoverable=config.on_unrecoverable,
            confirm=confirm,
            abort_signal=abort_signal,
        )

    @property
    def abort_signal(self) -> threading.Event:
        return self._abort_signal

    def cancel(self) -> None:
        self._abort_signal.set()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def request_plan(self, task: str) -> str:
        """Ask the model to plan a task against the tools currently available."""
        messages = [
            {"role": "system", "content": PLANNER_PROMPT.format(tools=_describe_tools(self._registry))},
            {"role": "user", "content": task},
        ]
        return self._model.send_streaming_message(messages, abort_signal=self._abort_signal)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _cancelled_report(self, steps: list[PlanStep]) -> PlanRunReport:
        display.cancelled()
        return PlanRunReport(
            steps=[StepReport(step=s, status=StepStatus.CANCELLED, error="Cancelled") for s in steps],
            cancelled=True,
        )

    def run_steps(self, steps: list[PlanStep]) -> PlanRunReport:
        """
        Validate, correct, execute.

        A plan the validator could not correct still runs with its original
        steps; the executor heals what it can.
        """
        display.plan_parsed(steps)

        validator = PlanValidator(self._registry, self._model, abort_signal=self._abort_signal)
        display.validation_start()
        try:
            validation = validator.validate(steps)
        except GenerationCancelled:
            return self._cancelled_report(steps)

        if validation.issues:
            display.validation_issues(validation.issues)
        if not validation.is_valid:
            display.validation_failed(validation.error or "Unknown validation failure")
        elif validation.corrected:
            display.corrections_applied(validation.fixed_count, len(validation.remaining_issues))
            display.plan_parsed(validation.steps, title="ENGINE: CORRECTED PLAN")
        elif not validation.issues:
            display.validation_passed()

        ledger = ExecutionLedger()
        executor = SelfHealingExecutor(
            self._registry,
            self._model,
            ledger,
            max_attempts=self._max_attempts,
            on_unrecoverable=self._on_unrecoverable,
            confirm=self._confirm,
            alternatives=self._alternatives,
            abort_signal=self._abort_signal,
        )
        reports = executor.run(validation.steps)
        display.execution_summary(reports, ledger)

        cancelled = any(r.status == StepStatus.CANCELLED for r in reports)
        if cancelled:
            display.cancelled()
        return PlanRunReport(validation=validation, steps=reports, entries=list(ledger.entries), cancelled=cancelled)

    def run_plan(self, plan_text: str) -> PlanRunReport:
        """Parse planner output, then run it. Raises PlanParseError on unusable text."""
        return self.run_steps(parse_plan(plan_text))

    def run_task(self, task: str) -> PlanRunReport:
        """Plan a task with the model, then run the plan."""
        try:
            plan_text = self.request_plan(task)
        except GenerationCancelled:
            return self._cancelled_report([])
        logger.debug("Planner output: %s", plan_text)
        return self.run_plan(plan_text)
