import threading
from unittest.mock import MagicMock

import pytest

from plan_healer.errors import (
    GenerationCancelled,
    PlaceholderResolutionError,
    SchemaViolation,
    ToolDisabledError,
    ToolExecutionError,
    ToolNotFoundError,
)
from plan_healer.executor import SelfHealingExecutor, map_input
from plan_healer.ledger import ExecutionLedger
from plan_healer.models import PlanStep, StepStatus, ToolSchema
from plan_healer.permissions import InMemoryPermissionStore
from plan_healer.registry import LocalCatalog, ToolRegistry


def _registry(store=None, extra=None):
    catalog = LocalCatalog()
    catalog.add(
        "web_search",
        lambda args: {"results": [{"url": "https://a.example", "title": "A"}]},
        "Search the web",
        {"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]},
    )
    catalog.add(
        "summarize",
        lambda args: {"summary": args["text"][:10]},
        "Summarize text",
        {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
    )
    for name, handler in (extra or {}).items():
        catalog.add(name, handler, name, {"type": "object", "properties": {"query": {"type": "string"}}})
    return ToolRegistry(catalog, store or InMemoryPermissionStore())


def _model(*replies):
    model = MagicMock()
    model.send_streaming_message.side_effect = list(replies)
    return model


def _executor(registry=None, model=None, **kwargs):
    return SelfHealingExecutor(registry or _registry(), model or _model(), ExecutionLedger(), **kwargs)

# ---------------------------------------------------------------------------
# Input mapping
# ---------------------------------------------------------------------------

SCHEMA = ToolSchema(
    properties={"city": {"type": "string"}, "days": {"type": "number"}, "query": {"type": "string"}},
    required=["city", "days"],
)

def test_map_input_key_value_pairs():
    assert map_input("city: Paris, days: 3", SCHEMA) == {"city": "Paris", "days": "3"}

def test_map_input_key_value_rejected_when_key_unknown():
    # "country" is not in the schema, so the pairs rule is skipped.
    assert map_input("city: Paris, country: FR", SCHEMA) == {"query": "city: Paris, country: FR"}

def test_map_input_single_required():
    schema = ToolSchema(properties={"url": {"type": "string"}}, required=["url"])
    assert map_input("https://example.com", schema) == {"url": "https://example.com"}

def test_map_input_conventional_name():
    schema = ToolSchema(properties={"message": {"type": "string"}, "level": {"type": "string"}})
    assert map_input("hello", schema) == {"message": "hello"}

def test_map_input_prefers_string_required():
    schema = ToolSchema(properties={"n": {"type": "number"}, "label": {"type": "string"}}, required=["n", "label"])
    assert map_input("tag", schema) == {"label": "tag"}

def test_map_input_first_required_when_none_are_strings():
    schema = ToolSchema(properties={"n": {"type": "number"}, "m": {"type": "number"}}, required=["n", "m"])
    assert map_input("7", schema) == {"n": "7"}

def test_map_input_synthetic_fallback_and_json():
    assert map_input("anything", ToolSchema()) == {"input": "anything"}
    assert map_input('{"a": 1}', ToolSchema()) == {"a": 1}

# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("error,expected", [
    (PlaceholderResolutionError("Placeholder {{step1.x}} not found", "{{step1.x}}", ["y"]), "field_correction"),
    (SchemaViolation("Tool t is missing required parameters: q"), "fixed_parameters"),
    (ToolExecutionError("Validation failed for field"), "fixed_parameters"),
    (ToolNotFoundError("Tool not found: web"), "alternative_tool"),
    (ToolExecutionError("Missing API key for provider"), "alternative_tool"),
    (ToolExecutionError("Service unavailable"), "alternative_tool"),
    (ToolExecutionError("disk full"), None),
    (ToolDisabledError('Tool "x" is disabled by user settings'), None),
])
def test_classify(error, expected):
    assert _executor().classify(error) == expected

# ---------------------------------------------------------------------------
# Regeneration
# ---------------------------------------------------------------------------

def test_fixed_parameter_regeneration_keeps_step_id_and_dependencies():
    reply = '{"step_id": "other", "tool": "summarize", "input": {"text": "fixed"}, "dependencies": ["zzz"]}'
    executor = _executor(model=_model(reply))
    step = PlanStep(step_id="s2", tool="summarize", input={"txt": "x"}, dependencies={"s1"})

    name, replacement = executor.regenerate_step(step, 1, SchemaViolation("missing required parameters: text"))

    assert name == "fixed_parameters"
    assert replacement.step_id == "s2"
    assert replacement.dependencies == step.dependencies
    assert replacement.input == {"text": "fixed"}

def test_unparseable_regeneration_returns_original_step():
    executor = _executor(model=_model("I am not sure what to do."))
    step = PlanStep(step_id="s1", tool="summarize", input={}, dependencies={"s0"})
    name, replacement = executor.regenerate_step(step, 0, SchemaViolation("missing required parameters"))
    assert name == "fixed_parameters"
    assert replacement is step

def test_alternative_tool_found_by_substring():
    reply = '{"tool": "anything", "input": {"query": "python"}}'
    model = _model(reply)
    registry = _registry(extra={"web_search_ddg": lambda args: {"results": []}})
    executor = _executor(registry, model)
    step = PlanStep(step_id="s1", tool="web_search", input={"query": "python"}, dependencies={"s0"})

    name, replacement = executor.regenerate_step(step, 0, ToolExecutionError("API key missing"))

    assert name == "alternative_tool"
    assert replacement.tool == "web_search_ddg"
    assert replacement.dependencies == {"s0"}
    prompt = model.send_streaming_message.call_args.args[0][0]["content"]
    assert "web_search_ddg" in prompt

def test_alternative_without_candidate_falls_through():
    model = _model()
    executor = _executor(model=model)
    step = PlanStep(step_id="s1", tool="web_search", input={"query": "x"})
    name, replacement = executor.regenerate_step(step, 0, ToolExecutionError("service unavailable"))
    assert name is None
    assert replacement is step
    model.send_streaming_message.assert_not_called()

def test_alternatives_allow_list_replaces_substring_heuristic():
    registry = _registry(extra={"web_search_ddg": lambda a: {}, "news": lambda a: {}})
    executor = _executor(registry, alternatives={"web_search": ["news"]})
    assert executor.find_alternative("web_search") == "news"
    assert executor.find_alternative("summarize") is None

def test_placeholder_regeneration_sends_available_fields():
    reply = '{"tool": "summarize", "input": {"text": "{{step1.results[0].title}}"}}'
    model = _model(reply)
    executor = _executor(model=model)
    executor.run_attempt(PlanStep(step_id="step1", tool="web_search", input={"query": "q"}), 0, 1)
    error = PlaceholderResolutionError(
        "Placeholder not found", "{{step1.results[0].body}}", ["results", "results[0].title"],
        tool_name="web_search", step_id="step1",
    )
    step = PlanStep(step_id="step2", tool="summarize", input={"text": "{{step1.results[0].body}}"})

    name, replacement = executor.regenerate_step(step, 1, error)

    assert name == "field_correction"
    assert replacement.input == {"text": "{{step1.results[0].title}}"}
    prompt = model.send_streaming_message.call_args.args[0][0]["content"]
    assert "results[0].title" in prompt
    assert "https://a.example" in prompt

# ---------------------------------------------------------------------------
# Step loop
# ---------------------------------------------------------------------------

def test_failed_attempt_then_healed_step_appends_two_entries():
    reply = '{"tool": "summarize", "input": {"text": "hello world"}}'
    executor = _executor(model=_model(reply))
    step = PlanStep(step_id="s1", tool="summarize", input={"body": "hello world"})

    report = executor.execute_step(step, 0)

    assert report.status == StepStatus.COMPLETED
    assert report.attempts == 2
    assert report.strategies == ["fixed_parameters"]
    attempts = executor.ledger.attempts_for("s1")
    assert [e.success for e in attempts] == [False, True]
    assert [e.attempt for e in attempts] == [1, 2]

def test_templates_resolved_from_earlier_step():
    executor = _executor()
    steps = [
        PlanStep(step_id="step1", tool="web_search", input={"query": "q"}),
        PlanStep(step_id="step2", tool="summarize", input={"text": "{{step1.results[0].title}}"}, dependencies={"step1"}),
    ]
    reports = executor.run(steps)
    assert [r.status for r in reports] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
    assert executor.ledger.latest_for("step2").tool_args == {"text": "A"}

def test_unmatched_error_fails_by_default():
    catalog = LocalCatalog()
    catalog.add("flaky", MagicMock(side_effect=RuntimeError("disk full")))
    model = _model()
    executor = _executor(ToolRegistry(catalog, InMemoryPermissionStore()), model, max_attempts=3)

    report = executor.execute_step(PlanStep(step_id="s1", tool="flaky", input={}), 0)

    assert report.status == StepStatus.FAILED
    assert report.error == "disk full"
    assert report.attempts == 1
    model.send_streaming_message.assert_not_called()

def test_unmatched_error_retries_under_retry_policy():
    handler = MagicMock(side_effect=[RuntimeError("disk full"), RuntimeError("disk full"), "ok"])
    catalog = LocalCatalog()
    catalog.add("flaky", handler)
    executor = _executor(ToolRegistry(catalog, InMemoryPermissionStore()), max_attempts=3, on_unrecoverable="retry")

    report = executor.execute_step(PlanStep(step_id="s1", tool="flaky", input={}), 0)

    assert report.status == StepStatus.COMPLETED
    assert report.attempts == 3
    assert handler.call_count == 3

def test_attempt_exhaustion_reports_last_error():
    replies = ['{"tool": "summarize", "input": {"wrong": 1}}'] * 2
    executor = _executor(model=_model(*replies), max_attempts=3)
    report = executor.execute_step(PlanStep(step_id="s1", tool="summarize", input={}), 0)
    assert report.status == StepStatus.FAILED
    assert report.attempts == 3
    assert "missing required parameters: text" in report.error
    assert len(executor.ledger.attempts_for("s1")) == 3

def test_disabled_tool_is_never_regenerated():
    store = InMemoryPermissionStore()
    store.set_enabled("summarize", False)
    model = _model()
    executor = _executor(_registry(store), model)

    report = executor.execute_step(PlanStep(step_id="s1", tool="summarize", input={"text": "x"}), 0)

    assert report.status == StepStatus.FAILED
    assert report.error == 'Tool "summarize" is disabled by user settings'
    model.send_streaming_message.assert_not_called()

def test_disabled_tool_with_bad_input_is_blocked_not_rewritten():
    store = InMemoryPermissionStore()
    store.set_enabled("summarize", False)
    model = _model('{"tool": "web_search", "input": {"query": "x"}}')
    executor = _executor(_registry(store), model)

    report = executor.execute_step(PlanStep(step_id="s1", tool="summarize", input={"body": "x"}), 0)

    assert report.status == StepStatus.FAILED
    assert report.strategies == []
    assert "disabled by user settings" in report.error
    assert [e.tool_name for e in executor.ledger.attempts_for("s1")] == ["summarize"]
    model.send_streaming_message.assert_not_called()

def test_parameter_regeneration_cannot_switch_tools():
    reply = '{"tool": "web_search", "input": {"text": "fixed"}}'
    executor = _executor(model=_model(reply))
    step = PlanStep(step_id="s1", tool="summarize", input={"txt": "x"})

    name, replacement = executor.regenerate_step(step, 0, SchemaViolation("missing required parameters: text"))

    assert name == "fixed_parameters"
    assert replacement.tool == "summarize"
    assert replacement.input == {"text": "fixed"}

def test_confirmation_callback_gates_execution():
    store = InMemoryPermissionStore()
    store.set_confirmation_required("summarize", True)
    confirm = MagicMock(return_value=False)
    executor = _executor(_registry(store), confirm=confirm)

    report = executor.execute_step(PlanStep(step_id="s1", tool="summarize", input={"text": "x"}), 0)
    assert report.status == StepStatus.FAILED
    assert "declined" in report.error
    confirm.assert_called_once_with("summarize", {"text": "x"})

    confirm.return_value = True
    assert executor.execute_step(PlanStep(step_id="s2", tool="summarize", input={"text": "x"}), 1).status == "completed"

def test_leftover_placeholder_is_rejected_before_dispatch():
    handler = MagicMock(return_value="never")
    catalog = LocalCatalog()
    catalog.add("geo", handler, "", {"type": "object", "properties": {"lat": {"type": "string"}}})
    executor = _executor(ToolRegistry(catalog, InMemoryPermissionStore()), _model("no json"), max_attempts=2)

    report = executor.execute_step(PlanStep(step_id="s1", tool="geo", input={"lat": "<step2_latitude>"}), 0)

    assert report.status == StepStatus.FAILED
    assert "unresolved placeholders" in report.error
    handler.assert_not_called()

# ---------------------------------------------------------------------------
# Plan loop
# ---------------------------------------------------------------------------

def test_dependents_of_failed_step_are_skipped():
    store = InMemoryPermissionStore()
    store.set_enabled("web_search", False)
    executor = _executor(_registry(store))
    steps = [
        PlanStep(step_id="s1", tool="web_search", input={"query": "q"}),
        PlanStep(step_id="s2", tool="summarize", input={"text": "x"}, dependencies={"s1"}),
        PlanStep(step_id="s3", tool="summarize", input={"text": "y"}, dependencies={"s2"}),
        PlanStep(step_id="s4", tool="summarize", input={"text": "independent"}),
    ]
    reports = executor.run(steps)
    assert [r.status for r in reports] == [
        StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.SKIPPED, StepStatus.COMPLETED,
    ]
    assert "s1" in reports[1].error
    assert executor.ledger.known_step_ids() == {"s1", "s4"}

def test_abort_signal_cancels_remaining_steps():
    abort = threading.Event()

    def search(args):
        abort.set()
        return {"results": []}

    catalog = LocalCatalog()
    catalog.add("web_search", search)
    catalog.add("summarize", lambda args: "done")
    executor = _executor(ToolRegistry(catalog, InMemoryPermissionStore()), abort_signal=abort)

    reports = executor.run([
        PlanStep(step_id="s1", tool="web_search", input={}),
        PlanStep(step_id="s2", tool="summarize", input={}),
        PlanStep(step_id="s3", tool="summarize", input={}),
    ])
    assert [r.status for r in reports] == [StepStatus.COMPLETED, StepStatus.CANCELLED, StepStatus.CANCELLED]

def test_cancel_during_regeneration_cancels_rest_of_plan():
    model = MagicMock()
    model.send_streaming_message.side_effect = GenerationCancelled("aborted")
    executor = _executor(model=model)
    reports = executor.run([
        PlanStep(step_id="s1", tool="summarize", input={}),
        PlanStep(step_id="s2", tool="summarize", input={"text": "x"}),
    ])
    assert [r.status for r in reports] == [StepStatus.CANCELLED, StepStatus.CANCELLED]
