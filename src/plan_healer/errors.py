# errors.py
# Exception taxonomy for the plan-execution engine.
#
# Validation and execution failures are raised as these types inside the
# executor's attempt loop, then classified to pick a regeneration strategy.
# The registry never raises them across its dispatch boundary.


class PlanHealerError(Exception):
    """Base class for every engine error."""


# ---------------------------------------------------------------------------
# Input problems
# ---------------------------------------------------------------------------


class SchemaViolation(PlanHealerError):
    """Raised when arguments are missing a required parameter or carry an unknown one."""


class UnresolvedPlaceholderError(PlanHealerError):
    """Raised when a step-output or generic placeholder is still present in the input."""

    def __init__(self, message: str, placeholders: list[str]) -> None:
        super().__init__(message)
        self.placeholders = placeholders


class PlaceholderResolutionError(PlanHealerError):
    """
    Raised when a {{stepN.field}} template cannot be resolved against the ledger.

    Carries the offending placeholder and the field names the referenced
    result actually has, so regeneration can offer the model real choices.
    """

    def __init__(
        self,
        message: str,
        placeholder: str,
        available_fields: list[str],
        tool_name: str = "unknown",
        step_id: str = "",
    ) -> None:
        super().__init__(message)
        self.placeholder = placeholder
        self.available_fields = available_fields
        self.tool_name = tool_name
        self.step_id = step_id


# ---------------------------------------------------------------------------
# Dispatch problems
# ---------------------------------------------------------------------------


class ToolNotFoundError(PlanHealerError):
    """Raised when a step names a tool absent from both catalogs."""


class ToolDisabledError(PlanHealerError):
    """Raised when permissions block a tool. Never auto-corrected."""


class ToolExecutionError(PlanHealerError):
    """Raised when a tool call fails, either by exception or by a result-level failure marker."""


# ---------------------------------------------------------------------------
# Model-reply problems
# ---------------------------------------------------------------------------


class PlanParseError(PlanHealerError):
    """Raised when planner output cannot be turned into a list of steps."""


class CorrectionParseError(PlanHealerError):
    """Raised when neither parse strategy recovers a correction list."""


class RegenerationParseError(PlanHealerError):
    """Raised when a regeneration reply holds no usable step object."""


class GenerationCancelled(PlanHealerError):
    """Raised when the abort signal fires during a model call."""
