# ledger.py
# Append-only record of every executed attempt in a plan run.
#
# Entries are frozen ExecutionResult models appended in execution order.
# A retried step appends a new entry under the same step_id; readers that
# want "what happened" take the latest entry per step_id.

import json
from typing import Iterator

from plan_healer.models import ExecutionResult


class ExecutionLedger:
    """Ordered, immutable-once-written execution history."""

    def __init__(self) -> None:
        self._entries: list[ExecutionResult] = []

    def append(self, result: ExecutionResult) -> None:
        self._entries.append(result)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ExecutionResult]:
        return iter(tuple(self._entries))

    @property
    def entries(self) -> tuple[ExecutionResult, ...]:
        return tuple(self._entries)

    def tail(self, n: int = 3) -> list[ExecutionResult]:
        return self._entries[-n:] if n > 0 else []

    def before(self, step_index: int) -> list[ExecutionResult]:
        """Entries written by steps earlier in the plan than step_index."""
        return [e for e in self._entries if e.step_index < step_index]

    def attempts_for(self, step_id: str) -> list[ExecutionResult]:
        return [e for e in self._entries if e.step_id == step_id]

    def latest_for(self, step_id: str, successful_only: bool = False) -> ExecutionResult | None:
        for entry in reversed(self._entries):
            if entry.step_id != step_id:
                continue
            if successful_only and not entry.success:
                continue
            return entry
        return None

    def latest_by_step(self) -> dict[str, ExecutionResult]:
        """Final attempt per step_id, ordered by when that attempt ran."""
        latest: dict[str, ExecutionResult] = {}
        for entry in self._entries:
            latest.pop(entry.step_id, None)
            latest[entry.step_id] = entry
        return latest

    def known_step_ids(self) -> set[str]:
        return {e.step_id for e in self._entries}

    def to_context(self, entries: list[ExecutionResult] | None = None) -> str:
        """JSON rendering used as model context during regeneration."""
        selected = self.tail(3) if entries is None else entries
        return json.dumps([e.model_dump(mode="json") for e in selected], indent=2, default=str)
