# display.py
# All terminal output for the plan-healer engine.
#
# This module owns presentation entirely. The engine and executor never
# format strings; they call named functions here. Swap this file to change
# the entire UI.
#
# Colour language:
#   cyan   : engine / routing events
#   blue   : model calls
#   yellow : validation and correction
#   green  : success
#   red    : failures, halts, blocked tools
#   magenta: self-healing (regeneration)

import json

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from plan_healer.ledger import ExecutionLedger
from plan_healer.models import PlanStep, StepReport, StepStatus, ValidationIssue

console = Console()

_STATUS_STYLE = {
    StepStatus.COMPLETED: "[bold green]✓ completed[/bold green]",
    StepStatus.FAILED: "[bold red]✗ failed[/bold red]",
    StepStatus.SKIPPED: "[yellow]↷ skipped[/yellow]",
    StepStatus.CANCELLED: "[dim]⊘ cancelled[/dim]",
    StepStatus.PENDING: "[dim]… pending[/dim]",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        value = value[:max_len] + "…"
    return escape(value)


def _input_text(value) -> str:
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Pipeline entry
# ---------------------------------------------------------------------------


def banner(model: str, max_attempts: int, on_unrecoverable: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]plan-healer[/bold cyan]\n"
            "[dim]Validate, correct and self-heal tool-call plans[/dim]\n\n"
            f"[dim]Model           :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]Max attempts    :[/dim] [white]{max_attempts}[/white]\n"
            f"[dim]On unrecoverable:[/dim] [white]{on_unrecoverable}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def tools_loaded(stats: dict) -> None:
    console.print(
        _label("REGISTRY", "cyan"),
        f"[cyan] {stats['total']} tool(s) available[/cyan]"
        f"[dim]  built-in={stats['built_in']} remote={stats['remote']}[/dim]",
    )


# ---------------------------------------------------------------------------
# Plan display
# ---------------------------------------------------------------------------


def plan_parsed(steps: list[PlanStep], title: str = "ENGINE: PLAN PARSED") -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("ID", justify="center", width=6)
    table.add_column("Tool", style="bold white", width=16)
    table.add_column("Input", style="dim white", width=32)
    table.add_column("Needs", justify="center", width=8)
    table.add_column("Reason", style="white")

    for step in steps:
        table.add_row(
            escape(step.step_id),
            escape(step.tool),
            _mono(_input_text(step.input), 30),
            escape(", ".join(sorted(step.dependencies))) or "-",
            escape(step.reason or ""),
        )

    console.print(
        Panel(
            table,
            title=_label(title, "cyan"),
            subtitle=f"[dim]{len(steps)} step(s)[/dim]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validation_start() -> None:
    console.print()
    console.print(_label("VALIDATOR", "yellow"), "[yellow] → Checking steps against the tool registry…[/yellow]")


def validation_passed() -> None:
    console.print("  [bold green]✓ All steps valid[/bold green]")


def validation_issues(issues: list[ValidationIssue]) -> None:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold yellow", padding=(0, 1))
    table.add_column("Step", justify="center", width=6)
    table.add_column("Problem", style="white")
    table.add_column("Suggested fix", style="dim white")

    for issue in issues:
        table.add_row(escape(issue.step_id), escape(issue.issue), escape(issue.suggestion))

    console.print(
        Panel(
            table,
            title=_label(f"VALIDATOR: {len(issues)} ISSUE(S)", "yellow"),
            border_style="yellow",
            padding=(0, 1),
        )
    )


def correcting() -> None:
    console.print(_label("MODEL", "blue"), "[blue] → Requesting parameter corrections…[/blue]")


def corrections_applied(fixed: int, remaining: int = 0) -> None:
    line = f"  [bold green]✓ Auto-corrected {fixed} issue(s)[/bold green]"
    if remaining:
        line += f"  [yellow]{remaining} left for execution-time healing[/yellow]"
    console.print(line)


def validation_failed(error: str) -> None:
    console.print(
        Panel(
            f"[bold red]Plan could not be corrected; running the original steps.[/bold red]\n\n[white]{escape(error)}[/white]",
            title=_label("VALIDATOR: FAIL ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Execution loop
# ---------------------------------------------------------------------------


def execution_start(total: int) -> None:
    console.print()
    console.print(Rule(f"[cyan]EXECUTION: {total} step(s)[/cyan]", style="cyan"))


def step_start(index: int, total: int, description: str) -> None:
    console.print()
    console.print(
        f"[bold cyan]  STEP [{index + 1}/{total}][/bold cyan]  [white]{escape(description)}[/white]"
    )


def step_completed(step_id: str, observation: str | None) -> None:
    console.print(f"  [bold green]✓ {escape(step_id)}[/bold green]  [white]{_mono(observation or '', 140)}[/white]")


def attempt_failed(step_id: str, attempt: int, max_attempts: int, error: str) -> None:
    console.print(
        f"  [red]✗ {escape(step_id)} attempt {attempt}/{max_attempts}[/red]  [dim white]{_mono(error, 160)}[/dim white]"
    )


def regenerated(step_id: str, strategy: str, old_tool: str, new_tool: str) -> None:
    swap = f"{escape(old_tool)} → {escape(new_tool)}" if old_tool != new_tool else escape(new_tool)
    console.print(
        f"  [magenta]↻ Regenerated {escape(step_id)}[/magenta]  [dim]{strategy}[/dim]  [bold white]{swap}[/bold white]"
    )


def step_failed(step_id: str, error: str) -> None:
    console.print(f"  [bold red]✗ {escape(step_id)} failed[/bold red]  [white]{_mono(error, 160)}[/white]")


def step_blocked(step_id: str, reason: str) -> None:
    console.print(
        Panel(
            f"[bold red]{escape(reason)}[/bold red]\n"
            "[dim]Enabling a tool is a user decision. The step will not be regenerated.[/dim]",
            title=_label(f"BLOCKED: {escape(step_id)}", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def step_skipped(step_id: str, reason: str) -> None:
    console.print()
    console.print(f"  [yellow]↷ {escape(step_id)} skipped[/yellow]  [dim]{escape(reason)}[/dim]")


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def execution_summary(reports: list[StepReport], ledger: ExecutionLedger) -> None:
    console.print()
    latest = ledger.latest_by_step()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Step", justify="center", width=6)
    table.add_column("Tool", width=16)
    table.add_column("Status", width=14)
    table.add_column("Tries", justify="center", width=5)
    table.add_column("Observation", style="dim white")

    for report in reports:
        entry = latest.get(report.step.step_id)
        detail = report.error if report.status != StepStatus.COMPLETED else (entry.observation if entry else "")
        table.add_row(
            escape(report.step.step_id),
            escape(report.step.tool),
            _STATUS_STYLE[report.status],
            str(report.attempts),
            _mono(detail or "", 60),
        )

    console.print(
        Panel(
            table,
            title="[dim]EXECUTION SUMMARY[/dim]",
            subtitle=f"[dim]{len(ledger)} ledger entr{'y' if len(ledger) == 1 else 'ies'}[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )


def cancelled() -> None:
    console.print()
    console.print(_label("ENGINE", "cyan"), "[dim] Run cancelled. Remaining steps were not executed.[/dim]")


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
