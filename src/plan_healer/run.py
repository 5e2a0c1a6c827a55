# run.py
# Entry point. Config and wiring only. No logic lives here.
#
# Swap PLAN_HEALER_MODEL for any OpenRouter-supported model.
# https://openrouter.ai/models

import argparse
import logging
import sys
from pathlib import Path

from rich.logging import RichHandler
from rich.prompt import Confirm

from plan_healer import display
from plan_healer.config import EngineConfig
from plan_healer.engine import PlanEngine
from plan_healer.errors import PlanParseError
from plan_healer.permissions import InMemoryPermissionStore, JsonFilePermissionStore
from plan_healer.registry import ToolRegistry
from plan_healer.tools import build_catalog


def _confirm(tool: str, args: dict) -> bool:
    return Confirm.ask(f"Run [bold]{tool}[/bold] with {args}?", console=display.console, default=False)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="plan-healer", description="Validate and self-heal tool-call plans.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--plan", type=Path, help="file holding planner output (JSON steps)")
    source.add_argument("--task", help="natural-language task to plan with the model first")
    parser.add_argument("--root", default=".", help="directory the file tools operate in")
    parser.add_argument("--max-attempts", type=int, help="override PLAN_HEALER_MAX_ATTEMPTS")
    parser.add_argument("--on-unrecoverable", choices=("fail", "retry"), help="override PLAN_HEALER_ON_UNRECOVERABLE")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    config = EngineConfig.from_env()
    overrides = {"max_attempts": args.max_attempts, "on_unrecoverable": args.on_unrecoverable}
    config = config.model_copy(update={k: v for k, v in overrides.items() if v is not None})

    logging.basicConfig(
        level=config.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=display.console, rich_tracebacks=True, show_path=False)],
    )

    permissions = (
        JsonFilePermissionStore(config.permissions_path) if config.permissions_path else InMemoryPermissionStore()
    )
    registry = ToolRegistry(local=build_catalog(args.root), permissions=permissions)
    engine = PlanEngine.from_config(config, registry, confirm=_confirm)

    display.banner(config.model, config.max_attempts, config.on_unrecoverable)
    display.tools_loaded(registry.stats())

    try:
        if args.plan:
            report = engine.run_plan(args.plan.read_text(encoding="utf-8"))
        else:
            report = engine.run_task(args.task)
    except PlanParseError as exc:
        display.halt(f"Planner output is unusable: {exc}")
        return 2
    except KeyboardInterrupt:
        engine.cancel()
        display.halt("Interrupted.")
        return 130

    return 0 if report.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
