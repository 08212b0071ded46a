"""
main.py — tabpilot Entry Point

Usage:
    tabpilot "find the cheapest flight from Paris to Rome"
    tabpilot "..." --max-steps 20 --headless
    tabpilot "..." --config path/to/config.yaml --log-level DEBUG
    python -m tabpilot "..."

Ctrl+C requests a cooperative stop: the current step finishes, then the run
ends as Stopped. A second Ctrl+C cancels the run outright.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

_STATUS_STYLE = {
    "done": "green",
    "stopped": "yellow",
    "aborted": "red",
}


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tabpilot",
        description="tabpilot — drive a browser tab toward a goal with Gemini Computer Use",
    )
    parser.add_argument("goal", help="Natural-language goal for the run")
    parser.add_argument(
        "--max-steps",
        type=int,
        default=None,
        help="Step budget for this run (default: agent.max_steps_default)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $TABPILOT_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    headless = parser.add_mutually_exclusive_group()
    headless.add_argument("--headless", dest="headless", action="store_true", default=None)
    headless.add_argument("--headed", dest="headless", action="store_false")
    parser.add_argument("--start-url", default=None, help="Page to open before the first step")
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log). Exits with code 1 on any config problem.
    """
    from pydantic import ValidationError

    from tabpilot.config.settings import ConfigError, load_settings
    from tabpilot.observability.logger import get_logger, setup_logging

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        console.print(f"\n[red]Config validation failed:[/red]\n\n{problems}\n")
        sys.exit(1)
    except (OSError, ValueError) as exc:
        console.print(f"\n[red]Failed to load config:[/red] {type(exc).__name__}: {exc}\n")
        sys.exit(1)

    if args.headless is not None:
        settings.browser.headless = args.headless
    if args.start_url:
        settings.browser.start_url = args.start_url

    try:
        settings.validate_all()
    except ConfigError as exc:
        console.print(str(exc), markup=False)
        sys.exit(1)

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    return settings, get_logger("tabpilot.main")


def render_result(state) -> None:
    style = _STATUS_STYLE.get(state.status.value, "white")
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Action")
    for i, line in enumerate(state.history, start=1):
        table.add_row(str(i), line)

    if state.history:
        console.print(table)
    console.print(
        Panel(
            state.last_result or "(no result)",
            title=f"[{style}]{state.status.value.upper()}[/{style}] after {state.step_index} step(s)",
            border_style=style,
        )
    )


async def run(args: argparse.Namespace) -> int:
    settings, log = bootstrap(args)

    from tabpilot.agent.runner import AgentRunner
    from tabpilot.agent.state import RunStatus
    from tabpilot.environment.playwright_env import launch_browser

    log.info("tabpilot.starting", goal=args.goal[:80], max_steps=args.max_steps)

    async with launch_browser(settings.browser, settings.capture) as browser:
        runner = AgentRunner.from_settings(settings, host=browser, surface=browser)
        handle = await runner.start(args.goal, args.max_steps)

        interrupts = 0

        def _on_sigint() -> None:
            nonlocal interrupts
            interrupts += 1
            if interrupts == 1:
                console.print("\n[yellow]Stopping after the current step…[/yellow]")
                handle.stop()
            else:
                handle.cancel()

        aio_loop = asyncio.get_running_loop()
        try:
            aio_loop.add_signal_handler(signal.SIGINT, _on_sigint)
        except (NotImplementedError, RuntimeError):
            log.debug("tabpilot.signal_handler_unavailable")

        with console.status(f"[bold]Running:[/bold] {args.goal}"):
            state = await handle.wait()

        try:
            aio_loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            log.debug("tabpilot.signal_handler_unavailable")
        await runner.aclose()

    render_result(state)
    return 1 if state.status is RunStatus.ABORTED else 0


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv(dotenv_path=Path.cwd() / ".env")
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
