# display.py
# All terminal output for the runtime.
#
# The runtime itself only ever logs through the standard logging module.
# This module decides what that looks like on a terminal, and how a finished
# ExecutionResult is presented. Swap this file to change the entire UI.
#
# Colour language:
#   cyan     run scaffolding
#   magenta  reasoning and capability calls
#   green    success
#   yellow   budget exhaustion
#   red      failures

import json
import logging

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from react_runtime.models import ExecutionResult, StopReason

console = Console()

_STOP_COLOURS = {
    StopReason.COMPLETED: "green",
    StopReason.MAX_ITERATIONS: "yellow",
    StopReason.TIMEOUT: "yellow",
    StopReason.ERROR: "red",
    StopReason.USER_CANCELLED: "red",
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
        return escape(value[:max_len]) + "…"
    return escape(value)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def configure_logging(level: int | str = logging.INFO) -> None:
    """Route react_runtime log records through a rich handler."""
    handler = RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    logger = logging.getLogger("react_runtime")
    logger.handlers = [handler]
    logger.setLevel(level)
    logger.propagate = False


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


def banner(agent: str, model: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]ReAct Runtime[/bold cyan]\n\n"
            f"[dim]Agent :[/dim] [white]{escape(agent)}[/white]\n"
            f"[dim]Model :[/dim] [white]{escape(model)}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def invocation_table(result: ExecutionResult) -> Table:
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("#", justify="center", width=4)
    table.add_column("Capability", width=14)
    table.add_column("Input", style="dim white", width=28)
    table.add_column("OK", justify="center", width=4)
    table.add_column("Latency", justify="right", width=9)
    table.add_column("Output", style="dim white")

    for record in result.invocations:
        ok = "[bold green]✓[/bold green]" if record.success else "[bold red]✗[/bold red]"
        table.add_row(
            str(record.sequence_index),
            escape(record.name),
            _mono(json.dumps(record.input, default=str), 26),
            ok,
            f"{record.latency * 1000:.0f}ms",
            _mono(record.output, 60),
        )
    return table


def render_result(result: ExecutionResult) -> None:
    colour = _STOP_COLOURS[result.stop_reason]
    console.print()

    if result.invocations:
        console.print(
            Panel(
                invocation_table(result),
                title="[dim]CAPABILITY INVOCATIONS[/dim]",
                border_style="dim",
                padding=(0, 1),
            )
        )

    if result.success:
        body = f"[white]{escape(result.final_text)}[/white]"
    else:
        body = f"[bold white]{escape(result.error or result.stop_reason.value)}[/bold white]"
        if result.last_reasoning:
            body += f"\n\n[dim]Last reasoning:[/dim] [white]{_mono(result.last_reasoning, 400)}[/white]"

    console.print(
        Panel(
            body,
            title=_label(result.stop_reason.value.upper(), colour),
            subtitle=(
                f"[dim]{result.iterations_used} iteration(s) · {result.total_tokens} tokens · "
                f"${result.total_cost:.4f} · {result.elapsed:.2f}s[/dim]"
            ),
            border_style=colour,
            padding=(1, 2),
        )
    )
    console.print()
