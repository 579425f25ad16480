# display.py
# Terminal rendering of the agent event stream.
#
# This module owns presentation entirely. harness.py never formats strings;
# it emits events, and render() is plugged in as one more sink. Output goes
# to stderr so stdout stays free for the answer or the JSONL stream.
#
# Colour language:
#   cyan: run / step boundaries
#   blue: model responses
#   magenta: tool calls
#   yellow: context recovery, rejected calls, limits
#   green: success
#   red: failures

import json

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from ra_agent.events import (
    AssistantMessageProduced,
    ContextPruned,
    LogEvent,
    RunCompleted,
    RunFailed,
    RunStarted,
    StepCompleted,
    StepStarted,
    ToolCallExecuted,
    ToolCallRejected,
)
from ra_agent.models import RunStatus

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = " ".join(value.split())
    if len(value) > max_len:
        value = value[:max_len] + "…"
    return escape(value)


# ---------------------------------------------------------------------------
# Run boundaries
# ---------------------------------------------------------------------------


def run_started(event: RunStarted) -> None:
    limits = (
        f"[dim]max_steps:[/dim] [white]{event.max_steps or 'unset'}[/white]   "
        f"[dim]time_limit_sec:[/dim] [white]{event.time_limit_sec or 'unset'}[/white]"
    )
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]ra[/bold cyan] [dim]one tool call per step[/dim]\n\n"
            f"[dim]Model  :[/dim] [white]{escape(event.model)}[/white]\n"
            f"[dim]Cwd    :[/dim] [white]{escape(event.cwd)}[/white]\n"
            f"[dim]Submit :[/dim] [white]{'enabled' if event.submit_enabled else 'disabled'}[/white]\n"
            f"[dim]Tools  :[/dim] [white]{', '.join(event.tools)}[/white]\n"
            f"{limits}",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def step_started(event: StepStarted) -> None:
    console.print()
    console.print(
        Rule(f"[cyan]STEP {event.step}[/cyan] [dim]{event.message_count} messages[/dim]", style="cyan")
    )


def step_completed(event: StepCompleted) -> None:
    console.print(f"  [dim]step {event.step} done, history at {event.message_count} messages[/dim]")


# ---------------------------------------------------------------------------
# Model and tools
# ---------------------------------------------------------------------------


def assistant_message(event: AssistantMessageProduced) -> None:
    if event.content_preview.strip():
        console.print(f"  [blue]Assistant[/blue] [white]{_mono(event.content_preview, 200)}[/white]")
    for call_id, name in zip(event.tool_call_ids, event.tool_names):
        console.print(f"  [blue]Calls[/blue]     [bold white]{escape(name)}[/bold white] [dim]{escape(call_id)}[/dim]")


def tool_executed(event: ToolCallExecuted) -> None:
    status = "[bold green]✓[/bold green]" if event.success else f"[bold red]✗ {event.failure}[/bold red]"
    exit_code = f" [dim]exit={event.exit_code}[/dim]" if event.exit_code is not None else ""
    console.print(
        f"  [magenta]Tool[/magenta]      [bold white]{escape(event.name)}[/bold white] {status}{exit_code}"
        f"  [dim]{event.output_chars} chars{' (truncated)' if event.truncated else ''}[/dim]"
    )
    console.print(f"  [magenta]Observe[/magenta]   [white]{_mono(event.output_preview, 140)}[/white]")
    for change in event.changes:
        console.print(f"            [dim]{change['kind']}[/dim] [white]{escape(change['path'])}[/white]")


def tool_rejected(event: ToolCallRejected) -> None:
    console.print(
        f"  [yellow]Rejected[/yellow]  [bold white]{escape(event.name)}[/bold white]"
        f" [yellow]{event.reason}[/yellow] [dim]{_mono(event.detail, 100)}[/dim]"
    )


def context_pruned(event: ContextPruned) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold yellow]Context window exceeded.[/bold yellow] Pruned history from "
            f"[white]{event.messages_before}[/white] to [white]{event.messages_after}[/white] messages.",
            title=_label(f"CONTEXT RECOVERY #{event.attempt}", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def _usage_table(event: RunCompleted) -> Table:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold dim", padding=(0, 1))
    for column in ("Steps", "Input", "Cached", "Output", "Reasoning", "Elapsed"):
        table.add_column(column, justify="right")
    usage = event.usage
    table.add_row(
        str(event.steps),
        str(usage.input_tokens),
        str(usage.cached_input_tokens),
        str(usage.output_tokens),
        str(usage.reasoning_output_tokens),
        f"{event.elapsed_ms / 1000:.1f}s",
    )
    return table


def run_completed(event: RunCompleted) -> None:
    color = "yellow" if event.status is RunStatus.LIMIT_EXCEEDED else "green"
    console.print()
    console.print(
        Panel(
            f"[white]{escape(event.answer_preview)}[/white]",
            title=_label(event.status.value.upper().replace("_", " "), color),
            border_style=color,
            padding=(1, 2),
        )
    )
    console.print(_usage_table(event))


def run_failed(event: RunFailed) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(event.error)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


_RENDERERS = {
    "run.started": run_started,
    "step.started": step_started,
    "assistant.message": assistant_message,
    "tool_call.executed": tool_executed,
    "tool_call.rejected": tool_rejected,
    "context.pruned": context_pruned,
    "step.completed": step_completed,
    "run.completed": run_completed,
    "run.failed": run_failed,
}


def render(event: LogEvent) -> None:
    """Event sink: print one event. Unknown types are dumped as JSON."""
    renderer = _RENDERERS.get(event.type)
    if renderer is None:
        console.print(f"[dim]{escape(json.dumps(event.model_dump(mode='json')))}[/dim]")
        return
    renderer(event)
