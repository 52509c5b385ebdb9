# display.py
# All terminal output for the reason-then-act loop.
#
# This module owns presentation entirely. The controller never formats
# strings for the terminal; it calls named functions here. Swap this file to
# change the entire UI; set `console.quiet = True` to silence it.
#
# Colour language:
#   cyan    — loop / routing events
#   blue    — human interaction
#   yellow  — safety gate and retries
#   green   — success / confirmed
#   red     — failures, halts, rejected calls
#   magenta — ReACT internals (Thought / Action / Observation)

import json

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

console = Console()


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


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


def banner(model_name: str, tool_names: list[str], max_iterations: int) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]ReACT Loop Harness[/bold cyan]\n"
            "[dim]Reason → act → observe, behind a fail-closed safety gate[/dim]\n\n"
            f"[dim]Model          :[/dim] [white]{escape(model_name)}[/white]\n"
            f"[dim]Tools          :[/dim] [white]{escape(', '.join(tool_names) or '—')}[/white]\n"
            f"[dim]Max iterations :[/dim] [white]{max_iterations}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def invocation_start(thread_id: str, history: int, inbound: list) -> None:
    console.print()
    console.print(Rule(f"[cyan]THREAD {escape(thread_id)}[/cyan]", style="cyan"))
    if history:
        console.print(f"[dim]  Restored {history} message(s) from checkpoint.[/dim]")
    for message in inbound:
        console.print(
            Panel(
                f"[white]{escape(message.content)}[/white]",
                title=_label(message.role.value.upper(), "cyan"),
                border_style="cyan",
                padding=(0, 2),
            )
        )


def invocation_end(thread_id: str, status: str, iteration: int, saved: bool) -> None:
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_column(style="dim")
    table.add_column(style="white")
    table.add_row("Thread", escape(thread_id))
    table.add_row("Status", status)
    table.add_row("Tool iterations", str(iteration))
    table.add_row("Checkpoint", "[green]saved[/green]" if saved else "[red]not saved[/red]")
    console.print(Panel(table, title="[dim]INVOCATION SUMMARY[/dim]", border_style="dim", padding=(0, 1)))


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def step_start(step: int, iteration: int, max_iterations: int) -> None:
    console.print()
    console.print(
        f"[bold cyan]  STEP {step}[/bold cyan]  "
        f"[dim]tool iterations {iteration}/{max_iterations} — calling model…[/dim]"
    )


def react_thought(thought: str) -> None:
    console.print(f"  [magenta]Thought[/magenta]  [dim white]{_mono(thought, 200)}[/dim white]")


def react_action(tool: str, args: dict) -> None:
    console.print(
        f"  [magenta]Action[/magenta]   [bold white]{escape(tool)}[/bold white]"
        f"  [dim]{_mono(json.dumps(args, ensure_ascii=False), 160)}[/dim]"
    )


def react_observation(observation: str) -> None:
    console.print(f"  [magenta]Observe[/magenta]  [white]{_mono(observation, 140)}[/white]")


def file_operation(kind: str, target: str) -> None:
    console.print(f"  [magenta]{kind.capitalize()}[/magenta]  [bold white]{escape(target)}[/bold white]")


def iteration_limit(max_iterations: int) -> None:
    console.print()
    console.print(
        _label("LOOP", "cyan"),
        f"[cyan] Iteration limit reached ({max_iterations}) — stopping.[/cyan]",
    )


# ---------------------------------------------------------------------------
# Safety gate
# ---------------------------------------------------------------------------


def safety_gate_pass(tool: str) -> None:
    console.print(f"  [bold green]✓ Safety gate passed[/bold green]  [dim]{escape(tool)}[/dim]")


def safety_gate_fail(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]Tool call blocked.[/bold red]\n\n[white]{escape(reason)}[/white]",
            title=_label("SAFETY GATE: FAIL ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def tool_not_found(tool_name: str) -> None:
    console.print(
        Panel(
            f"[bold red]Tool [white]{escape(repr(tool_name))}[/white] is not registered.[/bold red]\n"
            "[dim]The model requested an action outside the registry. Halting.[/dim]",
            title=_label("TOOL NOT FOUND ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Tool execution
# ---------------------------------------------------------------------------


def tool_attempt_failed(tool: str, attempt: int, max_attempts: int, error: str) -> None:
    console.print(
        f"  [yellow]↻ {escape(tool)} failed[/yellow] "
        f"[dim yellow](attempt {attempt}/{max_attempts})[/dim yellow]  [dim]{_mono(error, 100)}[/dim]"
    )


def tool_result(tool: str, success: bool, output: str, attempts: int) -> None:
    if success:
        react_observation(output)
        return
    console.print(
        f"  [bold red]✗ {escape(tool)}[/bold red] [dim]after {attempts} attempt(s)[/dim]  "
        f"[white]{_mono(output, 140)}[/white]"
    )


# ---------------------------------------------------------------------------
# Human interaction
# ---------------------------------------------------------------------------


def human_prompt(prompt: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(prompt)}[/white]",
            title=_label("INPUT REQUIRED", "blue"),
            border_style="blue",
            padding=(0, 2),
        )
    )


def confirmation_result(tool: str, confirmed: bool, outcome: str) -> None:
    if confirmed:
        console.print(f"  [bold green]✓ Confirmed[/bold green]  [dim]{escape(tool)}[/dim]")
    else:
        console.print(f"  [bold red]✗ Not confirmed[/bold red]  [dim]{escape(tool)} ({outcome})[/dim]")


def feedback_recorded(tool: str, feedback: str | None, issue_reported: bool) -> None:
    if issue_reported:
        console.print(f"  [bold red]⚑ Issue reported[/bold red]  [dim]{escape(tool)}[/dim]")
    elif feedback:
        console.print(f"  [blue]Feedback[/blue]  [white]{_mono(feedback, 140)}[/white]")


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(result)}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


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
