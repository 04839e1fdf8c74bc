# display.py
# All terminal output for the phase agent CLI.
#
# This module owns presentation entirely. The orchestrator never formats
# strings for the terminal; it publishes ProgressState and the
# ConsoleObserver here renders whatever changed.
#
# Colour language:
#   cyan     phases and routing
#   blue     tool catalog
#   green    success / final answer
#   red      failures
#   dim      step log entries

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from phase_agent.models import AgentReply, ProgressSnapshot
from phase_agent.registry import ToolRegistry

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
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Session entry
# ---------------------------------------------------------------------------


def banner(model: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Phase Agent[/bold cyan]\n"
            "[dim]Think → Plan → Execute → Respond[/dim]\n\n"
            f"[dim]Model :[/dim] [white]{model}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def tool_catalog(registry: ToolRegistry) -> None:
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="blue",
        show_header=True,
        header_style="bold blue",
        padding=(0, 1),
    )
    table.add_column("Tool", style="bold white", width=18)
    table.add_column("Parameters", style="dim white", width=40)
    table.add_column("Description", style="white")

    for tool in registry.list_tools():
        table.add_row(tool.name, _mono(", ".join(tool.parameters), 38), tool.description)

    console.print(Panel(table, title=_label("TOOLS", "blue"), border_style="blue", padding=(0, 1)))


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            Text(prompt, style="white"),
            title=_label("USER PROMPT", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Live progress
# ---------------------------------------------------------------------------


class ConsoleObserver:
    """
    ProgressState observer that prints only what changed since the last
    snapshot: a rule per phase change and one line per new log entry.
    """

    def __init__(self, out: Console | None = None) -> None:
        self._console = out or console
        self._phase = ""
        self._seen = 0

    def __call__(self, snap: ProgressSnapshot) -> None:
        if len(snap.steps) < self._seen:
            # New request: log was cleared.
            self._seen = 0

        if snap.current_phase and snap.current_phase != self._phase:
            self._console.print()
            self._console.print(Rule(f"[cyan]{snap.current_phase.upper()}[/cyan]", style="cyan"))
        self._phase = snap.current_phase

        for entry in snap.steps[self._seen:]:
            style = "red" if entry.startswith("❌") else "dim white"
            self._console.print(Text(f"  {_mono(entry, 160)}", style=style))
        self._seen = len(snap.steps)


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(reply: AgentReply) -> None:
    recovered = reply.trace is not None and reply.trace.error_recovered
    color = "yellow" if recovered else ("green" if reply.trace else "red")
    title = "RECOVERED" if recovered else ("RESULT" if reply.trace else "FAILED")

    console.print()
    console.print(
        Panel(
            Text(reply.text),
            title=_label(title, color),
            subtitle=(
                f"[dim]{len(reply.trace.steps)} steps · {', '.join(reply.trace.phase_completed)}[/dim]"
                if reply.trace
                else None
            ),
            border_style=color,
            padding=(1, 2),
        )
    )
    console.print()


def error(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("ERROR", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
