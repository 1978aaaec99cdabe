"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Step structure ----------------------------------------------------------


def step_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Step {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, action: str) -> None:
    style = "green" if action else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  action={escape(action or '(none)')}", style=style)
    _console.print(text)


def completion(steps: int, reason: str) -> None:
    if reason == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {steps} steps", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {steps} steps, stop={reason}", style="bold red")
        )


# -- Plan and step narration -------------------------------------------------


def plan(steps: list[str], current: int) -> None:
    for i, s in enumerate(steps):
        line = Text()
        if i == current:
            line.append("  >> ", style="bold cyan")
            line.append(s, style="cyan")
        else:
            line.append("  -- ", style="green")
            line.append(s, style="green")
        _console.print(line)


def action(name: str, tool: str) -> None:
    line = Text()
    line.append(f"  [{name or 'Done'}]", style="bold blue")
    if tool:
        line.append(f" {tool}", style="magenta")
    _console.print(line)


def progress(text: str) -> None:
    line = Text()
    line.append("  [progress] ", style="green")
    line.append(text, style="dim")
    _console.print(line)


def reasoning(text: str) -> None:
    line = Text()
    line.append("  [reasoning] ", style="yellow")
    line.append(text, style="dim italic")
    _console.print(line)


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args: list[str]) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    for arg in args:
        _console.print(Text(f"    {arg}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def guardrail(guard: str, msg: str) -> None:
    line = Text()
    line.append(f"  ⚠ Guardrail ({guard}): ", style="bold yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def parse_error(msg: str) -> None:
    line = Text()
    line.append("  ✗ Unparseable reply: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, chars: int) -> None:
    _console.print(Text(f"  {label}: {chars} chars", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /exit or Ctrl-D to quit.", style="dim"))
