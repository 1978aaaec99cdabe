"""Tests for the fmt module (ANSI-formatted output helpers)."""

from io import StringIO

from rich.console import Console

from stepwise import fmt


def _capture(func, *args, **kwargs):
    """Call a fmt function with a captured console and return plain-text output."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=80)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


class TestStepHeader:
    def test_contains_step_info(self):
        out = _capture(fmt.step_header, 3, 10, 4200)
        assert "Step 3/10" in out
        assert "4200 tokens" in out


class TestLlmTiming:
    def test_action(self):
        out = _capture(fmt.llm_timing, 1.4, "Iterate")
        assert "LLM responded in 1.4s" in out
        assert "action=Iterate" in out

    def test_missing_action(self):
        assert "action=(none)" in _capture(fmt.llm_timing, 0.2, "")


class TestCompletion:
    def test_ok(self):
        out = _capture(fmt.completion, 4, "ok")
        assert "Agent finished: 4 steps" in out
        assert "stop=" not in out

    def test_guard_stop(self):
        assert "stop=repeat" in _capture(fmt.completion, 3, "repeat")


class TestPlan:
    def test_current_step_marked(self):
        out = _capture(fmt.plan, ["find file", "read file"], 1)
        lines = [l for l in out.splitlines() if l.strip()]
        assert lines[0].strip() == "-- find file"
        assert lines[1].strip() == ">> read file"

    def test_action_with_tool(self):
        out = _capture(fmt.action, "Iterate", "read_file path=a.txt")
        assert "[Iterate] read_file path=a.txt" in out

    def test_action_empty_is_done(self):
        assert "[Done]" in _capture(fmt.action, "", "")

    def test_progress_and_reasoning(self):
        assert "[progress] half way" in _capture(fmt.progress, "half way")
        assert "[reasoning] because" in _capture(fmt.reasoning, "because")


class TestToolOutput:
    def test_tool_call_lists_args(self):
        out = _capture(fmt.tool_call, "read_file", ["path=a.txt", "n=2"])
        assert "read_file" in out
        assert "path=a.txt" in out
        assert "n=2" in out

    def test_tool_result(self):
        out = _capture(fmt.tool_result, "read_file", 0.25, "hello")
        assert "read_file" in out
        assert "0.2s" in out or "0.3s" in out
        assert "hello" in out

    def test_tool_error(self):
        assert "timed out" in _capture(fmt.tool_error, "slow", "timed out")


class TestDiagnostics:
    def test_guardrail(self):
        out = _capture(fmt.guardrail, "repeat", "`ls` called 3 times")
        assert "Guardrail (repeat)" in out

    def test_parse_error(self):
        assert "Unparseable reply: no JSON" in _capture(fmt.parse_error, "no JSON")

    def test_context_stats(self):
        assert "Gathered context: 12 chars" in _capture(fmt.context_stats, "Gathered context", 12)

    def test_warning_and_error(self):
        assert "Warning: careful" in _capture(fmt.warning, "careful")
        assert "Error: broken" in _capture(fmt.error, "broken")

    def test_brackets_survive(self):
        out = _capture(fmt.tool_call, "run", ["args=[bold]x[/bold]"])
        assert "[bold]x[/bold]" in out


class TestInit:
    def test_no_color(self):
        old = fmt._console
        fmt.init(no_color=True)
        assert fmt._console._color_system is None
        fmt._console = old

    def test_color_overrides_no_color_env(self, monkeypatch):
        """--color must explicitly set no_color=False so it overrides NO_COLOR env."""
        monkeypatch.setenv("NO_COLOR", "1")
        old = fmt._console
        fmt.init(color=True)
        assert fmt._console.no_color is False
        fmt._console = old
