"""Public library API for stepwise: Session class and Result dataclass."""

import copy
import threading
from dataclasses import dataclass
from pathlib import Path

from .config import config_to_session_kwargs, load_config
from .report import ReportCollector


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    augmented: str
    stop_reason: str | None
    messages: list[dict]
    report: dict | None


class Session:
    """Programmatic interface to the stepwise agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations.
    """

    def __init__(
        self,
        *,
        provider: str = "lmstudio",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        reasoning: str = "low",
        display: str = "quiet",
        output_format: str = "schema",
        timeout: int = 60,
        prompt: str | None = None,
        tool_command: str = "mai-tool",
        tool_output: str = "text",
        max_steps: int = 10,
        max_repeats: int = 3,
        max_stuck: int = 4,
        max_progress_repeats: int = 3,
        max_empty_results: int = 3,
        templates: bool = False,
        channel=None,
    ):
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.reasoning = reasoning
        self.display = display
        self.output_format = output_format
        self.timeout = timeout
        self.prompt = prompt
        self.tool_command = tool_command
        self.tool_output = tool_output
        self.max_steps = max_steps
        self.max_repeats = max_repeats
        self.max_stuck = max_stuck
        self.max_progress_repeats = max_progress_repeats
        self.max_empty_results = max_empty_results
        self.templates = templates
        self.channel = channel

        # Set to abort the question currently running (from another thread).
        self.cancel = threading.Event()

        # Per-conversation state (for ask() mode)
        self._history: list[dict] = []

    @classmethod
    def from_config(cls, base_dir: "str | Path" = ".", **overrides) -> "Session":
        """Build a Session from the global and project config files.

        Keyword overrides win over config values. Raises ConfigError for an
        invalid file.
        """
        kwargs = config_to_session_kwargs(load_config(Path(base_dir)))
        kwargs.update(overrides)
        return cls(**kwargs)

    def _settings(self) -> dict:
        return {
            "reasoning": self.reasoning,
            "output_format": self.output_format,
            "timeout": self.timeout,
            "tool_command": self.tool_command,
            "tool_output": self.tool_output,
            "max_steps": self.max_steps,
            "max_repeats": self.max_repeats,
            "max_stuck": self.max_stuck,
            "max_progress_repeats": self.max_progress_repeats,
            "max_empty_results": self.max_empty_results,
            "templates": self.templates,
        }

    def _context(self, report: ReportCollector | None):
        from .agent import build_context

        ctx = build_context(
            provider=self.provider,
            model=self.model,
            api_key=self.api_key,
            base_url=self.base_url,
            display=self.display,
            prompt=self.prompt,
            report=report,
            cancel=self.cancel,
            channel=self.channel,
            **self._settings(),
        )
        if self.channel is None:
            self.channel = ctx.channel
        return ctx

    def _run(self, question: str, history: list[dict], collector) -> tuple[str, str, str | None]:
        from .agent import AgentLoop, answer_from_context

        self.cancel.clear()
        ctx = self._context(collector)
        loop = AgentLoop(ctx)
        augmented = loop.run(question, history)
        answer = answer_from_context(ctx.channel, augmented, history)
        return answer, augmented, loop.stop_reason

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with fresh state. Each call is independent."""
        collector = ReportCollector() if report else None
        answer, augmented, stop_reason = self._run(question, [], collector)

        messages = [
            {"role": "user", "content": question},
            {"role": "assistant", "content": answer},
        ]
        report_dict = None
        if collector:
            report_dict = collector.build_report(
                task=question,
                model=self.model or "unknown",
                provider=self.provider,
                settings=self._settings(),
                outcome="success" if stop_reason in ("ok", "no_tools") else "guard",
                answer=answer,
                exit_code=0,
                steps=collector.max_step_seen,
            )

        return Result(
            answer=answer,
            augmented=augmented,
            stop_reason=stop_reason,
            messages=messages,
            report=report_dict,
        )

    def ask(self, question: str) -> Result:
        """Conversational: earlier answers are shown to the planner (like the REPL)."""
        answer, augmented, stop_reason = self._run(question, self._history, None)
        self._history.append({"role": "user", "content": question})
        self._history.append({"role": "assistant", "content": answer})
        return Result(
            answer=answer,
            augmented=augmented,
            stop_reason=stop_reason,
            messages=copy.deepcopy(self._history),
            report=None,
        )

    def reset(self) -> None:
        """Forget the conversation. Next ask() starts fresh."""
        self._history = []
