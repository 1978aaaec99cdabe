"""Error taxonomy and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad key type, unknown enum value, etc.)."""


class ChannelError(AgentError):
    """The model service is unreachable or returned an error. Never recovered."""


class ParseError(AgentError):
    """A model reply could not be decoded into a Step."""


class ToolInvocationError(AgentError):
    """A tool call could not be completed (bad name, spawn failure, ...)."""

    def __init__(self, message: str, tool: str = ""):
        super().__init__(message)
        self.tool = tool


class ToolExecutionError(ToolInvocationError):
    """The tool process exited with a non-zero status."""

    def __init__(self, message: str, tool: str = "", returncode: int = 1, stderr: str = ""):
        super().__init__(message, tool)
        self.returncode = returncode
        self.stderr = stderr


class ToolTimeoutError(ToolInvocationError):
    """The tool process outlived its deadline and was killed."""

    def __init__(self, message: str, tool: str = "", timeout: float = 0):
        super().__init__(message, tool)
        self.timeout = timeout


class Cancelled(AgentError):
    """The surrounding supervisor asked the loop to stop."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.guard_trips = 0
        self.guardrail_interventions = 0
        self.parse_errors = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_step_seen = 0

    def record_llm_call(self, step: int, duration: float, token_est: int, outcome: str):
        self.llm_calls += 1
        self.total_llm_time += duration
        if step > self.max_step_seen:
            self.max_step_seen = step
        self.events.append(
            {
                "step": step,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "outcome": outcome,
            }
        )

    def record_parse_error(self, step: int, error: str):
        self.parse_errors += 1
        self.events.append({"step": step, "type": "parse_error", "error": error})

    def record_tool_call(
        self,
        step: int,
        name: str,
        arguments: list[str],
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "step": step,
            "type": "tool_call",
            "name": name,
            "arguments": list(arguments),
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_guardrail(self, step: int, guard: str, level: str):
        """Record a guard intervention; level is "nudge" or "stop"."""
        if level == "stop":
            self.guard_trips += 1
        else:
            self.guardrail_interventions += 1
        self.events.append(
            {"step": step, "type": "guardrail", "guard": guard, "level": level}
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        steps: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "steps": steps,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "parse_errors": self.parse_errors,
                "guardrail_interventions": self.guardrail_interventions,
                "guard_trips": self.guard_trips,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
