"""The parsed result of one model turn, and the pure helpers around it."""

import json
import re
from dataclasses import dataclass, field


class Action:
    DONE = "Done"
    SOLVE = "Solve"
    ITERATE = "Iterate"
    THINK = "Think"
    ERROR = "Error"


ACTIONS = (Action.DONE, Action.SOLVE, Action.ITERATE, Action.THINK, Action.ERROR)
TERMINAL_ACTIONS = (Action.DONE, Action.SOLVE)


@dataclass
class Step:
    plan: list[str] = field(default_factory=list)
    plan_index: int = 0
    progress: str = ""
    reasoning: str = ""
    next_step: str = ""
    action: str = ""
    tool_required: bool = False
    tool: str = ""
    tool_params: dict[str, str] = field(default_factory=dict)

    def fill_progress(self) -> None:
        """Give progress a value so stall detection always has text to compare."""
        if self.progress.strip():
            return
        self.progress = self.reasoning.strip() or self.next_step.strip()

    def resolved_action(self) -> str:
        """Return the action, mapping empty or unknown values to Done."""
        action = canonical_action(self.action)
        return action if action in ACTIONS else Action.DONE


@dataclass
class ToolCall:
    name: str
    args: list[str] = field(default_factory=list)

    @classmethod
    def from_step(cls, step: Step) -> "ToolCall":
        return cls(step.tool, params_to_args(step.tool_params))

    def to_string(self) -> str:
        return " ".join([self.name, *self.args]).strip()


def canonical_action(value: str) -> str:
    """Match an action case-insensitively against the known set."""
    text = (value or "").strip()
    for action in ACTIONS:
        if text.lower() == action.lower():
            return action
    return text


def _param_text(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def normalize_tool_params(raw) -> dict[str, str]:
    """Fold every known tool_params encoding into one str -> str mapping.

    Accepted shapes:
      {"path": "/tmp/x"}                          (object form)
      [{"key": "path", "value": "/tmp/x"}]        (key/value-array form)
      ["path=/tmp/x"]                             (assignment strings)
    """
    params: dict[str, str] = {}
    if raw is None or raw == "":
        return params
    if isinstance(raw, dict):
        for k, v in raw.items():
            params[str(k)] = _param_text(v)
        return params
    if isinstance(raw, list):
        for item in raw:
            if isinstance(item, dict):
                if "key" in item:
                    key = _param_text(item.get("key")).strip()
                    if key:
                        params[key] = _param_text(item.get("value"))
                else:
                    for k, v in item.items():
                        params[str(k)] = _param_text(v)
            elif isinstance(item, str) and "=" in item:
                k, v = item.split("=", 1)
                if k.strip():
                    params[k.strip()] = v
        return params
    raise TypeError(f"unsupported tool_params type: {type(raw).__name__}")


def params_to_args(params: dict[str, str]) -> list[str]:
    return [f"{k}={v}" for k, v in params.items()]


_STEP_PATTERNS = [
    re.compile(r"\bstep\s*#?\s*(\d+)\s*(?:of|/)\s*\d+", re.IGNORECASE),
    re.compile(r"\b(?:completed|finished|done with)\s+step\s*#?\s*(\d+)", re.IGNORECASE),
    re.compile(r"\bstep\s*#?\s*(\d+)\b", re.IGNORECASE),
]


def extract_step_number(text: str) -> int | None:
    """Pull a self-reported step number out of free text, or None."""
    if not text:
        return None
    for pattern in _STEP_PATTERNS:
        m = pattern.search(text)
        if m:
            return int(m.group(1))
    return None
