"""Turn raw model replies into Steps.

Two output contracts share one Step type:

* SchemaParser reads a single JSON object, fenced or bare, optionally
  surrounded by prose or special tokens.
* TaggedTextParser reads <plan>, <reasoning> and <call> blocks out of
  free text.
"""

import json
import logging
import re
import shlex
from typing import Protocol

from .prompts import SCHEMA_INSTRUCTIONS, TEXT_INSTRUCTIONS, response_schema
from .report import ParseError
from .step import Step, canonical_action, normalize_tool_params

logger = logging.getLogger(__name__)

_THINK_RE = re.compile(r"\s*<think>.*?</think>\s*", re.IGNORECASE | re.DOTALL)
_FENCE_JSON_RE = re.compile(r"```json\s*\n?(.*?)```", re.IGNORECASE | re.DOTALL)
_FENCE_ANY_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*\n?(.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


class ResponseParser(Protocol):
    catalog_format: str

    @property
    def response_schema(self) -> dict | None: ...

    @property
    def output_instructions(self) -> str: ...

    def parse(self, text: str) -> Step: ...


def strip_think(text: str) -> str:
    """Remove <think>...</think> regions some models prefix their reply with."""
    return _THINK_RE.sub("\n", text).strip()


def strip_special_prefix(text: str) -> str:
    """Drop a leading <|...|> control-token run, keeping what follows the last |>."""
    if text.startswith("<|"):
        pos = text.rfind("|>")
        if pos != -1:
            return text[pos + 2 :].strip()
    return text


def _balanced_object(text: str) -> tuple[int, int] | None:
    """Find the first balanced {...} span; braces inside strings don't count."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            c = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif c == "\\":
                    escaped = True
                elif c == '"':
                    in_string = False
                continue
            if c == '"':
                in_string = True
            elif c == "{":
                depth += 1
            elif c == "}":
                depth -= 1
                if depth == 0:
                    return start, i + 1
        # unbalanced from this brace; try the next one
        start = text.find("{", start + 1)
    return None


def extract_json_block(text: str) -> tuple[str, str]:
    """Locate the JSON payload in a reply.

    Returns (json_text, explanation) where explanation is the prose left
    around the payload. json_text is "" when nothing object-shaped exists.
    """
    m = _FENCE_JSON_RE.search(text)
    if m:
        return m.group(1).strip(), (text[: m.start()] + text[m.end() :]).strip()
    for m in _FENCE_ANY_RE.finditer(text):
        body = m.group(1).strip()
        if body.startswith("{"):
            return body, (text[: m.start()] + text[m.end() :]).strip()
    span = _balanced_object(text)
    if span:
        a, b = span
        return text[a:b], (text[:a] + text[b:]).strip()
    return "", text.strip()


def strip_json_comments(text: str) -> str:
    """Remove // and /* */ comments outside of JSON strings, plus trailing commas."""
    out = []
    i = 0
    n = len(text)
    in_string = False
    while i < n:
        c = text[i]
        if in_string:
            out.append(c)
            if c == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if c == '"':
                in_string = False
            i += 1
            continue
        if c == '"':
            in_string = True
            out.append(c)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
        else:
            out.append(c)
            i += 1
    return _TRAILING_COMMA_RE.sub(r"\1", "".join(out)).strip()


def _as_int(value, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        m = re.search(r"-?\d+", value)
        if m:
            return int(m.group(0))
    return default


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1", "y")
    return bool(value)


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _as_plan(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [strip_list_prefix(line) for line in value.splitlines() if line.strip()]
    if isinstance(value, list):
        return [_as_text(item) for item in value]
    return [_as_text(value)]


def step_from_dict(data: dict) -> Step:
    """Build a Step from a decoded JSON object, tolerating loose types."""
    tool = _as_text(data.get("tool", data.get("selected_tool"))).strip()
    try:
        params = normalize_tool_params(data.get("tool_params", data.get("tool_args")))
    except TypeError as e:
        raise ParseError(str(e)) from e
    if "tool_required" in data:
        tool_required = _as_bool(data["tool_required"])
    else:
        tool_required = bool(tool)
    step = Step(
        plan=_as_plan(data.get("plan")),
        plan_index=_as_int(data.get("current_plan_index", data.get("plan_index"))),
        progress=_as_text(data.get("progress")),
        reasoning=_as_text(data.get("reasoning")),
        next_step=_as_text(data.get("next_step")),
        action=canonical_action(_as_text(data.get("action"))),
        tool_required=tool_required,
        tool=tool,
        tool_params=params,
    )
    step.fill_progress()
    return step


class SchemaParser:
    """Parser for the schema-constrained JSON contract."""

    catalog_format = "quiet"

    def __init__(self, dialect: str = "object"):
        if dialect not in ("object", "kv"):
            raise ValueError(f"unknown schema dialect {dialect!r}")
        self.dialect = dialect

    @property
    def response_schema(self) -> dict:
        return response_schema(self.dialect)

    @property
    def output_instructions(self) -> str:
        return SCHEMA_INSTRUCTIONS

    def parse(self, text: str) -> Step:
        cleaned = strip_special_prefix(strip_think(text or ""))
        if not cleaned:
            raise ParseError("empty response from the model")
        payload, _ = extract_json_block(cleaned)
        if not payload:
            raise ParseError("no JSON object found in the response")
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            try:
                data = json.loads(strip_json_comments(payload))
            except json.JSONDecodeError as e:
                if re.search(r'"action"\s*:\s*"Done"', payload):
                    logger.debug("unparseable reply carries a Done action, stopping")
                    return Step(
                        action="Done",
                        next_step="Cannot recover from invalid json parsing",
                        progress="Cannot recover from invalid json parsing",
                    )
                raise ParseError(f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ParseError(f"expected a JSON object, got {type(data).__name__}")
        return step_from_dict(data)


# --- Tagged text ---


_LIST_PREFIX_RE = re.compile(r"^\s*(?:[-*+•]|\d+\s*[.):]|\[\s*[xX ]?\s*\])\s*")
_ASSIGN_RE = re.compile(r"^\s*([A-Za-z_][\w-]*)\s*(?:=|:)\s?(.*)$")

_KEY_ALIASES = {
    "action": "action",
    "tool": "tool",
    "tool_name": "tool",
    "tool_required": "tool_required",
    "plan_index": "plan_index",
    "current_plan_index": "plan_index",
    "step": "plan_index",
    "progress": "progress",
    "reasoning": "reasoning",
    "next_step": "next_step",
}


def strip_list_prefix(line: str) -> str:
    """Remove numbering or bullet markers from a plan line."""
    return _LIST_PREFIX_RE.sub("", line, count=1).strip()


def extract_tag(text: str, tag: str) -> str | None:
    """Return the body of <tag>...</tag> (case-insensitive), or None.

    An opening tag with no closing tag runs to the end of the text.
    """
    pattern = re.compile(
        rf"<{re.escape(tag)}\s*>(.*?)(?:</{re.escape(tag)}\s*>|\Z)",
        re.IGNORECASE | re.DOTALL,
    )
    m = pattern.search(text)
    if m is None:
        return None
    return m.group(1).strip()


def _split_shorthand(line: str) -> tuple[str, dict[str, str]] | None:
    """Parse `toolname k=v k2=v2`; None when the line is not in that shape."""
    try:
        tokens = shlex.split(line)
    except ValueError:
        tokens = line.split()
    if not tokens or "=" in tokens[0]:
        return None
    rest = tokens[1:]
    if not all("=" in t for t in rest):
        return None
    params = {}
    for t in rest:
        k, v = t.split("=", 1)
        if k:
            params[k] = v
    return tokens[0], params


def parse_call_block(body: str) -> tuple[dict[str, str], dict[str, str]]:
    """Split a call block into (fields, tool_params)."""
    fields: dict[str, str] = {}
    params: dict[str, str] = {}
    for raw_line in body.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        m = _ASSIGN_RE.match(line)
        if m:
            key, value = m.group(1), m.group(2).strip()
            canon = _KEY_ALIASES.get(key.lower())
            if canon == "tool" and "=" in value:
                short = _split_shorthand(value)
                if short:
                    fields["tool"], extra = short
                    params.update(extra)
                    continue
            if canon:
                fields[canon] = value
            else:
                params[key] = value
            continue
        short = _split_shorthand(line)
        if short and "tool" not in fields:
            fields["tool"], extra = short
            params.update(extra)
        else:
            logger.debug("ignoring call block line: %r", line)
    return fields, params


class TaggedTextParser:
    """Parser for the free-text contract with delimited blocks."""

    catalog_format = "markdown"
    response_schema = None

    @property
    def output_instructions(self) -> str:
        return TEXT_INSTRUCTIONS

    def parse(self, text: str) -> Step:
        cleaned = strip_think(text or "")
        if not cleaned:
            raise ParseError("empty response from the model")
        call = extract_tag(cleaned, "call")
        if call is None:
            raise ParseError("missing <call> block")

        fields, params = parse_call_block(call)
        plan_body = extract_tag(cleaned, "plan") or ""
        plan = [strip_list_prefix(line) for line in plan_body.splitlines()]
        plan = [line for line in plan if line]

        reasoning = extract_tag(cleaned, "reasoning")
        if reasoning is None:
            reasoning = fields.get("reasoning", "")
        progress = extract_tag(cleaned, "progress")
        if progress is None:
            progress = fields.get("progress", "")
        next_step = extract_tag(cleaned, "next_step")
        if next_step is None:
            next_step = fields.get("next_step", "")

        tool = fields.get("tool", "").strip().replace(".", "/")
        if "tool_required" in fields:
            tool_required = _as_bool(fields["tool_required"])
        else:
            tool_required = bool(tool)

        step = Step(
            plan=plan,
            plan_index=_as_int(fields.get("plan_index")),
            progress=progress,
            reasoning=reasoning,
            next_step=next_step,
            action=canonical_action(fields.get("action", "")),
            tool_required=tool_required,
            tool=tool,
            tool_params=params,
        )
        step.fill_progress()
        return step


def make_parser(output_format: str = "schema", provider: str = "") -> ResponseParser:
    """Pick the parser for an output contract; gemini gets the key/value dialect."""
    if output_format == "text":
        return TaggedTextParser()
    if output_format != "schema":
        raise ValueError(f"unknown output format {output_format!r}")
    return SchemaParser("kv" if provider == "gemini" else "object")
