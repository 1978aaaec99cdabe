"""Instruction text, response schemas, and assembly of the per-step prompt."""

REASONING_LEVELS = ("low", "medium", "high")

_PREFIX_LOW = """
# System Prompt

This is a simple planning and execution agent that solves user requests with the provided tools.

## Instructions

- Create a basic plan to solve the user **request**.
  1. Understand what the user wants.
  2. Break it down into steps that may require tools.
  3. Choose simple, direct steps using the available tools.
  4. Perform each action once, do not reopen files.
- Follow the plan **step-by-step**, running one action at a time.
  1. Update the plan outline on every iteration with the tool results.
  2. Advance the plan index after each successful tool execution.
  3. Continue until the complete goal is achieved.
- Use tools to gather information instead of guessing.
- Before reaching the "Solve" state, use tools instead of asking the user
  and do not leave gaps in the plan.
"""

_PREFIX_MEDIUM = """
# System Prompt

This is a planning and execution agent that solves user requests with the provided tools using moderate reasoning.

## Instructions

- Create a plan to solve the user **request**.
  1. Analyze the query to understand the goal.
  2. Break it down into key steps if needed.
  3. Choose efficient paths, avoid redundancy.
  4. Use the available context information.
  5. Perform each action once, do not reopen files.
- Follow the plan **step-by-step**, running one action at a time.
  1. Update the plan outline on every iteration with the tool results.
  2. Track progress accurately and advance the plan index after each successful tool execution.
  3. Continue until the complete goal is achieved.
- Prefer tools over manual instructions and analyze results to decide the next step.
- Before reaching the "Solve" state, add whatever plan steps are needed to close information gaps.
"""

_PREFIX_HIGH = """
# System Prompt

This is a multi-step planning and execution agent that **efficiently** solves user requests with the provided tools.

## Instructions

- Create a plan to solve the user **request**.
  1. Analyze the query to understand the real goal.
  2. Break the problem down into a sequence of steps.
  3. Choose the **most efficient path**.
  4. Avoid unnecessary or redundant actions.
  5. Perform each action once, do not reopen files.
- Follow the plan **step-by-step**, running one action at a time.
  1. Update the plan outline on every iteration with the tool results.
  2. Track progress accurately: what to avoid, tools executed and decisions taken.
  3. Continue until the complete goal is achieved.
- Before reaching the "Solve" state
  1. Use tools instead of educating the user with manual actions.
  2. Analyze tool results to determine extra steps to perform.
  3. Do not leave information gaps in the plan, add the plan steps necessary.
"""

_PREFIXES = {"low": _PREFIX_LOW, "medium": _PREFIX_MEDIUM, "high": _PREFIX_HIGH}

_ACTIONS_TEXT = """
- "Iterate": the selected tool must be called; revise the plan if needed to progress.
- "Think": no tool this turn, reason about the next tool calls.
- "Error": something went wrong; describe it in "next_step".
- "Solve": the goal is completely solved.
- "Done": do not call any tool, the context already answers the request.
"""

SCHEMA_INSTRUCTIONS = (
    """
### Output Format

Decide the "action" for the current step of the plan:
"""
    + _ACTIONS_TEXT
    + """
Reply with a single JSON object and nothing else. Do not wrap it in markdown code blocks.

{
  "plan": ["..."],
  "current_plan_index": 0,
  "progress": "Summary of the progress towards the plan",
  "reasoning": "Why this tool is needed for the current step",
  "next_step": "Expected follow up action after calling the tool",
  "action": "Done | Solve | Think | Iterate | Error",
  "tool_required": true,
  "tool": "ToolNameToCall",
  "tool_params": {"parameterName": "parameterValue"}
}
"""
)

TEXT_INSTRUCTIONS = (
    """
### Output Format

Decide the "action" for the current step of the plan:
"""
    + _ACTIONS_TEXT
    + """
Reply using exactly these tagged blocks. The <call> block is mandatory,
one `key: value` per line; every key that is not listed below is passed
to the tool as a parameter.

<plan>
1. first step
2. second step
</plan>
<reasoning>Why this tool is needed for the current step</reasoning>
<call>
action: Iterate
plan_index: 0
progress: Summary of the progress towards the plan
next_step: Expected follow up action after calling the tool
tool_required: true
tool: ToolNameToCall
parameterName: parameterValue
</call>
"""
)

_STRING = {"type": "string"}

_BASE_PROPERTIES = {
    "plan": {
        "type": "array",
        "items": _STRING,
        "description": "A list of context-aware steps in sequential, human-readable format",
    },
    "current_plan_index": {
        "type": "integer",
        "minimum": 0,
        "description": "The index of the current step in the plan",
    },
    "progress": {
        "type": "string",
        "description": "A summary of what has been done so far or is in progress",
    },
    "reasoning": {
        "type": "string",
        "description": "Explanation of why a specific tool was chosen for the current step",
    },
    "next_step": {"type": "string", "description": "Description of what should happen next"},
    "action": {
        "type": "string",
        "enum": ["Done", "Solve", "Think", "Iterate", "Error"],
        "description": "The current action status",
    },
    "tool_required": {
        "type": "boolean",
        "description": "Whether a tool must be called for the current step",
    },
    "tool": {"type": "string", "description": "The name of the tool required"},
}

_REQUIRED = [
    "plan",
    "current_plan_index",
    "progress",
    "reasoning",
    "next_step",
    "action",
    "tool_required",
    "tool",
    "tool_params",
]


def response_schema(dialect: str = "object") -> dict:
    """JSON schema for a step; "kv" encodes tool_params as key/value pairs."""
    if dialect == "kv":
        tool_params = {
            "type": "array",
            "description": "Parameters required by the tool as key/value pairs",
            "items": {
                "type": "object",
                "properties": {
                    "key": _STRING,
                    "value": {
                        "oneOf": [
                            {"type": "string"},
                            {"type": "number"},
                            {"type": "boolean"},
                        ]
                    },
                },
                "required": ["key", "value"],
            },
        }
        return {
            "type": "object",
            "properties": {**_BASE_PROPERTIES, "tool_params": tool_params},
            "required": list(_REQUIRED),
        }
    if dialect != "object":
        raise ValueError(f"unknown schema dialect {dialect!r}")
    tool_params = {
        "type": "object",
        "additionalProperties": _STRING,
        "description": "Parameters required by the tool",
    }
    return {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {**_BASE_PROPERTIES, "tool_params": tool_params},
        "required": list(_REQUIRED),
        "additionalProperties": False,
    }


def normalize_reasoning(level: str | None) -> str:
    lvl = (level or "").strip().lower()
    return lvl if lvl in REASONING_LEVELS else "low"


def instruction_prefix(level: str | None) -> str:
    return _PREFIXES[normalize_reasoning(level)]


def build_chat_history(user_input: str, messages: list | None) -> str:
    """Render earlier assistant turns around the current request."""
    parts = []
    for m in messages or []:
        role = (m.get("role") or "").lower()
        if role not in ("assistant", "model", "ai"):
            continue
        content = m.get("content")
        if not isinstance(content, str):
            content = str(content)
        if not content.endswith("\n"):
            content += "\n"
        parts.append(content)
    if not parts:
        return f"<user>{user_input}</user>"
    return f"<user>{user_input}</user>\n<assistant>{''.join(parts)}</assistant>"


def build_prompt(
    *,
    user_input: str,
    tool_catalog: str,
    output_instructions: str,
    reasoning: str = "low",
    context: str = "",
    chat_history: str = "",
    current_plan: list[str] | None = None,
    plan_template: str = "",
    custom_prompt: str = "",
    reminders: list[str] | None = None,
) -> str:
    """Assemble the single user message sent to the model for one step."""
    level = normalize_reasoning(reasoning)
    rules = instruction_prefix(level) + plan_template
    if current_plan:
        rules += "\n\nCurrent Plan:\n" + "\n".join(
            f"{i}. {s}" for i, s in enumerate(current_plan)
        )
        rules += "\n"
    if custom_prompt.strip():
        rules += "\n\n" + custom_prompt.strip()
    rules += f"\n\nUse Reasoning: {level}\n" + output_instructions

    request = chat_history or f"<user>{user_input}</user>"
    sections = [
        f"<user-request>\n{request}\n</user-request>",
        f"<context>{context}</context>",
    ]
    if reminders:
        body = "\n".join(f"- {r}" for r in reminders)
        sections.append(f"<reminders>\n{body}\n</reminders>")
    sections.append(rules)
    sections.append(f"<tools-catalog>\n{tool_catalog}\n</tools-catalog>")
    return "\n".join(sections)
