"""Ask the model to pick a plan template from the prompt catalog."""

import json
import logging

from .parsing import extract_json_block, strip_think
from .report import ToolInvocationError
from .tools import DEFAULT_TOOL_COMMAND, get_prompt, list_prompts

logger = logging.getLogger(__name__)

SELECTION_INSTRUCTION = """You are selecting the best plan template (from the prompts catalog) to solve the user's task using tools.
Return a concise JSON object only, with the fields:
{"prompt": "server/name", "reasoning": "why this template fits"}"""

CATALOG_HEADER = "# Prompts Catalog"


def _has_prompts(catalog: str) -> bool:
    return any(
        line.strip() and line.strip() != CATALOG_HEADER for line in catalog.splitlines()
    )


def select_plan_template(
    channel, user_input: str, *, tool_command: str = DEFAULT_TOOL_COMMAND
) -> str:
    """Return a "Selected Plan Template" section, or "" when none applies.

    Catalog and lookup failures mean "no template". ChannelError is left to
    propagate like any other model failure.
    """
    try:
        catalog = list_prompts("markdown", tool_command=tool_command)
    except ToolInvocationError as e:
        logger.debug("prompt catalog unavailable: %s", e)
        return ""
    if not _has_prompts(catalog):
        return ""

    query = (
        f"{SELECTION_INSTRUCTION}\n<prompts>\n{catalog}\n</prompts>\n"
        f"<query>\n{user_input}\n</query>"
    )
    reply = channel.send_message([{"role": "user", "content": query}])
    payload, _ = extract_json_block(strip_think(reply or ""))
    if not payload.strip():
        return ""
    try:
        choice = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.debug("template choice is not JSON: %s", e)
        return ""
    if not isinstance(choice, dict):
        return ""
    name = str(choice.get("prompt") or "").strip()
    if not name or name not in catalog:
        return ""
    try:
        content = get_prompt(name, tool_command=tool_command)
    except ToolInvocationError as e:
        logger.debug("could not fetch template %s: %s", name, e)
        return ""
    return f"\n# Selected Plan Template\n\n{content.strip()}\n"
