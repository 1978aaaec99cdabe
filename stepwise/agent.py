import argparse
import logging
import os
import re
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from importlib import metadata
from pathlib import Path
from typing import Any

import tiktoken

from . import fmt
from .config import (
    ConfigError,
    _UNSET,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
)
from .parsing import ResponseParser, make_parser
from .prompts import build_chat_history, build_prompt, normalize_reasoning
from .report import (
    AgentError,
    Cancelled,
    ChannelError,
    ParseError,
    ReportCollector,
    ToolInvocationError,
    ToolTimeoutError,
)
from .step import TERMINAL_ACTIONS, Action, Step, ToolCall, extract_step_number
from .templates import select_plan_template
from .tools import DEFAULT_TOOL_COMMAND, ToolInvoker

logger = logging.getLogger(__name__)

_encoder = tiktoken.get_encoding("cl100k_base")

MAX_RESULT_PREVIEW = 500

PROVIDERS = ("lmstudio", "openai", "anthropic", "gemini", "ollama", "openrouter", "generic")
DISPLAY_MODES = ("verbose", "plan", "progress", "reason", "quiet")

_LOCAL_DEFAULTS = {
    "lmstudio": "http://127.0.0.1:1234",
    "ollama": "http://127.0.0.1:11434",
}

# Directives injected into the next prompt when a guard notices trouble.
TRY_DIFFERENT = (
    "The last tool call (`{tool}`) returned no output. Try a different approach: "
    "change the parameters, pick another tool, or revise the plan."
)
STOP_ADAPTING = (
    "STOP: {count} tool calls in a row returned nothing. Do not keep adapting. "
    "Answer from the information already in the context and use action \"Done\"."
)
REPEAT_WARNING = (
    "IMPORTANT: You have called `{tool}` {count} times in a row. "
    "The loop stops after {limit} consecutive calls of the same tool. "
    "Move on to the next plan step or use a different tool."
)
REVISE_PLAN = (
    "IMPORTANT: You have reported step {number} for {count} turns without advancing. "
    "Either revise the plan or make forward progress on the next step."
)
GO_DEEPER = (
    "IMPORTANT: Your progress summary has not changed for {count} turns. "
    "Go deeper or change approach; repeating the same analysis will not help."
)

_PAGES_RE = re.compile(r"Pages left:\s*(\d+)")
_PAGE_TOKEN_RE = re.compile(r"next_page_token:\s*([^)\n]*)")


def estimate_tokens(text: str) -> int:
    return len(_encoder.encode(text))


# ---------------------------------------------------------------------------
# Model channel
# ---------------------------------------------------------------------------


def resolve_model(
    provider: str, model: str | None, base_url: str | None, api_key: str | None
) -> tuple[str, dict]:
    """Map a provider/model pair onto a LiteLLM model string and call kwargs."""
    if provider not in PROVIDERS:
        raise ConfigError(f"unknown provider {provider!r}")
    if not model:
        raise ConfigError(f"a model is required for provider {provider!r}")

    prefix = {
        "lmstudio": "openai",
        "generic": "openai",
        "openai": "openai",
        "anthropic": "anthropic",
        "gemini": "gemini",
        "ollama": "ollama",
        "openrouter": "openrouter",
    }[provider]
    if provider in ("lmstudio", "generic"):
        bare = model
    else:
        bare = model.removeprefix(f"{prefix}/")
    model_str = f"{prefix}/{bare}"

    kwargs: dict = {}
    if provider == "lmstudio":
        kwargs["api_base"] = f"{base_url or _LOCAL_DEFAULTS['lmstudio']}/v1"
        kwargs["api_key"] = api_key or "lm-studio"
    elif provider == "ollama":
        kwargs["api_base"] = base_url or _LOCAL_DEFAULTS["ollama"]
    elif provider == "generic":
        if not base_url:
            raise ConfigError("provider 'generic' requires base_url")
        kwargs["api_base"] = base_url
        kwargs["api_key"] = api_key or "none"
    else:
        if api_key:
            kwargs["api_key"] = api_key
        if base_url:
            kwargs["api_base"] = base_url
    return model_str, kwargs


def call_llm(
    model_str: str,
    messages: list[dict],
    *,
    response_schema: dict | None = None,
    temperature: float | None = None,
    **kwargs,
) -> str:
    """Call LiteLLM once and return the reply text. Any failure is a ChannelError."""
    import litellm

    litellm.suppress_debug_info = True

    completion_kwargs = dict(model=model_str, messages=messages, **kwargs)
    if response_schema is not None:
        completion_kwargs["response_format"] = {
            "type": "json_schema",
            "json_schema": {"name": "step", "schema": response_schema},
        }
    if temperature is not None:
        completion_kwargs["temperature"] = temperature

    try:
        response = litellm.completion(**completion_kwargs)
    except Exception as e:
        raise ChannelError(f"LLM call failed: {e}") from e

    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError) as e:
        raise ChannelError(f"malformed LLM response: {e}") from e
    return content or ""


class LiteLLMChannel:
    """Model channel backed by litellm.completion."""

    def __init__(
        self,
        provider: str = "lmstudio",
        model: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        temperature: float | None = None,
    ):
        self.provider = provider
        self.model = model
        self.temperature = temperature
        self.model_str, self._kwargs = resolve_model(provider, model, base_url, api_key)

    def send_message(
        self,
        messages: list[dict],
        stream: bool = False,
        response_schema: dict | None = None,
    ) -> str:
        if stream:
            logger.debug("streaming is not used by the agent loop, waiting for the full reply")
        return call_llm(
            self.model_str,
            messages,
            response_schema=response_schema,
            temperature=self.temperature,
            **self._kwargs,
        )


def answer_from_context(channel, augmented: str, history: list[dict] | None = None) -> str:
    """Forward the augmented request to the model for the final answer."""
    messages = [m for m in history or [] if m.get("role") in ("user", "assistant")]
    messages.append({"role": "user", "content": augmented})
    return channel.send_message(messages)


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


@dataclass
class LoopSettings:
    max_steps: int = 10
    max_repeats: int = 3
    max_stuck: int = 4
    max_progress_repeats: int = 3
    max_empty_results: int = 3
    reasoning: str = "low"
    display: str = "verbose"
    custom_prompt: str = ""
    templates: bool = False


@dataclass
class AgentContext:
    """Everything one agent loop needs, owned by the caller."""

    channel: Any
    parser: ResponseParser
    invoker: ToolInvoker
    settings: LoopSettings = field(default_factory=LoopSettings)
    report: ReportCollector | None = None
    cancel: threading.Event | None = None


@dataclass
class LoopState:
    input: str = ""
    step_count: int = 0
    context: str = ""
    chat_history: str = ""
    current_plan: list[str] = field(default_factory=list)
    last_tool_name: str = ""
    repeat_count: int = 0
    last_step_number: int | None = None
    step_stuck_count: int = 0
    last_progress: str = ""
    progress_repeat_count: int = 0
    no_result_count: int = 0
    reminders: list[str] = field(default_factory=list)
    last_progress_note: str = ""


def pagination_hint(result: str) -> str:
    """Turn a "Pages left: N (next_page_token: T)" trailer into a continuation tag."""
    m = _PAGES_RE.search(result)
    if m is None:
        return ""
    tok = _PAGE_TOKEN_RE.search(result, m.end())
    token = tok.group(1).strip(" )\r\n") if tok else ""
    return f'\n<pagination pages_left={m.group(1)} next_page_token="{token}" />\n'


def tool_output_block(step_number: int, tool: ToolCall, reasoning: str, output: str) -> str:
    return (
        f"\n\n<tool-call>Step {step_number}<tool-name>{tool.to_string()}</tool-name>\n"
        f"{reasoning}\n<output>\n{output}\n</output></tool-call>\n"
    )


def tool_error_note(tool: ToolCall, error: ToolInvocationError) -> str:
    if isinstance(error, ToolTimeoutError):
        advice = "The tool ran out of time. Narrow the request or use a different tool."
    else:
        advice = "Please try a different approach or tool."
    return (
        f"\n\n## Tool Error\n\nTool {tool.to_string()} execution failed: {error}\n\n"
        f"{advice}\n"
    )


class AgentLoop:
    """Plan, call the model, run the requested tool, repeat.

    run() returns the original request followed by everything the tools
    produced, ready to be sent back to the model for a final answer.
    """

    def __init__(self, ctx: AgentContext):
        self.ctx = ctx
        # Fixed for the life of this loop, even if the caller swaps ctx.cancel.
        self.cancel = ctx.cancel
        self.stop_reason: str | None = None
        self.steps_taken = 0

    # -- display helpers ---------------------------------------------------

    def _shows(self, *modes: str) -> bool:
        display = self.ctx.settings.display
        return display != "quiet" and (display == "verbose" or display in modes)

    def _show_step(self, step: Step) -> None:
        if self._shows("plan") and step.plan:
            fmt.plan(step.plan, step.plan_index)
        if self._shows("plan", "progress", "reason"):
            fmt.action(step.action, ToolCall.from_step(step).to_string() if step.tool else "")
        if self._shows("progress") and step.progress:
            fmt.progress(step.progress)
        if self._shows("reason") and step.reasoning:
            fmt.reasoning(step.reasoning)

    def _guard(self, state: LoopState, guard: str, msg: str, *, stop: bool) -> None:
        logger.info("guard %s (%s): %s", guard, "stop" if stop else "nudge", msg)
        if self.ctx.settings.display != "quiet":
            fmt.guardrail(guard, msg)
        if self.ctx.report:
            self.ctx.report.record_guardrail(
                state.step_count, guard, "stop" if stop else "nudge"
            )

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise Cancelled("agent loop cancelled")

    # -- loop --------------------------------------------------------------

    def run(self, user_input: str, history: list[dict] | None = None) -> str:
        ctx = self.ctx
        settings = ctx.settings
        self.stop_reason = None
        self.steps_taken = 0

        try:
            catalog = ctx.invoker.list_tools(ctx.parser.catalog_format)
        except ToolInvocationError as e:
            if settings.display != "quiet":
                fmt.warning(f"cannot retrieve tools, doing nothing: {e}")
            self.stop_reason = "no_tools"
            return user_input
        if not catalog.strip():
            if settings.display != "quiet":
                fmt.info("No tools available, doing nothing")
            self.stop_reason = "no_tools"
            return user_input

        plan_template = ""
        if settings.templates:
            self._check_cancel()
            plan_template = select_plan_template(
                ctx.channel, user_input, tool_command=ctx.invoker.tool_command
            )
            if plan_template and settings.display != "quiet":
                fmt.info("Using a plan template for the given task")

        state = LoopState(input=user_input)
        stop = "max_steps"
        while True:
            state.step_count += 1
            if state.step_count > settings.max_steps:
                state.step_count -= 1
                self._guard(
                    state,
                    "max_steps",
                    f"step ceiling of {settings.max_steps} reached",
                    stop=True,
                )
                break
            self._check_cancel()

            step = self._next_step(state, catalog, plan_template, history)
            if step is None:
                continue

            state.current_plan = list(step.plan)
            state.last_progress_note = step.progress
            self._show_step(step)

            action = step.resolved_action()
            if not step.tool and (action in TERMINAL_ACTIONS or not step.tool_required):
                if step.reasoning:
                    state.context += f"\nReasoning: {step.reasoning}\n"
                stop = "ok"
                break

            if self._track_stalls(state, step):
                stop = "stuck"
                break

            if action == Action.ERROR:
                note = step.next_step or step.reasoning or "unspecified error"
                state.context += f"\n\n## Step {state.step_count} Error\n\n{note}\n"
                continue

            if not step.tool_required or not step.tool:
                if step.reasoning:
                    state.context += (
                        f"\n<thought>Step {state.step_count}: {step.reasoning}</thought>\n"
                    )
                continue

            if self._run_tool(state, step):
                stop = "repeat"
                break

        self.stop_reason = stop
        self.steps_taken = state.step_count
        if settings.display != "quiet":
            fmt.completion(state.step_count, stop)
        if settings.display == "verbose":
            fmt.context_stats("Gathered context", len(state.context))
        return self._augment(user_input, state)

    def _next_step(
        self,
        state: LoopState,
        catalog: str,
        plan_template: str,
        history: list[dict] | None,
    ) -> Step | None:
        """Build the prompt, call the model, parse. None means "retry"."""
        ctx = self.ctx
        settings = ctx.settings
        prompt = build_prompt(
            user_input=state.input,
            tool_catalog=catalog,
            output_instructions=ctx.parser.output_instructions,
            reasoning=settings.reasoning,
            context=state.context,
            chat_history=build_chat_history(state.input, history) + state.chat_history,
            current_plan=state.current_plan,
            plan_template=plan_template,
            custom_prompt=settings.custom_prompt,
            reminders=state.reminders,
        )
        state.reminders = []

        token_est = estimate_tokens(prompt)
        if settings.display != "quiet":
            fmt.step_header(state.step_count, settings.max_steps, token_est)

        t0 = time.monotonic()
        try:
            raw = ctx.channel.send_message(
                [{"role": "user", "content": prompt}],
                stream=False,
                response_schema=ctx.parser.response_schema,
            )
        except ChannelError:
            if ctx.report:
                ctx.report.record_llm_call(
                    state.step_count, time.monotonic() - t0, token_est, "error"
                )
            raise
        elapsed = time.monotonic() - t0
        self._check_cancel()

        try:
            step = ctx.parser.parse(raw)
        except ParseError as e:
            logger.debug("parse error at step %d: %s", state.step_count, e)
            if ctx.report:
                ctx.report.record_llm_call(
                    state.step_count, elapsed, token_est, "parse_error"
                )
                ctx.report.record_parse_error(state.step_count, str(e))
            if settings.display != "quiet":
                fmt.parse_error(str(e))
            state.input += f"\n[query error] {e}. Try again with a new plan\n"
            return None

        if ctx.report:
            ctx.report.record_llm_call(state.step_count, elapsed, token_est, "ok")
        if settings.display == "verbose":
            fmt.llm_timing(elapsed, step.action)
        return step

    def _track_stalls(self, state: LoopState, step: Step) -> bool:
        """Update stall counters and queue directives; True means give up."""
        settings = self.ctx.settings

        progress = step.progress.strip()
        if progress and progress == state.last_progress:
            state.progress_repeat_count += 1
        else:
            state.last_progress = progress
            state.progress_repeat_count = 1
        if progress and state.progress_repeat_count >= settings.max_progress_repeats:
            state.reminders.append(GO_DEEPER.format(count=state.progress_repeat_count))
            self._guard(
                state,
                "progress",
                f"progress unchanged for {state.progress_repeat_count} turns",
                stop=False,
            )

        number = extract_step_number(step.progress)
        if number is None:
            number = extract_step_number(step.next_step)
        if number is None:
            number = step.plan_index + 1
        if number == state.last_step_number:
            state.step_stuck_count += 1
        else:
            state.last_step_number = number
            state.step_stuck_count = 1

        if state.step_stuck_count >= 2 * settings.max_stuck:
            self._guard(
                state,
                "stuck",
                f"step {number} has not advanced for {state.step_stuck_count} turns",
                stop=True,
            )
            return True
        if state.step_stuck_count >= settings.max_stuck:
            state.reminders.append(
                REVISE_PLAN.format(number=number, count=state.step_stuck_count)
            )
            self._guard(
                state,
                "stuck",
                f"step {number} unchanged for {state.step_stuck_count} turns",
                stop=False,
            )
        return False

    def _run_tool(self, state: LoopState, step: Step) -> bool:
        """Invoke the step's tool and fold the outcome into state.

        Returns True when the repeat guard ends the loop.
        """
        ctx = self.ctx
        settings = ctx.settings
        tool = ToolCall.from_step(step)

        if tool.name == state.last_tool_name:
            state.repeat_count += 1
        else:
            state.last_tool_name = tool.name
            state.repeat_count = 1

        if self._shows():
            fmt.tool_call(tool.name, tool.args)

        t0 = time.monotonic()
        try:
            result = ctx.invoker.call(tool.name, tool.args, cancel=self.cancel)
        except ToolInvocationError as e:
            elapsed = time.monotonic() - t0
            if ctx.report:
                ctx.report.record_tool_call(
                    state.step_count, tool.name, tool.args, False, elapsed, 0, error=str(e)
                )
            if settings.display != "quiet":
                fmt.tool_error(tool.name, str(e))
            state.chat_history += (
                f"\n<tool_call>{tool.to_string()}</tool_call>\n<tool_error>{e}</tool_error>"
            )
            state.context += tool_error_note(tool, e)
            return self._check_repeats(state)

        elapsed = time.monotonic() - t0
        if ctx.report:
            ctx.report.record_tool_call(
                state.step_count, tool.name, tool.args, True, elapsed, len(result)
            )
        if settings.display != "quiet":
            fmt.tool_result(tool.name, elapsed, result[:MAX_RESULT_PREVIEW])

        if not result:
            state.no_result_count += 1
            state.chat_history += (
                f"\n<tool_call>{tool.to_string()}</tool_call>\n<tool_result></tool_result>"
            )
            if state.no_result_count > settings.max_empty_results:
                state.reminders.append(STOP_ADAPTING.format(count=state.no_result_count))
                self._guard(
                    state,
                    "empty_results",
                    f"{state.no_result_count} empty tool results in a row",
                    stop=False,
                )
            else:
                state.reminders.append(TRY_DIFFERENT.format(tool=tool.name))
        else:
            state.no_result_count = 0
            state.context += tool_output_block(
                state.step_count, tool, step.reasoning, result
            )
            state.context += pagination_hint(result)
            state.chat_history += (
                f"\n<tool_call>{tool.to_string()}</tool_call>\n<tool_result>{result}</tool_result>"
            )
        return self._check_repeats(state)

    def _check_repeats(self, state: LoopState) -> bool:
        settings = self.ctx.settings
        count = state.repeat_count
        if count >= settings.max_repeats:
            self._guard(
                state,
                "repeat",
                f"`{state.last_tool_name}` called {count} times in a row",
                stop=True,
            )
            return True
        if count >= max(2, settings.max_repeats - 2):
            state.reminders.append(
                REPEAT_WARNING.format(
                    tool=state.last_tool_name, count=count, limit=settings.max_repeats
                )
            )
            self._guard(
                state,
                "repeat",
                f"`{state.last_tool_name}` called {count} times in a row",
                stop=False,
            )
        return False

    def _augment(self, user_input: str, state: LoopState) -> str:
        if not state.context.strip():
            return user_input
        text = user_input + state.context
        if state.last_progress_note.strip():
            text += f"\n\n## Progress\n\n{state.last_progress_note.strip()}\n"
        return text


def build_context(
    *,
    provider: str = "lmstudio",
    model: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
    output_format: str = "schema",
    tool_command: str = DEFAULT_TOOL_COMMAND,
    tool_output: str = "text",
    timeout: int = 60,
    reasoning: str = "low",
    display: str = "verbose",
    prompt: str | None = None,
    max_steps: int = 10,
    max_repeats: int = 3,
    max_stuck: int = 4,
    max_progress_repeats: int = 3,
    max_empty_results: int = 3,
    templates: bool = False,
    report: ReportCollector | None = None,
    cancel: threading.Event | None = None,
    channel=None,
) -> AgentContext:
    """Wire a channel, parser and invoker together from plain settings."""
    if display not in DISPLAY_MODES:
        raise ConfigError(f"unknown display mode {display!r}")
    if channel is None:
        channel = LiteLLMChannel(provider, model, base_url, api_key)
    try:
        parser = make_parser(output_format, provider)
        invoker = ToolInvoker(tool_command, timeout, tool_output, cancel)
    except ValueError as e:
        raise ConfigError(str(e)) from e
    settings = LoopSettings(
        max_steps=max_steps,
        max_repeats=max_repeats,
        max_stuck=max_stuck,
        max_progress_repeats=max_progress_repeats,
        max_empty_results=max_empty_results,
        reasoning=normalize_reasoning(reasoning),
        display=display,
        custom_prompt=prompt or "",
        templates=templates,
    )
    return AgentContext(
        channel=channel,
        parser=parser,
        invoker=invoker,
        settings=settings,
        report=report,
        cancel=cancel,
    )


def run_cancellable(fn, cancel: threading.Event):
    """Run fn in a worker thread; Ctrl-C sets cancel and abandons the worker."""
    outcome: dict = {}

    def _worker():
        try:
            outcome["value"] = fn()
        except BaseException as e:  # re-raised in the caller's thread
            outcome["error"] = e

    worker = threading.Thread(target=_worker, daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.1)
    except KeyboardInterrupt:
        cancel.set()
        raise Cancelled("interrupted")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser.

    Options that can come from config files default to _UNSET so that
    apply_config_to_args() can tell them apart from explicit CLI values.
    """
    parser = argparse.ArgumentParser(
        prog="stepwise",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A planning agent that solves requests by calling external tools step by step.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "--init-config",
        nargs="?",
        const="global",
        choices=("global", "project"),
        default=None,
        metavar="global|project",
        help="Print a commented config template (global by default) and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Directory holding the project stepwise.toml (default: current directory).",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider (default: lmstudio).",
    )
    parser.add_argument("--model", default=_UNSET, help="Model identifier.")
    parser.add_argument("--api-key", default=_UNSET, help="API key for the provider.")
    parser.add_argument("--base-url", default=_UNSET, help="Server base URL.")
    parser.add_argument(
        "--reasoning",
        choices=["low", "medium", "high"],
        default=_UNSET,
        help="Planning depth requested from the model (default: low).",
    )
    parser.add_argument(
        "--display",
        choices=list(DISPLAY_MODES),
        default=_UNSET,
        help="What to show while the loop runs (default: verbose).",
    )
    parser.add_argument(
        "--output-format",
        choices=["schema", "text"],
        default=_UNSET,
        help="Reply contract: schema-constrained JSON or tagged text (default: schema).",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=_UNSET,
        help="Per tool call timeout in seconds (default: 60).",
    )
    parser.add_argument(
        "--prompt",
        default=_UNSET,
        help="Extra instructions appended to every planning prompt.",
    )
    parser.add_argument(
        "--tool-command",
        default=_UNSET,
        help="Executable used to list and call tools (default: mai-tool).",
    )
    parser.add_argument(
        "--tool-output",
        choices=["text", "json", "xml"],
        default=_UNSET,
        help="Output format requested from tools (default: text).",
    )
    parser.add_argument(
        "--max-steps", type=int, default=_UNSET, help="Step ceiling (default: 10)."
    )
    parser.add_argument(
        "--max-repeats",
        type=int,
        default=_UNSET,
        help="Consecutive calls of one tool before stopping (default: 3).",
    )
    parser.add_argument(
        "--max-stuck",
        type=int,
        default=_UNSET,
        help="Turns on one plan step before asking for a new plan (default: 4).",
    )
    parser.add_argument(
        "--max-progress-repeats",
        type=int,
        default=_UNSET,
        help="Turns with identical progress text before nudging (default: 3).",
    )
    parser.add_argument(
        "--max-empty-results",
        type=int,
        default=_UNSET,
        help="Empty tool results tolerated before demanding an answer (default: 3).",
    )
    parser.add_argument(
        "--templates",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Let the model pick a plan template from the prompt catalog.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--report",
        default=_UNSET,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    return parser


def _context_kwargs(args) -> dict:
    return dict(
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        output_format=args.output_format,
        tool_command=args.tool_command,
        tool_output=args.tool_output,
        timeout=args.timeout,
        reasoning=args.reasoning,
        display=args.display,
        prompt=args.prompt,
        max_steps=args.max_steps,
        max_repeats=args.max_repeats,
        max_stuck=args.max_stuck,
        max_progress_repeats=args.max_progress_repeats,
        max_empty_results=args.max_empty_results,
        templates=args.templates,
    )


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("stepwise")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.init_config == "project"))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    if args.quiet:
        args.display = "quiet"

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    fmt.init(color=args.color, no_color=args.no_color)
    logging.basicConfig(
        level=logging.DEBUG if os.environ.get("STEPWISE_DEBUG") else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, steps=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=args.model or "unknown",
            provider=args.provider,
            settings={k: v for k, v in _context_kwargs(args).items() if k != "api_key"},
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            steps=steps,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.display != "quiet":
            fmt.info(f"Report written to {args.report}")

    try:
        _run_main(args, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report(
            "error",
            exit_code=1,
            error_message=str(e),
            steps=report.max_step_seen if report else 0,
        )
        sys.exit(1)


def _run_main(args, report, _write_report):
    cancel = threading.Event()
    ctx = build_context(**_context_kwargs(args), report=report, cancel=cancel)
    if args.display != "quiet":
        fmt.model_info(f"Model: {ctx.channel.model_str} (provider: {args.provider})")

    if not args.repl:
        loop = AgentLoop(ctx)
        augmented = loop.run(args.question, [])
        answer = answer_from_context(ctx.channel, augmented)
        print(answer)
        outcome = "success" if loop.stop_reason in ("ok", "no_tools") else "guard"
        _write_report(outcome, answer=answer, steps=loop.steps_taken)
        return

    history: list[dict] = []
    if args.question:
        _ask(ctx, args.question, history)
    repl_loop(ctx, history)


def _ask(ctx: AgentContext, question: str, history: list[dict]) -> None:
    """Run one question through the loop and the final answer, cancellably."""
    ctx = replace(ctx, cancel=threading.Event())

    def _work():
        augmented = AgentLoop(ctx).run(question, history)
        return answer_from_context(ctx.channel, augmented, history)

    try:
        answer = run_cancellable(_work, ctx.cancel)
    except Cancelled:
        fmt.warning("interrupted, question aborted.")
        return
    history.append({"role": "user", "content": question})
    history.append({"role": "assistant", "content": answer})
    print(answer)


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Forget the conversation so far\n"
        "  /cancel            Abort the running question (same as Ctrl-C)\n"
        "  /exit, /quit       Exit the REPL"
    )


def repl_loop(ctx: AgentContext, history: list[dict]) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = global_config_dir() / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "stepwise> ")])

    if ctx.settings.display != "quiet":
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd = line.split(None, 1)[0].lower()
        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            dropped = len(history)
            history.clear()
            fmt.info(f"conversation cleared ({dropped} messages removed)")
            continue
        elif cmd == "/cancel":
            fmt.info("nothing is running; press Ctrl-C while a question runs to abort it")
            continue

        try:
            _ask(ctx, line, history)
        except ChannelError as e:
            fmt.error(str(e))


if __name__ == "__main__":
    main()
