"""External tool catalog and tool invocation.

Everything here shells out to a `mai-tool`-style executable:

    <tool_command> [-q|-s|-j|-x] list
    <tool_command> [-j|-x] call <tool> [key=value ...]
    <tool_command> prompts list | prompts get <name>
"""

import logging
import os
import subprocess
import sys
import threading
import time

from .report import Cancelled, ToolExecutionError, ToolInvocationError, ToolTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TOOL_COMMAND = "mai-tool"
DEFAULT_TIMEOUT = 60
CATALOG_TIMEOUT = 30
MAX_OUTPUT = 1024 * 1024  # 1MB per stream

SHELL_METACHARACTERS = frozenset(";&|<>$\\\"'`")

CATALOG_FORMATS: dict[str, list[str]] = {
    "quiet": ["-q"],
    "simple": ["-s"],
    "markdown": [],
    "xml": ["-x"],
    "json": ["-j"],
}

OUTPUT_FORMATS: dict[str, list[str]] = {
    "text": [],
    "json": ["-j"],
    "xml": ["-x"],
}

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals
_POLL_INTERVAL = 0.1


def check_tool_name(name: str) -> None:
    """Reject tool names that could smuggle shell syntax."""
    if not name or not name.strip():
        raise ToolInvocationError("error: empty tool name", tool=name)
    bad = sorted({c for c in name if c in SHELL_METACHARACTERS})
    if bad:
        raise ToolInvocationError(
            f"error: invalid tool name {name!r}: contains shell metacharacters {''.join(bad)!r}",
            tool=name,
        )


def sanitize_args(args: list[str]) -> list[str]:
    return [a for a in args if a is not None and str(a).strip()]


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # give up, process is unkillable


def _drain(stream, chunks: list[bytes]) -> None:
    total = 0
    try:
        while True:
            chunk = stream.read(4096)
            if not chunk:
                break
            if total >= MAX_OUTPUT:
                continue  # keep draining to prevent pipe backpressure
            chunks.append(chunk[: MAX_OUTPUT - total])
            total += len(chunks[-1])
    except (OSError, ValueError):
        pass  # pipe closed/broken after kill


def _capture_process(
    proc: subprocess.Popen,
    timeout: float,
    cancel: threading.Event | None = None,
) -> tuple[int | None, str, str, str]:
    """Wait for proc under a deadline and collect its output.

    Returns (returncode, stdout, stderr, outcome) where outcome is one of
    "exited", "timeout" or "cancelled". Killed processes report returncode None.
    """
    out_chunks: list[bytes] = []
    err_chunks: list[bytes] = []
    readers = [
        threading.Thread(target=_drain, args=(proc.stdout, out_chunks), daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, err_chunks), daemon=True),
    ]
    for t in readers:
        t.start()

    outcome = "exited"
    deadline = time.monotonic() + timeout
    try:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                outcome = "timeout"
                break
            if cancel is not None and cancel.is_set():
                outcome = "cancelled"
                break
            try:
                proc.wait(timeout=min(_POLL_INTERVAL, remaining))
                break
            except subprocess.TimeoutExpired:
                continue
    except KeyboardInterrupt:
        _kill_process_tree(proc)
        raise
    if outcome != "exited":
        _kill_process_tree(proc)

    for t in readers:
        t.join(timeout=2)
    for stream in (proc.stdout, proc.stderr):
        try:
            stream.close()
        except OSError:
            pass

    stdout = b"".join(out_chunks).decode("utf-8", errors="replace")
    stderr = b"".join(err_chunks).decode("utf-8", errors="replace")
    returncode = proc.returncode if outcome == "exited" else None
    return returncode, stdout, stderr, outcome


def run_tool_command(
    argv: list[str],
    timeout: float,
    cancel: threading.Event | None = None,
    label: str = "",
) -> str:
    """Spawn argv, enforce the deadline, and map failures onto the error taxonomy."""
    label = label or " ".join(argv)
    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    logger.debug("spawning %s (timeout=%ss)", argv, timeout)
    try:
        proc = subprocess.Popen(argv, **popen_kwargs)
    except FileNotFoundError:
        raise ToolInvocationError(
            f"error: tool executable not found: {argv[0]}", tool=label
        )
    except PermissionError:
        raise ToolInvocationError(
            f"error: permission denied executing: {argv[0]}", tool=label
        )
    except OSError as e:
        raise ToolInvocationError(f"error: failed to start tool: {e}", tool=label)

    returncode, stdout, stderr, outcome = _capture_process(proc, timeout, cancel)
    if outcome == "timeout":
        raise ToolTimeoutError(
            f"error: tool {label} timed out after {timeout}s",
            tool=label,
            timeout=timeout,
        )
    if outcome == "cancelled":
        raise Cancelled(f"tool {label} cancelled")
    if returncode != 0:
        detail = stderr.strip() or stdout.strip() or "(no output)"
        raise ToolExecutionError(
            f"error: tool {label} exited with code {returncode}: {detail}",
            tool=label,
            returncode=returncode,
            stderr=stderr,
        )
    return stdout.strip()


class ToolInvoker:
    """Validates and runs one tool call at a time under a wall-clock deadline."""

    def __init__(
        self,
        tool_command: str = DEFAULT_TOOL_COMMAND,
        timeout: float = DEFAULT_TIMEOUT,
        output_format: str = "text",
        cancel: threading.Event | None = None,
    ):
        if output_format not in OUTPUT_FORMATS:
            raise ValueError(f"unknown tool output format {output_format!r}")
        self.tool_command = tool_command
        self.timeout = timeout if timeout and timeout > 0 else DEFAULT_TIMEOUT
        self.output_format = output_format
        self.cancel = cancel

    def call(
        self, name: str, args: list[str], *, cancel: threading.Event | None = None
    ) -> str:
        """Run a tool and return its stdout ("" is a valid result)."""
        return call_tool(
            name,
            args,
            tool_command=self.tool_command,
            timeout=self.timeout,
            output_format=self.output_format,
            cancel=cancel or self.cancel,
        )

    def list_tools(self, fmt: str = "quiet") -> str:
        return list_tools(fmt, tool_command=self.tool_command)


def call_tool(
    name: str,
    args: list[str],
    *,
    tool_command: str = DEFAULT_TOOL_COMMAND,
    timeout: float = DEFAULT_TIMEOUT,
    output_format: str = "text",
    cancel: threading.Event | None = None,
) -> str:
    """Validate the name, then run `<tool_command> [flag] call <name> k=v ...`."""
    check_tool_name(name)
    if output_format not in OUTPUT_FORMATS:
        raise ValueError(f"unknown tool output format {output_format!r}")
    argv = [
        tool_command,
        *OUTPUT_FORMATS[output_format],
        "call",
        name,
        *sanitize_args(args),
    ]
    return run_tool_command(argv, timeout, cancel, label=name)


def list_tools(fmt: str = "quiet", *, tool_command: str = DEFAULT_TOOL_COMMAND) -> str:
    """Fetch the textual tool catalog; "" means no tools are available."""
    if fmt not in CATALOG_FORMATS:
        raise ValueError(f"unknown catalog format {fmt!r}")
    argv = [tool_command, *CATALOG_FORMATS[fmt], "list"]
    return run_tool_command(argv, CATALOG_TIMEOUT, label="list")


def list_prompts(fmt: str = "markdown", *, tool_command: str = DEFAULT_TOOL_COMMAND) -> str:
    if fmt not in ("quiet", "json", "markdown"):
        raise ValueError(f"unknown prompt catalog format {fmt!r}")
    argv = [tool_command, *CATALOG_FORMATS[fmt], "prompts", "list"]
    return run_tool_command(argv, CATALOG_TIMEOUT, label="prompts list")


def get_prompt(name: str, *, tool_command: str = DEFAULT_TOOL_COMMAND) -> str:
    check_tool_name(name)
    argv = [tool_command, "prompts", "get", name]
    return run_tool_command(argv, CATALOG_TIMEOUT, label="prompts get")
