"""Configuration file loading and merging for stepwise.

Reads TOML config from ~/.config/stepwise/config.toml (global) and
<base_dir>/stepwise.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any


from .report import ConfigError  # noqa: F401

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "reasoning": str,
    "display": str,
    "output_format": str,
    "timeout": int,
    "prompt": str,
    "tool_command": str,
    "tool_output": str,
    "max_steps": int,
    "max_repeats": int,
    "max_stuck": int,
    "max_progress_repeats": int,
    "max_empty_results": int,
    "templates": bool,
    "color": bool,
    "report": str,
}

_CHOICES: dict[str, tuple[str, ...]] = {
    "provider": (
        "lmstudio",
        "openai",
        "anthropic",
        "gemini",
        "ollama",
        "openrouter",
        "generic",
    ),
    "reasoning": ("low", "medium", "high"),
    "display": ("verbose", "plan", "progress", "reason", "quiet"),
    "output_format": ("schema", "text"),
    "tool_output": ("text", "json", "xml"),
}

_POSITIVE_KEYS = {
    "timeout",
    "max_steps",
    "max_repeats",
    "max_stuck",
    "max_progress_repeats",
    "max_empty_results",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "api_key": None,
    "base_url": None,
    "reasoning": "low",
    "display": "verbose",
    "output_format": "schema",
    "timeout": 60,
    "prompt": None,
    "tool_command": "mai-tool",
    "tool_output": "text",
    "max_steps": 10,
    "max_repeats": 3,
    "max_stuck": 4,
    "max_progress_repeats": 3,
    "max_empty_results": 3,
    "templates": False,
    "color": False,
    "no_color": False,
    "quiet": False,
    "report": None,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "stepwise"
    return Path.home() / ".config" / "stepwise"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types, choices and limits in a parsed config dict.

    Raises ConfigError for bad values. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _CHOICES and value not in _CHOICES[key]:
            allowed = ", ".join(_CHOICES[key])
            raise ConfigError(
                f"{source}: {key!r} must be one of {allowed}, got {value!r}"
            )
        if key in _POSITIVE_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    A relative ``report`` path is resolved against its config file.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "stepwise.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    for cfg, path in ((global_config, global_path), (project_config, project_path)):
        if "report" in cfg:
            p = Path(cfg["report"]).expanduser()
            cfg["report"] = str(p if p.is_absolute() else path.parent / p)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    Drops keys that are CLI concerns only (color, report).
    """
    return {k: v for k, v in config.items() if k not in ("color", "report")}


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# stepwise configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/stepwise.toml' if project else '~/.config/stepwise/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "lmstudio"   # lmstudio | openai | anthropic | gemini | ollama | openrouter | generic',
        '# model = "qwen/qwen3-8b"',
        '# api_key = "sk-..."        # prefer env vars; this is a fallback',
        '# base_url = "http://127.0.0.1:1234"',
        "",
        "# --- Planning ---",
        '# reasoning = "low"         # low | medium | high',
        '# output_format = "schema"  # schema | text',
        '# prompt = "Prefer read-only tools."',
        "# templates = false",
        "",
        "# --- Tools ---",
        '# tool_command = "mai-tool"',
        '# tool_output = "text"      # text | json | xml',
        "# timeout = 60",
        "",
        "# --- Guards ---",
        "# max_steps = 10",
        "# max_repeats = 3",
        "# max_stuck = 4",
        "# max_progress_repeats = 3",
        "# max_empty_results = 3",
        "",
        "# --- UI ---",
        '# display = "verbose"       # verbose | plan | progress | reason | quiet',
        "# color = true              # true = force color, false = force no-color, absent = auto",
        '# report = "run.json"',
        "",
    ]
    return "\n".join(lines)
