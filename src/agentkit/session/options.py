"""Session option defaults, merging, and workspace path handling.

Options are plain dicts keyed by snake_case names. A key whose value is None
has been explicitly cleared: it survives in the session's stored options so
later merges keep it cleared, and ``effective_options`` drops it. A cleared
``cwd`` is removed outright because defaults are anchored to it.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from agentkit.logging import get_logger

log = get_logger("options")

SessionOptions = dict[str, Any]

DEFAULT_ALLOWED_TOOLS: tuple[str, ...] = (
    "Task",
    "Bash",
    "Glob",
    "Grep",
    "LS",
    "ExitPlanMode",
    "Read",
    "Edit",
    "MultiEdit",
    "Write",
    "NotebookEdit",
    "WebFetch",
    "TodoWrite",
    "BashOutput",
    "KillBash",
    "Skill",
)

THINKING_LEVELS = ("off", "default_on")

# snake_case option name -> camelCase wire name
_WIRE_NAMES: dict[str, str] = {
    "cwd": "cwd",
    "permission_mode": "permissionMode",
    "allowed_tools": "allowedTools",
    "model": "model",
    "max_turns": "maxTurns",
    "thinking_level": "thinkingLevel",
    "mcp_servers": "mcpServers",
    "setting_sources": "settingSources",
    "system_prompt": "systemPrompt",
    "env": "env",
}
_PYTHON_NAMES = {wire: name for name, wire in _WIRE_NAMES.items()}

KNOWN_OPTIONS = frozenset(_WIRE_NAMES)

# Options that describe the session and are not forwarded to the agent
SESSION_ONLY_OPTIONS = frozenset({"thinking_level"})


def normalize_workspace_path(value: Any) -> str | None:
    """Trim a workspace path; blank or non-string values mean unset."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def resolve_existing_workspace_cwd(cwd: str) -> str:
    """Find where a workspace lives now if ``cwd`` no longer exists.

    Looks for a directory with the same basename under WORKSPACES_DIR,
    PROJECT_ROOT, or next to WORKSPACE_DIR. Returns ``cwd`` unchanged when
    nothing matches.
    """
    if os.path.isdir(cwd):
        return cwd

    base_name = Path(cwd).name
    candidates: list[Path] = []

    workspaces_dir = normalize_workspace_path(os.environ.get("WORKSPACES_DIR"))
    if workspaces_dir:
        candidates.append(Path(workspaces_dir, base_name).resolve())

    project_root = normalize_workspace_path(os.environ.get("PROJECT_ROOT"))
    if project_root:
        candidates.append(Path(project_root, base_name).resolve())

    workspace_dir = normalize_workspace_path(os.environ.get("WORKSPACE_DIR"))
    if workspace_dir:
        candidates.append(Path(workspace_dir, "..", base_name).resolve())

    for candidate in candidates:
        if candidate.is_dir():
            log.debug("Relocated workspace %s -> %s", cwd, candidate)
            return str(candidate)

    return cwd


def ensure_cwd_alias(expected_cwd: str, actual_cwd: str) -> None:
    """Best-effort directory link from a moved workspace's old path to its new one.

    Agent transcripts are bucketed by cwd, so resuming from a relocated
    workspace needs the recorded path to exist.
    """
    if not expected_cwd or not actual_cwd:
        return
    if os.path.isdir(expected_cwd) or not os.path.isdir(actual_cwd):
        return

    try:
        Path(expected_cwd).parent.mkdir(parents=True, exist_ok=True)
        # Windows needs developer mode or admin rights for this
        os.symlink(actual_cwd, expected_cwd, target_is_directory=True)
        log.info("Linked workspace alias %s -> %s", expected_cwd, actual_cwd)
    except OSError as e:
        log.debug("Could not link workspace alias %s -> %s: %s", expected_cwd, actual_cwd, e)


def create_default_options(workspace_path: str | None = None) -> SessionOptions:
    """Default options, anchored to a workspace when one is known."""
    options: SessionOptions = {
        "max_turns": 100,
        "allowed_tools": list(DEFAULT_ALLOWED_TOOLS),
        "mcp_servers": {},
        "thinking_level": "default_on",
        "setting_sources": ["user", "project", "local"],
    }
    cwd = normalize_workspace_path(workspace_path)
    if cwd:
        options["cwd"] = cwd
    return options


def merge_options(current: SessionOptions, partial: SessionOptions) -> SessionOptions:
    """Merge a partial option set onto the current options.

    Defaults are re-derived from the (possibly newly supplied) cwd. Keys
    supplied as None stay cleared instead of reverting to an older value.
    """
    has_explicit_cwd = "cwd" in partial
    normalized_cwd: str | None = None
    if has_explicit_cwd:
        normalized_cwd = normalize_workspace_path(partial.get("cwd"))
        if normalized_cwd:
            normalized_cwd = resolve_existing_workspace_cwd(normalized_cwd)

    normalized = dict(partial)
    if has_explicit_cwd:
        normalized["cwd"] = normalized_cwd

    base = create_default_options(normalized_cwd if has_explicit_cwd else current.get("cwd"))
    merged = {**base, **current, **normalized}

    if has_explicit_cwd and not normalized_cwd:
        merged.pop("cwd", None)

    return merged


def effective_options(options: SessionOptions) -> SessionOptions:
    """Options as handed to the agent and reported to clients."""
    merged = {**create_default_options(options.get("cwd")), **options}
    return {key: value for key, value in merged.items() if value is not None}


def options_from_wire(raw: dict[str, Any]) -> SessionOptions:
    """Convert camelCase client options to snake_case session options.

    Unknown keys are dropped. Explicit nulls are kept (they clear a field).
    """
    options: SessionOptions = {}
    for key, value in raw.items():
        name = _PYTHON_NAMES.get(key) or (key if key in KNOWN_OPTIONS else None)
        if name is None:
            log.debug("Ignoring unknown session option %r", key)
            continue
        if name == "thinking_level" and value is not None and value not in THINKING_LEVELS:
            log.debug("Ignoring invalid thinking level %r", value)
            continue
        options[name] = value
    return options


def options_to_wire(options: SessionOptions) -> dict[str, Any]:
    """Convert session options to their camelCase client form."""
    return {_WIRE_NAMES.get(key, key): value for key, value in options.items()}
