"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Environment variable overrides
- Config caching with reload support
- Conversion from dict to typed Config dataclass
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from agentkit.config.merge import merge_configs
from agentkit.config.paths import get_config_paths
from agentkit.config.schema import (
    AgentConfig,
    ApprovalConfig,
    Config,
    LoggingConfig,
    ServerConfig,
    SessionConfig,
    TranscriptConfig,
)

# Module logger (may not be configured yet at import time)
_log = logging.getLogger("agentkit.config")

_cached_config: Config | None = None


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides() -> dict[str, Any]:
    """Build config dict from environment variables.

    Environment variables take highest priority.
    Note: API keys are NOT loaded here - use fetch_secret() for secrets.
    """
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("AGENTKIT_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    port = os.environ.get("AGENTKIT_PORT")
    if port:
        try:
            overrides.setdefault("server", {})["port"] = int(port)
        except ValueError:
            _log.warning("Ignoring non-numeric AGENTKIT_PORT=%r", port)

    project_root = os.environ.get("PROJECT_ROOT")
    if project_root and project_root.strip():
        overrides.setdefault("agent", {})["cwd"] = project_root.strip()

    return overrides


def _string_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [item for item in value if isinstance(item, str)]


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert merged dict to typed Config dataclass."""
    log_data = data.get("logging") or {}
    logging_config = LoggingConfig(
        level=log_data.get("level"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file"),
    )

    server_data = data.get("server") or {}
    server = ServerConfig(
        host=server_data.get("host", "127.0.0.1"),
        port=int(server_data.get("port", 3000)),
        allow_client_cwd=bool(server_data.get("allow_client_cwd", False)),
    )

    agent_data = data.get("agent") or {}
    agent = AgentConfig(
        cwd=agent_data.get("cwd"),
        model=agent_data.get("model"),
        permission_mode=agent_data.get("permission_mode"),
        allowed_tools=_string_list(agent_data.get("allowed_tools")),
        max_turns=agent_data.get("max_turns"),
        base_url=agent_data.get("base_url"),
        executable=agent_data.get("executable"),
    )

    session_data = data.get("session") or {}
    approval_data = session_data.get("approval") or {}
    session = SessionConfig(
        debounce_ms=int(session_data.get("debounce_ms", 50)),
        approval=ApprovalConfig(
            approve_phrases=_string_list(approval_data.get("approve_phrases")),
            reject_phrases=_string_list(approval_data.get("reject_phrases")),
            placeholder_phrases=_string_list(approval_data.get("placeholder_phrases")),
        ),
    )

    transcript_data = data.get("transcripts") or {}
    transcripts = TranscriptConfig(projects_root=transcript_data.get("projects_root"))

    known_keys = {"logging", "server", "agent", "session", "transcripts"}
    extra = {k: v for k, v in data.items() if k not in known_keys}

    return Config(
        logging=logging_config,
        server=server,
        agent=agent,
        session=session,
        transcripts=transcripts,
        extra=extra,
    )


def load_config(project_root: str | None = None, reload: bool = False) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Project config ($project_root/.agentkit/config.yaml)
    3. User config (~/.config/agentkit/config.yaml or %APPDATA%)
    4. System config (/etc/agentkit/ or %PROGRAMDATA%)

    Args:
        project_root: Project directory for project-level config.
        reload: Force reload even if cached.
    """
    global _cached_config

    if _cached_config is not None and not reload and project_root is None:
        return _cached_config

    configs: list[dict[str, Any]] = []

    for path in get_config_paths(project_root):
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            configs.append(config_data)

    env_config = env_overrides()
    if env_config:
        configs.append(env_config)

    config = dict_to_config(merge_configs(*configs))

    # Cache only global config (no project_root)
    if project_root is None:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Reset cached config. Useful for testing or forcing a reload."""
    global _cached_config
    _cached_config = None
