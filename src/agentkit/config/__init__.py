"""Configuration management for agentkit.

Provides hierarchical YAML-based configuration with:
- System-level config (/etc/agentkit/ or %PROGRAMDATA%)
- User-level config (~/.config/agentkit/ or %APPDATA%)
- Project-level config ($project_root/.agentkit/)
- Environment variable overrides (highest priority)

Example usage:
    from agentkit.config import load_config

    config = load_config(project_root="/path/to/project")
    print(config.server.port)
    print(config.session.debounce_ms)
"""

from agentkit.config.loader import (
    get_config,
    load_config,
    reset_config,
)
from agentkit.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
from agentkit.config.schema import (
    AgentConfig,
    ApprovalConfig,
    Config,
    LoggingConfig,
    ServerConfig,
    SessionConfig,
    TranscriptConfig,
)
from agentkit.config.secrets import (
    clear_secret_cache,
    fetch_secret,
)

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reset_config",
    # Schema types
    "AgentConfig",
    "ApprovalConfig",
    "LoggingConfig",
    "ServerConfig",
    "SessionConfig",
    "TranscriptConfig",
    # Secret management
    "fetch_secret",
    "clear_secret_cache",
    # Path utilities
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
]
