"""Configuration schema dataclasses for agentkit.

Defines the structure of configuration at all levels (system, user, project).
All fields have defaults so partial configs merge together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, takes precedence over level
    file: str | None = None  # Log file path


@dataclass
class ServerConfig:
    """HTTP/WebSocket server configuration.

    Example config.yaml:
        server:
          host: 0.0.0.0
          port: 3000
          allow_client_cwd: false
    """

    host: str = "127.0.0.1"
    port: int = 3000
    allow_client_cwd: bool = False  # Accept cwd from setSDKOptions envelopes


@dataclass
class AgentConfig:
    """Defaults handed to every new session and to the agent SDK client."""

    cwd: str | None = None  # Workspace; falls back to PROJECT_ROOT
    model: str | None = None
    permission_mode: str | None = None  # "default", "plan", "acceptEdits", ...
    allowed_tools: list[str] | None = None  # None keeps the built-in list
    max_turns: int | None = None
    base_url: str | None = None  # Custom API endpoint
    executable: str | None = None  # Path to the claude CLI


@dataclass
class ApprovalConfig:
    """Phrases for the conversational plan approval shim.

    Example config.yaml:
        session:
          approval:
            approve_phrases: ["execute", "run", "go ahead"]
            reject_phrases: ["reject"]
    """

    approve_phrases: list[str] | None = None
    reject_phrases: list[str] | None = None
    placeholder_phrases: list[str] | None = None


@dataclass
class SessionConfig:
    """Session behaviour configuration."""

    debounce_ms: int = 50  # Coalescing window for session_state_changed
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)


@dataclass
class TranscriptConfig:
    """Transcript store configuration."""

    projects_root: str | None = None  # Default: ~/.claude/projects


@dataclass
class Config:
    """Root configuration object."""

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    transcripts: TranscriptConfig = field(default_factory=TranscriptConfig)

    # Extension point for future config sections
    extra: dict[str, Any] = field(default_factory=dict)
