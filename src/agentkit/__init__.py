"""agentkit: WebSocket session server for the Claude agent CLI."""

__version__ = "0.1.0"

# Public API
from agentkit.config import Config, get_config, load_config
from agentkit.session import (
    ApprovalMatcher,
    ProtocolMessage,
    Session,
    SessionManager,
    TranscriptStore,
)

__all__ = [
    "__version__",
    # Configuration
    "Config",
    "get_config",
    "load_config",
    # Sessions
    "ApprovalMatcher",
    "ProtocolMessage",
    "Session",
    "SessionManager",
    "TranscriptStore",
]
