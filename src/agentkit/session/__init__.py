"""Session layer: protocol messages, options, approval detection, Session, SessionManager."""

from agentkit.session.approval import ApprovalMatcher, PendingToolUse, ToolResponse, find_pending_tool_use
from agentkit.session.debounce import StateChangeDebouncer
from agentkit.session.options import SessionOptions, create_default_options, merge_options
from agentkit.session.protocols import (
    AgentStreamClient,
    AssistantMessage,
    Attachment,
    CancellationToken,
    ProtocolMessage,
    ResultMessage,
    SessionClient,
    SessionEvent,
    SystemMessage,
    UserMessage,
)
from agentkit.session.session_manager import Session, SessionManager
from agentkit.session.storage import TranscriptStore

__all__ = [
    "AgentStreamClient",
    "ApprovalMatcher",
    "AssistantMessage",
    "Attachment",
    "CancellationToken",
    "PendingToolUse",
    "ProtocolMessage",
    "ResultMessage",
    "Session",
    "SessionClient",
    "SessionEvent",
    "SessionManager",
    "SessionOptions",
    "StateChangeDebouncer",
    "SystemMessage",
    "ToolResponse",
    "TranscriptStore",
    "UserMessage",
    "create_default_options",
    "find_pending_tool_use",
    "merge_options",
]
