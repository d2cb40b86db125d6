"""Core runtime modules."""

from agentkit.core.agent_client import AgentClientConfig, ClaudeAgentClient, convert_sdk_message

__all__ = [
    "AgentClientConfig",
    "ClaudeAgentClient",
    "convert_sdk_message",
]
