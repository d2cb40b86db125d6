"""WebSocket transport: per-connection session clients and envelope dispatch."""

from agentkit.transport.websocket.client import WebSocketSessionClient, serialize_outgoing
from agentkit.transport.websocket.handler import WebSocketHandler, error_envelope

__all__ = [
    "WebSocketHandler",
    "WebSocketSessionClient",
    "error_envelope",
    "serialize_outgoing",
]
