"""Transport layer: WebSocket adapter between UI clients and the SessionManager."""

from agentkit.transport.websocket import WebSocketHandler, WebSocketSessionClient

__all__ = [
    "WebSocketHandler",
    "WebSocketSessionClient",
]
