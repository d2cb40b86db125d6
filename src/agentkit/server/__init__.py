"""HTTP/WebSocket server: FastAPI app and uvicorn lifecycle."""

from agentkit.server.routes import create_app
from agentkit.server.server import Services, build_services, default_session_options, serve

__all__ = [
    "Services",
    "build_services",
    "create_app",
    "default_session_options",
    "serve",
]
