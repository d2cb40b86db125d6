"""Server assembly and lifecycle.

Builds the object graph once at startup (transcript store, agent client,
session manager, WebSocket handler) and serves it with uvicorn.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

import uvicorn
from fastapi import FastAPI

from agentkit.config.schema import Config
from agentkit.core.agent_client import AgentClientConfig, ClaudeAgentClient
from agentkit.logging import get_logger
from agentkit.server.routes import create_app
from agentkit.session.approval import ApprovalMatcher
from agentkit.session.options import SessionOptions, create_default_options
from agentkit.session.session_manager import SessionManager
from agentkit.session.storage import TranscriptStore
from agentkit.transport.websocket import WebSocketHandler

log = get_logger("server")


@dataclass
class Services:
    """Everything a running server owns."""

    store: TranscriptStore
    agent_client: ClaudeAgentClient
    manager: SessionManager
    handler: WebSocketHandler
    app: FastAPI


def default_session_options(config: Config) -> SessionOptions:
    """Options applied to every new session."""
    options = create_default_options(config.agent.cwd or os.getcwd())
    if config.agent.model:
        options["model"] = config.agent.model
    if config.agent.permission_mode:
        options["permission_mode"] = config.agent.permission_mode
    if config.agent.allowed_tools is not None:
        options["allowed_tools"] = list(config.agent.allowed_tools)
    if config.agent.max_turns is not None:
        options["max_turns"] = config.agent.max_turns
    return options


def build_services(config: Config) -> Services:
    store = TranscriptStore(config.transcripts.projects_root)
    agent_client = ClaudeAgentClient(AgentClientConfig.from_config(config), store)
    manager = SessionManager(
        agent_client,
        approval_matcher=ApprovalMatcher.from_config(config.session.approval),
        debounce_delay=config.session.debounce_ms / 1000.0,
    )
    handler = WebSocketHandler(
        manager,
        default_session_options(config),
        allow_client_cwd=config.server.allow_client_cwd,
    )
    app = create_app(handler, store)
    return Services(
        store=store, agent_client=agent_client, manager=manager, handler=handler, app=app
    )


async def serve(config: Config) -> None:
    """Run the server until it is stopped."""
    services = build_services(config)

    uvicorn_config = uvicorn.Config(
        services.app,
        host=config.server.host,
        port=config.server.port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(uvicorn_config)

    log.info(
        "Serving on http://%s:%d (transcripts: %s)",
        config.server.host,
        config.server.port,
        services.store.projects_root,
    )
    await server.serve()
