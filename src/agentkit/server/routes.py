"""FastAPI routes: status, session listing and the session WebSocket."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect

from agentkit import __version__
from agentkit.logging import get_logger
from agentkit.session.storage import TranscriptStore
from agentkit.transport.websocket import WebSocketHandler

log = get_logger("server")


def create_app(handler: WebSocketHandler, store: TranscriptStore | None = None) -> FastAPI:
    """Create the FastAPI application around a WebSocket handler.

    Args:
        handler: Owns the SessionManager shared by every connection
        store: Persisted transcripts to include in the session listing
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.started = time.time()
        yield
        log.info("Shutting down, interrupting %d sessions", len(handler.manager.sessions))
        await handler.manager.close()

    app = FastAPI(
        title="agentkit",
        description="WebSocket session server for the Claude agent CLI",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.handler = handler
    app.state.store = store
    app.state.started = time.time()

    _register_routes(app)
    return app


def _session_entry(
    session_id: str | None,
    summary: str | None,
    last_modified: float,
    *,
    busy: bool = False,
    loading: bool = False,
    live: bool = False,
) -> dict[str, Any]:
    return {
        "sessionId": session_id,
        "summary": summary,
        "isBusy": busy,
        "isLoading": loading,
        "lastModifiedTime": last_modified,
        "live": live,
    }


def _register_routes(app: FastAPI) -> None:
    """Register all routes."""

    @app.get("/api/status")
    async def api_status(request: Request) -> dict[str, Any]:
        """Server health."""
        handler: WebSocketHandler = request.app.state.handler
        return {
            "status": "ok",
            "version": __version__,
            "uptime": time.time() - request.app.state.started,
            "connections": handler.connection_count,
            "sessions": len(handler.manager.sessions),
        }

    @app.get("/api/sessions")
    async def api_sessions(request: Request, limit: int | None = None) -> dict[str, Any]:
        """Live and persisted sessions, newest first."""
        handler: WebSocketHandler = request.app.state.handler
        store: TranscriptStore | None = request.app.state.store

        entries: dict[str, dict[str, Any]] = {}
        unnamed: list[dict[str, Any]] = []
        for session in handler.manager.sessions_by_last_modified:
            entry = _session_entry(
                session.session_id,
                session.summary,
                session.last_modified_time,
                busy=session.is_busy,
                loading=session.is_loading,
                live=True,
            )
            if session.session_id:
                entries[session.session_id] = entry
            else:
                unnamed.append(entry)

        if store is not None:
            for info in await asyncio.to_thread(store.list_sessions):
                if info.session_id in entries:
                    if not entries[info.session_id]["summary"]:
                        entries[info.session_id]["summary"] = info.summary
                    continue
                entries[info.session_id] = _session_entry(
                    info.session_id, info.summary, info.modified_time
                )

        sessions = sorted(
            [*entries.values(), *unnamed],
            key=lambda e: e["lastModifiedTime"],
            reverse=True,
        )
        if limit is not None and limit > 0:
            sessions = sessions[:limit]
        return {"sessions": sessions}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """Session WebSocket: one SessionClient per connection."""
        handler: WebSocketHandler = websocket.app.state.handler
        await websocket.accept()
        await handler.on_open(websocket)

        try:
            while True:
                data = await websocket.receive_text()
                await handler.on_message(websocket, data)
        except WebSocketDisconnect:
            pass
        finally:
            await handler.on_close(websocket)
