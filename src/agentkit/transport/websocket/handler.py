"""WebSocket message handling: envelope parsing and dispatch to the SessionManager.

Validation failures are answered with an error envelope and never reach a
Session:

    {"type": "error", "error": "<human readable>", "code": "<machine code>"}
"""

from __future__ import annotations

import json
import weakref
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from agentkit.logging import get_logger
from agentkit.session.options import SessionOptions, options_from_wire
from agentkit.transport.websocket.client import WebSocketSessionClient
from agentkit.transport.websocket.envelopes import (
    ENVELOPE_TYPES,
    ChatEnvelope,
    InterruptEnvelope,
    ResumeEnvelope,
    SetSDKOptionsEnvelope,
    ToolResultEnvelope,
)

if TYPE_CHECKING:
    from fastapi import WebSocket

    from agentkit.session.session_manager import SessionManager

log = get_logger("ws")

CONNECTED_MESSAGE = "Connected to the agentkit WebSocket server."


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def error_envelope(error: str, code: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": "error", "error": error}
    if code:
        payload["code"] = code
    return payload


class WebSocketHandler:
    """Bridges WebSocket connections to a SessionManager.

    One ``WebSocketSessionClient`` is kept per open socket. Default options
    are applied to every new session a connection creates.
    """

    def __init__(
        self,
        manager: SessionManager,
        default_options: SessionOptions,
        *,
        allow_client_cwd: bool = False,
    ) -> None:
        self.manager = manager
        self.default_options = dict(default_options)
        self._allow_client_cwd = allow_client_cwd
        self._clients: dict[WebSocket, WebSocketSessionClient] = {}
        self._warned_cwd: weakref.WeakSet[Any] = weakref.WeakSet()

        self._handlers = {
            "chat": self._handle_chat,
            "setSDKOptions": self._handle_set_sdk_options,
            "resume": self._handle_resume,
            "toolResult": self._handle_tool_result,
            "interrupt": self._handle_interrupt,
        }

    @property
    def connection_count(self) -> int:
        return len(self._clients)

    def get_client(self, websocket: WebSocket) -> WebSocketSessionClient | None:
        return self._clients.get(websocket)

    async def on_open(self, websocket: WebSocket) -> WebSocketSessionClient:
        """Register an accepted socket and attach it to a fresh session."""
        client = WebSocketSessionClient(websocket)
        client.start()
        self._clients[websocket] = client
        log.info("WebSocket client connected")

        self.manager.subscribe(client)
        self._apply_default_options(client)

        client.send({"type": "connected", "message": CONNECTED_MESSAGE})
        return client

    async def on_close(self, websocket: WebSocket) -> None:
        client = self._clients.pop(websocket, None)
        if client is None:
            log.warning("WebSocket client not registered on close")
            return
        log.info("WebSocket client disconnected (session=%s)", client.session_id)
        self.manager.unsubscribe(client)
        await client.close()

    async def on_message(self, websocket: WebSocket, raw: str | bytes) -> None:
        """Parse one inbound frame and dispatch it."""
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            log.warning("Failed to parse WebSocket message: %s", e)
            await self._reply(websocket, error_envelope("Invalid JSON payload"))
            return

        if not isinstance(payload, dict):
            await self._reply(websocket, error_envelope("Invalid JSON payload"))
            return

        message_type = payload.get("type")
        model = ENVELOPE_TYPES.get(message_type) if isinstance(message_type, str) else None
        if model is None:
            await self._reply(
                websocket,
                error_envelope(
                    f"Unsupported message type: {message_type}", "unsupported_message_type"
                ),
            )
            return

        try:
            envelope = model.model_validate(payload)
        except ValidationError as e:
            log.warning("Invalid %s message: %s", message_type, e)
            await self._reply(
                websocket, error_envelope(f"Invalid {message_type} message", "invalid_message")
            )
            return

        client = self._clients.get(websocket)
        if client is None:
            log.error("WebSocket client not registered")
            await self._reply(websocket, error_envelope("WebSocket client not registered"))
            return

        await self._handlers[message_type](client, envelope)

    # --- Envelope handlers ---

    async def _handle_chat(self, client: WebSocketSessionClient, envelope: ChatEnvelope) -> None:
        content = (envelope.content or "").strip()
        if not content:
            client.send(error_envelope("Message content cannot be empty", "empty_message"))
            return

        requested = _clean(envelope.session_id)
        if not requested and (client.session_id or envelope.new_conversation):
            # No id while bound to a session: start a new conversation
            self.manager.unsubscribe(client)
            client.session_id = None
            self._apply_default_options(client)

        if requested:
            self._switch_session(client, requested)

        attachments = [a.to_attachment() for a in envelope.attachments or []]
        self.manager.send_message(client, content, attachments or None)

    async def _handle_set_sdk_options(
        self, client: WebSocketSessionClient, envelope: SetSDKOptionsEnvelope
    ) -> None:
        requested = _clean(envelope.session_id)
        if requested:
            self._switch_session(client, requested)

        options = options_from_wire(envelope.options)
        if "cwd" in options and not self._allow_client_cwd:
            if client.websocket not in self._warned_cwd:
                self._warned_cwd.add(client.websocket)
                log.warning(
                    "Ignored client cwd=%r; the server's workspace is used instead",
                    options["cwd"],
                )
            options.pop("cwd")

        try:
            self.manager.set_sdk_options(client, options)
        except Exception:
            log.exception("Failed to set SDK options")
            client.send(error_envelope("Failed to set SDK options"))

    async def _handle_resume(self, client: WebSocketSessionClient, envelope: ResumeEnvelope) -> None:
        target = _clean(envelope.session_id)
        if not target:
            client.send(error_envelope("Session ID is required to resume", "invalid_session_id"))
            return

        log.info("Client %s requested resume to %s", client.session_id or "unknown", target)
        self._switch_session(client, target)

        session = self.manager.get_or_create_session(client)
        if not session.messages:
            self._apply_default_options(client)

        self.manager.subscribe(client)
        client.session_id = target

        previous_error = session.error
        try:
            await session.resume_from(target)
        except Exception:
            log.exception("Failed to resume session %s", target)
            client.send(error_envelope("Failed to resume session", "resume_failed"))
            return

        if session.error is not None and session.error is not previous_error:
            client.send(error_envelope("Failed to resume session", "resume_failed"))

    async def _handle_tool_result(
        self, client: WebSocketSessionClient, envelope: ToolResultEnvelope
    ) -> None:
        tool_use_id = _clean(envelope.tool_use_id)
        if not tool_use_id:
            client.send(error_envelope("toolUseId is required", "invalid_tool_use_id"))
            return

        requested = _clean(envelope.session_id)
        if requested:
            self._switch_session(client, requested)

        try:
            self.manager.send_tool_result(client, tool_use_id, envelope.content, envelope.is_error)
        except Exception:
            log.exception("Failed to send tool result")
            client.send(error_envelope("Failed to send tool result"))

    async def _handle_interrupt(
        self, client: WebSocketSessionClient, envelope: InterruptEnvelope
    ) -> None:
        requested = _clean(envelope.session_id)
        if requested and requested != client.session_id:
            client.send(error_envelope("Not attached to that session", "invalid_session_id"))
            return
        self.manager.interrupt(client)

    # --- Helpers ---

    def _switch_session(self, client: WebSocketSessionClient, session_id: str) -> None:
        """Point the client at ``session_id``, leaving any other session first."""
        bound = self.manager.bound_session(client)
        previous = bound.session_id if bound is not None else client.session_id
        if (bound is not None or previous) and previous != session_id:
            self.manager.unsubscribe(client)
            log.debug("Client left session %s for %s", previous, session_id)
        client.session_id = session_id

    def _apply_default_options(self, client: WebSocketSessionClient) -> None:
        try:
            self.manager.set_sdk_options(client, self.default_options)
        except Exception:
            log.exception("Failed to apply default SDK options")

    async def _reply(self, websocket: WebSocket, payload: dict[str, Any]) -> None:
        client = self._clients.get(websocket)
        if client is not None:
            client.send(payload)
            return
        try:
            await websocket.send_json(payload)
        except Exception as e:
            log.error("Failed to send WebSocket message: %s", e)
