"""Session client bound to one WebSocket connection."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

from agentkit.logging import get_logger
from agentkit.session.protocols import (
    MessageAdded,
    MessagesUpdated,
    OutgoingMessage,
    ProtocolMessage,
    ToolResultBlock,
    UserMessage,
    message_to_dict,
)

if TYPE_CHECKING:
    from fastapi import WebSocket

log = get_logger("ws")

SKILL_OUTPUT_MARKER = "Base directory for this skill:"
SKILL_STARTED_NOTICE = "<command-message>Skill started</command-message>"

_CLOSE = object()


def _sanitize_message(message: ProtocolMessage) -> dict[str, Any]:
    """Wire form of a message, with skill directory listings replaced."""
    data = message_to_dict(message)
    if not isinstance(message, UserMessage):
        return data

    changed = False
    content = []
    for block, raw in zip(message.content, data["message"]["content"]):
        if (
            isinstance(block, ToolResultBlock)
            and isinstance(block.content, str)
            and SKILL_OUTPUT_MARKER in block.content
        ):
            raw = {**raw, "content": SKILL_STARTED_NOTICE}
            changed = True
        content.append(raw)

    if changed:
        data["message"] = {**data["message"], "content": content}
    return data


def serialize_outgoing(message: OutgoingMessage) -> dict[str, Any]:
    """Outgoing event as a JSON-ready dict."""
    match message:
        case MessageAdded(session_id=session_id, message=inner):
            return {
                "type": message.type,
                "sessionId": session_id,
                "message": _sanitize_message(inner),
            }
        case MessagesUpdated(session_id=session_id, messages=messages):
            return {
                "type": message.type,
                "sessionId": session_id,
                "messages": [_sanitize_message(m) for m in messages],
            }
        case _:
            return message.to_dict()


class WebSocketSessionClient:
    """Forwards session events to a WebSocket in broadcast order.

    Events are serialized on receipt and queued; a single writer task drains
    the queue so sends never interleave or reorder.
    """

    def __init__(self, websocket: WebSocket, session_id: str | None = None) -> None:
        self.websocket = websocket
        self.session_id = session_id
        self._outbox: asyncio.Queue[Any] = asyncio.Queue()
        self._writer: asyncio.Task[None] | None = None
        self._closed = False

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain(), name="ws-writer")

    def receive_session_message(self, event: str, message: OutgoingMessage) -> None:
        log.debug("Queueing %s for session %s", message.type, message.session_id or "unknown")
        self.send(serialize_outgoing(message))

    def send(self, payload: dict[str, Any]) -> None:
        """Queue a raw envelope behind any pending events."""
        if self._closed:
            return
        self._outbox.put_nowait(payload)

    async def close(self) -> None:
        """Flush queued envelopes and stop the writer."""
        if self._closed:
            return
        self._closed = True
        self._outbox.put_nowait(_CLOSE)
        if self._writer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None

    async def _drain(self) -> None:
        while True:
            payload = await self._outbox.get()
            if payload is _CLOSE:
                return
            try:
                await self.websocket.send_json(payload)
            except Exception as e:
                log.error("Failed to send WebSocket message: %s", e)
                self._closed = True
                return
