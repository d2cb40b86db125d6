"""Core protocols for the session layer.

Defines the contract between:
- The agent SDK client and sessions (protocol messages, content blocks)
- Sessions and transport clients (outgoing events, SessionClient)

Protocol messages are a tagged union over four kinds (system, user,
assistant, result); message content is a tagged union of blocks. Both are
plain dataclasses matched with ``match``/``case``.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import uuid
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Protocol, runtime_checkable

from agentkit.logging import get_logger
from agentkit.session.options import options_to_wire

log = get_logger("protocols")

# -----------------------------------------------------------------------------
# Content blocks
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class TextBlock:
    text: str

    type: ClassVar[str] = "text"


@dataclass(slots=True)
class ThinkingBlock:
    thinking: str
    signature: str = ""

    type: ClassVar[str] = "thinking"


@dataclass(slots=True)
class ImageBlock:
    """Image content; ``source`` follows the Messages API source shape."""

    source: dict[str, Any]

    type: ClassVar[str] = "image"


@dataclass(slots=True)
class DocumentBlock:
    source: dict[str, Any]
    title: str | None = None

    type: ClassVar[str] = "document"


@dataclass(slots=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    type: ClassVar[str] = "tool_use"


@dataclass(slots=True)
class ToolResultBlock:
    tool_use_id: str
    content: str | list[dict[str, Any]] | None = None
    is_error: bool = False

    type: ClassVar[str] = "tool_result"

    @property
    def text(self) -> str:
        """Flattened textual content of the result."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        parts = [
            str(item.get("text", ""))
            for item in self.content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        return "\n".join(parts)


@dataclass(slots=True)
class UnknownBlock:
    """A block kind this package does not model; kept verbatim."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)


ContentBlock = (
    TextBlock
    | ThinkingBlock
    | ImageBlock
    | DocumentBlock
    | ToolUseBlock
    | ToolResultBlock
    | UnknownBlock
)


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Build a content block from its JSON form."""
    block_type = data.get("type")
    match block_type:
        case "text":
            return TextBlock(text=str(data.get("text", "")))
        case "thinking":
            return ThinkingBlock(
                thinking=str(data.get("thinking", "")),
                signature=str(data.get("signature", "")),
            )
        case "image":
            return ImageBlock(source=dict(data.get("source") or {}))
        case "document":
            return DocumentBlock(source=dict(data.get("source") or {}), title=data.get("title"))
        case "tool_use":
            raw_input = data.get("input")
            return ToolUseBlock(
                id=str(data.get("id") or ""),
                name=str(data.get("name") or ""),
                input=raw_input if isinstance(raw_input, dict) else {},
            )
        case "tool_result":
            content = data.get("content")
            if not isinstance(content, (str, list)):
                content = None if content is None else str(content)
            return ToolResultBlock(
                tool_use_id=str(data.get("tool_use_id") or ""),
                content=content,
                is_error=data.get("is_error") is True,
            )
        case _:
            return UnknownBlock(type=str(block_type), data=dict(data))


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    """Serialize a content block to its JSON form."""
    match block:
        case TextBlock(text=text):
            return {"type": "text", "text": text}
        case ThinkingBlock(thinking=thinking, signature=signature):
            return {"type": "thinking", "thinking": thinking, "signature": signature}
        case ImageBlock(source=source):
            return {"type": "image", "source": dict(source)}
        case DocumentBlock(source=source, title=title):
            result: dict[str, Any] = {"type": "document", "source": dict(source)}
            if title:
                result["title"] = title
            return result
        case ToolUseBlock(id=tool_id, name=name, input=tool_input):
            return {"type": "tool_use", "id": tool_id, "name": name, "input": dict(tool_input)}
        case ToolResultBlock(tool_use_id=tool_use_id, content=content, is_error=is_error):
            return {
                "type": "tool_result",
                "tool_use_id": tool_use_id,
                "content": content,
                "is_error": is_error,
            }
        case UnknownBlock(data=data):
            return dict(data)
    raise TypeError(f"Not a content block: {block!r}")


def content_from_raw(raw: Any) -> list[ContentBlock]:
    """Normalize a message ``content`` field (string or block list)."""
    if isinstance(raw, str):
        return [TextBlock(text=raw)]
    if isinstance(raw, list):
        return [block_from_dict(item) for item in raw if isinstance(item, dict)]
    return []


# -----------------------------------------------------------------------------
# Protocol messages
# -----------------------------------------------------------------------------


class MessageKind(Enum):
    """Kinds of protocol messages exchanged with the agent."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    RESULT = "result"


@dataclass(slots=True, kw_only=True)
class _BaseMessage:
    uuid: str = ""
    session_id: str = ""
    parent_tool_use_id: str | None = None
    timestamp: Any = None  # Epoch seconds/ms or ISO string, as recorded
    cwd: str | None = None  # Working directory recorded by the agent


@dataclass(slots=True, kw_only=True)
class SystemMessage(_BaseMessage):
    subtype: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[MessageKind] = MessageKind.SYSTEM


@dataclass(slots=True, kw_only=True)
class UserMessage(_BaseMessage):
    content: list[ContentBlock] = field(default_factory=list)

    kind: ClassVar[MessageKind] = MessageKind.USER


@dataclass(slots=True, kw_only=True)
class AssistantMessage(_BaseMessage):
    content: list[ContentBlock] = field(default_factory=list)
    model: str | None = None

    kind: ClassVar[MessageKind] = MessageKind.ASSISTANT


@dataclass(slots=True, kw_only=True)
class ResultMessage(_BaseMessage):
    subtype: str = ""
    is_error: bool = False
    result: str | None = None
    num_turns: int | None = None
    duration_ms: int | None = None
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None

    kind: ClassVar[MessageKind] = MessageKind.RESULT


ProtocolMessage = SystemMessage | UserMessage | AssistantMessage | ResultMessage

# Keys lifted into _BaseMessage fields, never copied into SystemMessage.data
_COMMON_KEYS = frozenset(
    {"type", "uuid", "session_id", "sessionId", "parent_tool_use_id", "timestamp", "cwd", "subtype"}
)


def message_from_dict(record: dict[str, Any]) -> ProtocolMessage | None:
    """Build a protocol message from a live SDK dict or a transcript record.

    Transcript records use ``sessionId`` and may carry string content; both
    shapes are accepted. Records that are not protocol messages (summaries,
    file snapshots, ...) return None.
    """
    common: dict[str, Any] = {
        "uuid": str(record.get("uuid") or ""),
        "session_id": str(record.get("session_id") or record.get("sessionId") or ""),
        "parent_tool_use_id": record.get("parent_tool_use_id"),
        "timestamp": record.get("timestamp"),
        "cwd": record.get("cwd") if isinstance(record.get("cwd"), str) else None,
    }
    inner = record.get("message")
    if not isinstance(inner, dict):
        inner = {}

    match record.get("type"):
        case "system":
            data = {k: v for k, v in record.items() if k not in _COMMON_KEYS}
            return SystemMessage(subtype=str(record.get("subtype") or ""), data=data, **common)
        case "user":
            return UserMessage(content=content_from_raw(inner.get("content")), **common)
        case "assistant":
            return AssistantMessage(
                content=content_from_raw(inner.get("content")),
                model=inner.get("model"),
                **common,
            )
        case "result":
            return ResultMessage(
                subtype=str(record.get("subtype") or ""),
                is_error=record.get("is_error") is True,
                result=record.get("result"),
                num_turns=record.get("num_turns"),
                duration_ms=record.get("duration_ms"),
                total_cost_usd=record.get("total_cost_usd"),
                usage=record.get("usage"),
                **common,
            )
        case _:
            return None


def message_to_dict(message: ProtocolMessage) -> dict[str, Any]:
    """Serialize a protocol message to the wire shape."""
    base: dict[str, Any] = {
        "type": message.kind.value,
        "uuid": message.uuid,
        "session_id": message.session_id,
    }
    if message.timestamp is not None:
        base["timestamp"] = message.timestamp
    if message.cwd:
        base["cwd"] = message.cwd

    match message:
        case SystemMessage(subtype=subtype, data=data):
            return {**data, **base, "subtype": subtype}
        case UserMessage(content=content):
            base["parent_tool_use_id"] = message.parent_tool_use_id
            base["message"] = {"role": "user", "content": [block_to_dict(b) for b in content]}
            return base
        case AssistantMessage(content=content, model=model):
            base["parent_tool_use_id"] = message.parent_tool_use_id
            inner: dict[str, Any] = {
                "role": "assistant",
                "content": [block_to_dict(b) for b in content],
            }
            if model:
                inner["model"] = model
            base["message"] = inner
            return base
        case ResultMessage():
            base["subtype"] = message.subtype
            base["is_error"] = message.is_error
            for key in ("result", "num_turns", "duration_ms", "total_cost_usd", "usage"):
                value = getattr(message, key)
                if value is not None:
                    base[key] = value
            return base
    raise TypeError(f"Not a protocol message: {message!r}")


def tool_use_blocks(message: ProtocolMessage) -> list[ToolUseBlock]:
    """Tool invocations carried by an assistant message."""
    if not isinstance(message, AssistantMessage):
        return []
    return [b for b in message.content if isinstance(b, ToolUseBlock) and b.id and b.name]


def tool_result_blocks(message: ProtocolMessage) -> list[ToolResultBlock]:
    """Tool results carried by a user message."""
    if not isinstance(message, UserMessage):
        return []
    return [b for b in message.content if isinstance(b, ToolResultBlock)]


def first_text(message: ProtocolMessage) -> str:
    """First text block of a user or assistant message, or empty string."""
    if isinstance(message, (UserMessage, AssistantMessage)):
        for block in message.content:
            if isinstance(block, TextBlock):
                return block.text
    return ""


# -----------------------------------------------------------------------------
# User turn construction
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Attachment:
    """A file attached to a chat message (base64 payload)."""

    name: str
    media_type: str
    data: str


def build_user_message_content(
    prompt: str, attachments: list[Attachment] | None = None
) -> list[ContentBlock]:
    """Build user message content from prompt text and attachments.

    Images become image blocks, PDFs and text files become document blocks.
    Other media types are skipped with a warning.
    """
    blocks: list[ContentBlock] = []
    for attachment in attachments or []:
        media_type = attachment.media_type.lower()
        if media_type.startswith("image/"):
            blocks.append(
                ImageBlock(
                    source={"type": "base64", "media_type": media_type, "data": attachment.data}
                )
            )
        elif media_type == "application/pdf":
            blocks.append(
                DocumentBlock(
                    source={"type": "base64", "media_type": media_type, "data": attachment.data},
                    title=attachment.name or None,
                )
            )
        elif media_type.startswith("text/"):
            try:
                text = base64.b64decode(attachment.data).decode("utf-8", errors="replace")
            except (binascii.Error, ValueError):
                log.warning("Skipping attachment %s: invalid base64 payload", attachment.name)
                continue
            blocks.append(
                DocumentBlock(
                    source={"type": "text", "media_type": "text/plain", "data": text},
                    title=attachment.name or None,
                )
            )
        else:
            log.warning(
                "Skipping attachment %s: unsupported media type %s",
                attachment.name,
                attachment.media_type,
            )
    if prompt or not blocks:
        blocks.append(TextBlock(text=prompt))
    return blocks


def new_user_message(content: list[ContentBlock]) -> UserMessage:
    """Create a synthetic user turn message with a fresh uuid."""
    return UserMessage(uuid=str(uuid.uuid4()), session_id="", content=content)


def tool_result_message(tool_use_id: str, content: str, is_error: bool) -> UserMessage:
    """Create a synthetic user turn answering a tool invocation."""
    return new_user_message(
        [ToolResultBlock(tool_use_id=tool_use_id, content=content, is_error=is_error)]
    )


# -----------------------------------------------------------------------------
# Outgoing events (Session -> subscribed clients)
# -----------------------------------------------------------------------------


class SessionEvent(Enum):
    """Event names passed alongside outgoing messages."""

    MESSAGE_ADDED = "messageAdded"
    MESSAGES_UPDATED = "messagesUpdated"
    SESSION_STATE_CHANGED = "sessionStateChanged"


@dataclass(frozen=True, slots=True)
class MessageAdded:
    """One transcript entry appended."""

    session_id: str | None
    message: ProtocolMessage

    type: ClassVar[str] = "message_added"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "sessionId": self.session_id,
            "message": message_to_dict(self.message),
        }


@dataclass(frozen=True, slots=True)
class MessagesUpdated:
    """Wholesale transcript replacement."""

    session_id: str | None
    messages: list[ProtocolMessage]

    type: ClassVar[str] = "messages_updated"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "sessionId": self.session_id,
            "messages": [message_to_dict(m) for m in self.messages],
        }


@dataclass(frozen=True, slots=True)
class SessionStateChanged:
    """Partial session state delta.

    ``session_state`` may hold ``is_busy``, ``is_loading`` and ``options``.
    """

    session_id: str | None
    session_state: dict[str, Any]

    type: ClassVar[str] = "session_state_changed"

    def to_dict(self) -> dict[str, Any]:
        state: dict[str, Any] = {}
        if "is_busy" in self.session_state:
            state["isBusy"] = self.session_state["is_busy"]
        if "is_loading" in self.session_state:
            state["isLoading"] = self.session_state["is_loading"]
        if "options" in self.session_state:
            state["options"] = options_to_wire(self.session_state["options"])
        return {"type": self.type, "sessionId": self.session_id, "sessionState": state}


OutgoingMessage = MessageAdded | MessagesUpdated | SessionStateChanged


# -----------------------------------------------------------------------------
# Collaborator protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class SessionClient(Protocol):
    """One connected UI endpoint (e.g. one WebSocket connection)."""

    session_id: str | None

    def receive_session_message(self, event: str, message: OutgoingMessage) -> None:
        """Deliver an outgoing session event. Must not block."""
        ...


class CancellationToken:
    """Cooperative cancellation handle passed to the agent client."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@runtime_checkable
class AgentStreamClient(Protocol):
    """Agent SDK capability consumed by sessions."""

    def query_stream(
        self,
        prompt: str | AsyncIterable[UserMessage],
        options: dict[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[ProtocolMessage]:
        """Run one turn, yielding protocol messages until the turn ends."""
        ...

    async def load_messages(self, session_id: str) -> list[ProtocolMessage]:
        """Return the persisted transcript for a session id, or []."""
        ...
