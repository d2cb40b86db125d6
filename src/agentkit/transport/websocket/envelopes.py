"""Inbound WebSocket envelope types (client -> server)."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from agentkit.session.protocols import Attachment


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AttachmentPayload(_Envelope):
    """Base64 file attached to a chat message."""

    name: str = ""
    media_type: str = Field(alias="mediaType")
    data: str

    def to_attachment(self) -> Attachment:
        return Attachment(name=self.name, media_type=self.media_type, data=self.data)


class ChatEnvelope(_Envelope):
    """Send a chat message."""

    type: Literal["chat"]
    content: str | None = None
    attachments: list[AttachmentPayload] | None = None
    session_id: str | None = Field(default=None, alias="sessionId")
    new_conversation: bool = Field(default=False, alias="newConversation")


class SetSDKOptionsEnvelope(_Envelope):
    """Change session options (camelCase keys, null clears)."""

    type: Literal["setSDKOptions"]
    options: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = Field(default=None, alias="sessionId")


class ResumeEnvelope(_Envelope):
    """Attach to a persisted session."""

    type: Literal["resume"]
    session_id: str | None = Field(default=None, alias="sessionId")


class ToolResultEnvelope(_Envelope):
    """Answer an interactive tool invocation."""

    type: Literal["toolResult"]
    tool_use_id: str | None = Field(default=None, alias="toolUseId")
    content: str = ""
    is_error: bool = Field(default=False, alias="isError")
    session_id: str | None = Field(default=None, alias="sessionId")


class InterruptEnvelope(_Envelope):
    """Cancel the bound session's in-flight turn."""

    type: Literal["interrupt"]
    session_id: str | None = Field(default=None, alias="sessionId")


InboundEnvelope = (
    ChatEnvelope | SetSDKOptionsEnvelope | ResumeEnvelope | ToolResultEnvelope | InterruptEnvelope
)

ENVELOPE_TYPES: dict[str, type[_Envelope]] = {
    "chat": ChatEnvelope,
    "setSDKOptions": SetSDKOptionsEnvelope,
    "resume": ResumeEnvelope,
    "toolResult": ToolResultEnvelope,
    "interrupt": InterruptEnvelope,
}
