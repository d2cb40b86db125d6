"""Agent stream client backed by the Claude Agent SDK.

Runs one turn through ``claude_agent_sdk.query`` and converts the SDK's
message objects into the session layer's protocol messages. Persisted
transcripts are read through a ``TranscriptStore``; the SDK writes them,
this module never does.

Usage:
    store = TranscriptStore()
    client = ClaudeAgentClient(AgentClientConfig(model="claude-sonnet-4-5"), store)

    async for message in client.query_stream("hello", {"cwd": "/work"}):
        print(message.kind, message.session_id)
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from claude_agent_sdk import ClaudeAgentOptions, query
from claude_agent_sdk.types import (
    AssistantMessage as SDKAssistantMessage,
    ResultMessage as SDKResultMessage,
    SystemMessage as SDKSystemMessage,
    TextBlock as SDKTextBlock,
    ThinkingBlock as SDKThinkingBlock,
    ToolResultBlock as SDKToolResultBlock,
    ToolUseBlock as SDKToolUseBlock,
    UserMessage as SDKUserMessage,
)

from agentkit.config.secrets import fetch_secret
from agentkit.logging import get_logger
from agentkit.session.protocols import (
    AssistantMessage,
    CancellationToken,
    ContentBlock,
    ProtocolMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UnknownBlock,
    UserMessage,
    block_to_dict,
)
from agentkit.session.storage import TranscriptStore

if TYPE_CHECKING:
    from agentkit.config.schema import Config

log = get_logger("agent")

# Set for the agent CLI unless the environment already defines them
_DEFAULT_AGENT_ENV = {
    "CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC": "1",
    "DISABLE_ERROR_REPORTING": "1",
}

# Session option name -> ClaudeAgentOptions field
_SDK_OPTION_FIELDS = {
    "cwd": "cwd",
    "permission_mode": "permission_mode",
    "allowed_tools": "allowed_tools",
    "model": "model",
    "max_turns": "max_turns",
    "resume": "resume",
    "mcp_servers": "mcp_servers",
    "setting_sources": "setting_sources",
    "system_prompt": "system_prompt",
}

_DONE = object()


@dataclass
class AgentClientConfig:
    """Connection settings for the agent CLI."""

    api_key: str | None = None
    base_url: str | None = None
    model: str | None = None
    executable: str | None = None  # Path to the claude CLI; None searches PATH

    @classmethod
    def from_config(cls, config: Config) -> AgentClientConfig:
        return cls(
            api_key=fetch_secret("ANTHROPIC_API_KEY"),
            base_url=config.agent.base_url or fetch_secret("ANTHROPIC_BASE_URL"),
            model=config.agent.model,
            executable=config.agent.executable,
        )


async def _pull(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _DONE


async def _next_or_cancel(
    iterator: AsyncIterator[Any], cancel_token: CancellationToken | None
) -> Any:
    """Next stream item, or ``_DONE`` when exhausted or cancelled."""
    if cancel_token is None:
        return await _pull(iterator)
    if cancel_token.cancelled:
        return _DONE

    next_task = asyncio.ensure_future(_pull(iterator))
    cancel_task = asyncio.ensure_future(cancel_token.wait())
    try:
        await asyncio.wait({next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancel_task.cancel()

    if next_task.done():
        return next_task.result()

    next_task.cancel()
    await asyncio.gather(next_task, return_exceptions=True)
    return _DONE


def _convert_block(block: Any) -> ContentBlock:
    if isinstance(block, SDKTextBlock):
        return TextBlock(text=block.text)
    if isinstance(block, SDKThinkingBlock):
        return ThinkingBlock(thinking=block.thinking, signature=block.signature)
    if isinstance(block, SDKToolUseBlock):
        return ToolUseBlock(id=block.id, name=block.name, input=dict(block.input or {}))
    if isinstance(block, SDKToolResultBlock):
        return ToolResultBlock(
            tool_use_id=block.tool_use_id,
            content=block.content,
            is_error=bool(block.is_error),
        )
    return UnknownBlock(type=type(block).__name__, data={"value": str(block)})


def _convert_content(content: Any) -> list[ContentBlock]:
    if isinstance(content, str):
        return [TextBlock(text=content)]
    return [_convert_block(block) for block in content or []]


def convert_sdk_message(message: Any, session_id: str) -> ProtocolMessage | None:
    """Convert an SDK message; returns None for kinds sessions do not track."""
    message_uuid = getattr(message, "uuid", None) or str(uuid.uuid4())
    parent_tool_use_id = getattr(message, "parent_tool_use_id", None)

    if isinstance(message, SDKSystemMessage):
        data = dict(message.data or {})
        cwd = data.get("cwd")
        return SystemMessage(
            uuid=message_uuid,
            session_id=str(data.get("session_id") or session_id),
            cwd=cwd if isinstance(cwd, str) else None,
            subtype=message.subtype,
            data=data,
        )
    if isinstance(message, SDKUserMessage):
        return UserMessage(
            uuid=message_uuid,
            session_id=session_id,
            parent_tool_use_id=parent_tool_use_id,
            content=_convert_content(message.content),
        )
    if isinstance(message, SDKAssistantMessage):
        return AssistantMessage(
            uuid=message_uuid,
            session_id=session_id,
            parent_tool_use_id=parent_tool_use_id,
            content=_convert_content(message.content),
            model=message.model,
        )
    if isinstance(message, SDKResultMessage):
        return ResultMessage(
            uuid=message_uuid,
            session_id=message.session_id or session_id,
            subtype=message.subtype,
            is_error=message.is_error,
            result=message.result,
            num_turns=message.num_turns,
            duration_ms=message.duration_ms,
            total_cost_usd=message.total_cost_usd,
            usage=message.usage,
        )
    return None


def to_sdk_user_turn(message: UserMessage, session_id: str) -> dict[str, Any]:
    """A user turn in the SDK's streaming-input shape."""
    return {
        "type": "user",
        "message": {
            "role": "user",
            "content": [block_to_dict(block) for block in message.content],
        },
        "parent_tool_use_id": message.parent_tool_use_id,
        "session_id": session_id,
    }


class ClaudeAgentClient:
    """Agent stream client for sessions, backed by ``claude_agent_sdk``."""

    def __init__(self, config: AgentClientConfig, store: TranscriptStore) -> None:
        self._config = config
        self._store = store

    @property
    def store(self) -> TranscriptStore:
        return self._store

    def build_options(self, options: dict[str, Any]) -> ClaudeAgentOptions:
        """Translate session options into ``ClaudeAgentOptions``."""
        kwargs: dict[str, Any] = {}
        for name, sdk_field in _SDK_OPTION_FIELDS.items():
            value = options.get(name)
            if value is not None:
                kwargs[sdk_field] = value

        if "model" not in kwargs and self._config.model:
            kwargs["model"] = self._config.model
        if self._config.executable:
            kwargs["cli_path"] = self._config.executable

        kwargs["env"] = self._build_env(options.get("env"))
        return ClaudeAgentOptions(**kwargs)

    def _build_env(self, extra: dict[str, str] | None) -> dict[str, str]:
        env = {key: value for key, value in _DEFAULT_AGENT_ENV.items() if key not in os.environ}
        if self._config.api_key:
            env["ANTHROPIC_API_KEY"] = self._config.api_key
        if self._config.base_url:
            env["ANTHROPIC_BASE_URL"] = self._config.base_url
        if extra:
            env.update({str(k): str(v) for k, v in extra.items()})
        return env

    async def query_stream(
        self,
        prompt: str | AsyncIterable[UserMessage],
        options: dict[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[ProtocolMessage]:
        """Run one turn, yielding protocol messages until it ends or is cancelled."""
        session_id = str(options.get("resume") or "")
        sdk_options = self.build_options(options)

        if isinstance(prompt, str):
            sdk_prompt: Any = prompt
        else:
            sdk_prompt = self._sdk_turns(prompt, session_id or "default")

        log.debug(
            "Starting turn (resume=%s, cwd=%s)", session_id or None, options.get("cwd")
        )
        stream = query(prompt=sdk_prompt, options=sdk_options)
        try:
            while True:
                item = await _next_or_cancel(stream, cancel_token)
                if item is _DONE:
                    if cancel_token is not None and cancel_token.cancelled:
                        log.info("Turn cancelled (session=%s)", session_id or None)
                    break

                message = convert_sdk_message(item, session_id)
                if message is None:
                    continue
                if message.session_id:
                    session_id = message.session_id
                yield message
        finally:
            await stream.aclose()

    async def _sdk_turns(
        self, turns: AsyncIterable[UserMessage], session_id: str
    ) -> AsyncIterator[dict[str, Any]]:
        async for turn in turns:
            yield to_sdk_user_turn(turn, session_id)

    async def load_messages(self, session_id: str) -> list[ProtocolMessage]:
        """Persisted transcript for ``session_id``; [] when there is none.

        Read errors propagate to the caller.
        """
        try:
            return await asyncio.to_thread(self._store.load, session_id)
        except ValueError as e:
            log.warning("Cannot load session %r: %s", session_id, e)
            return []
