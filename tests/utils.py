"""Shared test doubles for agentkit tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

from agentkit.session.protocols import (
    AssistantMessage,
    CancellationToken,
    OutgoingMessage,
    ProtocolMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

# Script item: wait for the turn to be cancelled, then end the stream
BLOCK = object()


# =============================================================================
# Timers
# =============================================================================


class FakeTimer:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Manually advanced clock for debouncers."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def advance(self, seconds: float) -> None:
        self.now += seconds
        for timer in list(self.timers):
            if timer.cancelled:
                self.timers.remove(timer)
            elif timer.due <= self.now:
                self.timers.remove(timer)
                timer.callback()


# =============================================================================
# Collaborators
# =============================================================================


class RecordingClient:
    """SessionClient that records every delivered event."""

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id
        self.events: list[tuple[str, OutgoingMessage]] = []

    def receive_session_message(self, event: str, message: OutgoingMessage) -> None:
        self.events.append((event, message))

    def received(self, event: str) -> list[Any]:
        return [message for name, message in self.events if name == event]

    def clear(self) -> None:
        self.events.clear()


class FakeAgentClient:
    """Scripted AgentStreamClient.

    Each ``query_stream`` call consumes the next script. Protocol messages
    are yielded, an ``asyncio.Event`` is awaited, an exception is raised and
    ``BLOCK`` waits for the turn's cancellation token.
    """

    def __init__(
        self,
        scripts: list[list[Any]] | None = None,
        transcripts: dict[str, list[ProtocolMessage]] | None = None,
    ) -> None:
        self.scripts = list(scripts or [])
        self.transcripts = dict(transcripts or {})
        self.turns: list[UserMessage] = []
        self.options: list[dict[str, Any]] = []
        self.load_calls: list[str] = []
        self.load_error: Exception | None = None
        self.load_gate: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0

    async def query_stream(
        self,
        prompt: str | AsyncIterable[UserMessage],
        options: dict[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[ProtocolMessage]:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if not isinstance(prompt, str):
                async for message in prompt:
                    self.turns.append(message)
            self.options.append(dict(options))

            script = self.scripts.pop(0) if self.scripts else []
            for item in script:
                if item is BLOCK:
                    assert cancel_token is not None
                    await cancel_token.wait()
                    return
                if isinstance(item, asyncio.Event):
                    await item.wait()
                elif isinstance(item, BaseException):
                    raise item
                else:
                    yield item
        finally:
            self.active -= 1

    async def load_messages(self, session_id: str) -> list[ProtocolMessage]:
        self.load_calls.append(session_id)
        if self.load_gate is not None:
            await self.load_gate.wait()
        if self.load_error is not None:
            raise self.load_error
        return list(self.transcripts.get(session_id, []))


# =============================================================================
# Message builders
# =============================================================================


def init_message(session_id: str) -> SystemMessage:
    return SystemMessage(subtype="init", session_id=session_id)


def assistant_text(session_id: str, text: str) -> AssistantMessage:
    return AssistantMessage(session_id=session_id, content=[TextBlock(text=text)])


def result_message(session_id: str, is_error: bool = False) -> ResultMessage:
    return ResultMessage(
        session_id=session_id,
        subtype="error_during_execution" if is_error else "success",
        is_error=is_error,
    )


def turn_script(session_id: str, text: str = "Done") -> list[Any]:
    """A complete successful turn."""
    return [init_message(session_id), assistant_text(session_id, text), result_message(session_id)]


def user_text(session_id: str, text: str, cwd: str | None = None) -> UserMessage:
    return UserMessage(session_id=session_id, content=[TextBlock(text=text)], cwd=cwd)


def tool_use_message(session_id: str, tool_use_id: str, name: str) -> AssistantMessage:
    return AssistantMessage(
        session_id=session_id, content=[ToolUseBlock(id=tool_use_id, name=name)]
    )


def tool_result_user(
    session_id: str, tool_use_id: str, content: str, is_error: bool = False
) -> UserMessage:
    return UserMessage(
        session_id=session_id,
        content=[ToolResultBlock(tool_use_id=tool_use_id, content=content, is_error=is_error)],
    )
