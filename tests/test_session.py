"""Tests for Session: turns, transcript loading, approvals, options and state."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agentkit.session.approval import PLAN_APPROVED_TEXT, PLAN_REJECTED_TEXT
from agentkit.session.options import create_default_options
from agentkit.session.protocols import (
    AssistantMessage,
    Attachment,
    ImageBlock,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    UserMessage,
    first_text,
)
from agentkit.session.session_manager import Session
from tests.utils import (
    BLOCK,
    FakeAgentClient,
    FakeScheduler,
    RecordingClient,
    assistant_text,
    init_message,
    result_message,
    tool_result_user,
    tool_use_message,
    turn_script,
    user_text,
)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clear_workspace_env(monkeypatch):
    for name in ("WORKSPACES_DIR", "PROJECT_ROOT", "WORKSPACE_DIR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def client():
    return RecordingClient()


def plan_transcript(*extra):
    return [
        user_text("s1", "Plan the migration"),
        tool_use_message("s1", "t1", "ExitPlanMode"),
        *extra,
    ]


def sent_block(agent: FakeAgentClient, turn: int = 0):
    return agent.turns[turn].content[0]


# =============================================================================
# Turns
# =============================================================================


class TestSend:
    """Tests for running chat turns."""

    @pytest.mark.asyncio
    async def test_send_runs_turn(self, scheduler, client):
        """Test that a turn appends the prompt and every streamed message."""
        agent = FakeAgentClient(scripts=[turn_script("s1", "Hello back")])
        session = Session(agent, scheduler=scheduler)
        session.subscribe(client)
        client.clear()

        await session.send("hello")

        assert session.session_id == "s1"
        assert client.session_id == "s1"
        assert [type(m) for m in session.messages] == [
            UserMessage,
            SystemMessage,
            AssistantMessage,
            ResultMessage,
        ]
        assert first_text(agent.turns[0]) == "hello"
        assert session.summary == "hello"
        assert not session.is_busy

        added = client.received("messageAdded")
        assert len(added) == 4
        assert added[-1].session_id == "s1"

    @pytest.mark.asyncio
    async def test_first_turn_has_no_resume(self, scheduler):
        """Test that only sessions with an id resume, and session-only options stay local."""
        agent = FakeAgentClient(scripts=[turn_script("s1"), turn_script("s1")])
        session = Session(agent, scheduler=scheduler)

        await session.send("one")
        await session.send("two")

        assert "resume" not in agent.options[0]
        assert agent.options[1]["resume"] == "s1"
        assert all("thinking_level" not in options for options in agent.options)

    @pytest.mark.asyncio
    async def test_turns_are_serialized(self, scheduler):
        """Test that a second send waits for the in-flight turn."""
        gate = asyncio.Event()
        agent = FakeAgentClient(
            scripts=[[init_message("s1"), gate, result_message("s1")], turn_script("s1")]
        )
        session = Session(agent, scheduler=scheduler)

        first = asyncio.create_task(session.send("one"))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(session.send("two"))
        await asyncio.sleep(0.01)

        assert session.is_busy
        assert len(agent.turns) == 1

        gate.set()
        await asyncio.gather(first, second)

        assert agent.max_active == 1
        assert [first_text(turn) for turn in agent.turns] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_attachments_sent_as_blocks(self, scheduler):
        agent = FakeAgentClient(scripts=[turn_script("s1")])
        session = Session(agent, scheduler=scheduler)

        await session.send(
            "what is this?", [Attachment(name="a.png", media_type="image/png", data="AAAA")]
        )

        content = agent.turns[0].content
        assert isinstance(content[0], ImageBlock)
        assert content[-1] == TextBlock(text="what is this?")

    @pytest.mark.asyncio
    async def test_send_tool_result(self, scheduler):
        """Test that an explicit tool result is sent as its own turn."""
        agent = FakeAgentClient(scripts=[turn_script("s1")])
        session = Session(agent, scheduler=scheduler)

        await session.send_tool_result(" q1 ", "Blue")

        block = sent_block(agent)
        assert isinstance(block, ToolResultBlock)
        assert block.tool_use_id == "q1"
        assert block.content == "Blue"
        assert block.is_error is False

    @pytest.mark.asyncio
    async def test_send_tool_result_requires_id(self, scheduler):
        agent = FakeAgentClient()
        session = Session(agent, scheduler=scheduler)

        with pytest.raises(ValueError):
            await session.send_tool_result("   ", "Blue")
        assert agent.turns == []


class TestTurnErrors:
    """Tests for error handling during turns."""

    @pytest.mark.asyncio
    async def test_exit_after_error_result_suppressed(self, scheduler):
        """Test that the CLI's exit after an error result is not recorded."""
        agent = FakeAgentClient(
            scripts=[
                [
                    init_message("s1"),
                    result_message("s1", is_error=True),
                    RuntimeError("Command failed with exit code 1"),
                ]
            ]
        )
        session = Session(agent, scheduler=scheduler)

        await session.send("go")

        assert session.error is None
        assert not session.is_busy

    @pytest.mark.asyncio
    async def test_other_errors_recorded(self, scheduler):
        """Test that stream failures are recorded and never raised."""
        failure = RuntimeError("boom")
        agent = FakeAgentClient(scripts=[[init_message("s1"), failure]])
        session = Session(agent, scheduler=scheduler)

        await session.send("go")

        assert session.error is failure
        assert not session.is_busy
        assert [type(m) for m in session.messages] == [UserMessage, SystemMessage]

    @pytest.mark.asyncio
    async def test_exit_code_without_error_result_recorded(self, scheduler):
        agent = FakeAgentClient(
            scripts=[[init_message("s1"), RuntimeError("Command failed with exit code 1")]]
        )
        session = Session(agent, scheduler=scheduler)

        await session.send("go")

        assert isinstance(session.error, RuntimeError)

    @pytest.mark.asyncio
    async def test_broken_client_does_not_stop_broadcast(self, scheduler, client):
        """Test that one failing subscriber does not starve the others."""

        class BrokenClient(RecordingClient):
            def receive_session_message(self, event, message):
                if event == "messageAdded":
                    raise RuntimeError("socket closed")
                super().receive_session_message(event, message)

        agent = FakeAgentClient(scripts=[turn_script("s1")])
        session = Session(agent, scheduler=scheduler)
        broken = BrokenClient()
        session.subscribe(broken)
        session.subscribe(client)

        await session.send("go")

        assert len(client.received("messageAdded")) == 4


class TestInterrupt:
    @pytest.mark.asyncio
    async def test_interrupt_clears_busy(self, scheduler):
        """Test that interrupt drops busy immediately and ends the stream."""
        agent = FakeAgentClient(scripts=[[init_message("s1"), BLOCK]])
        session = Session(agent, scheduler=scheduler)

        task = asyncio.create_task(session.send("long task"))
        await asyncio.sleep(0.01)
        assert session.is_busy

        session.interrupt()
        assert not session.is_busy

        await asyncio.wait_for(task, timeout=1.0)
        assert not session.is_busy
        assert session.error is None

    def test_interrupt_when_idle(self, scheduler):
        session = Session(FakeAgentClient(), scheduler=scheduler)
        session.interrupt()
        assert not session.is_busy


# =============================================================================
# Transcript loading
# =============================================================================


class TestResume:
    """Tests for attaching to persisted transcripts."""

    @pytest.mark.asyncio
    async def test_resume_loads_once(self, scheduler):
        """Test that resuming an already loaded session does not reload."""
        agent = FakeAgentClient(
            transcripts={"s1": [user_text("s1", "hi"), assistant_text("s1", "hey")]}
        )
        session = Session(agent, scheduler=scheduler)

        await session.resume_from("s1")
        await session.resume_from("s1")

        assert agent.load_calls == ["s1"]
        assert session.is_loaded
        assert len(session.messages) == 2

    @pytest.mark.asyncio
    async def test_concurrent_loads_shared(self, scheduler):
        """Test that concurrent resumes share one load."""
        agent = FakeAgentClient(transcripts={"s1": [user_text("s1", "hi")]})
        agent.load_gate = asyncio.Event()
        session = Session(agent, scheduler=scheduler)

        first = asyncio.create_task(session.resume_from("s1"))
        second = asyncio.create_task(session.load_from_server("s1"))
        await asyncio.sleep(0.01)
        assert session.is_loading

        agent.load_gate.set()
        await asyncio.gather(first, second)

        assert agent.load_calls == ["s1"]
        assert not session.is_loading

    @pytest.mark.asyncio
    async def test_resume_other_id_reloads(self, scheduler):
        agent = FakeAgentClient(
            transcripts={"s1": [user_text("s1", "one")], "s2": [user_text("s2", "two")]}
        )
        session = Session(agent, scheduler=scheduler)

        await session.resume_from("s1")
        await session.resume_from("s2")

        assert agent.load_calls == ["s1", "s2"]
        assert session.session_id == "s2"
        assert first_text(session.messages[0]) == "two"

    @pytest.mark.asyncio
    async def test_blank_id_ignored(self, scheduler):
        agent = FakeAgentClient()
        session = Session(agent, scheduler=scheduler)

        await session.resume_from("  ")

        assert agent.load_calls == []

    @pytest.mark.asyncio
    async def test_empty_transcript_not_broadcast(self, scheduler, client):
        """Test that a not-yet-persisted transcript does not wipe subscribers' view."""
        agent = FakeAgentClient()
        session = Session(agent, scheduler=scheduler)
        session.subscribe(client)
        client.clear()

        await session.resume_from("fresh")

        assert session.session_id == "fresh"
        assert client.session_id == "fresh"
        assert client.received("messagesUpdated") == []
        assert not session.is_loaded
        assert not session.is_loading

        session.flush_state()
        [state] = client.received("sessionStateChanged")
        assert state.session_state == {"is_loading": False}

    @pytest.mark.asyncio
    async def test_empty_load_during_turn_not_broadcast(self, scheduler, client):
        """Test that an empty load mid-turn leaves subscribers' transcript alone."""
        gate = asyncio.Event()
        agent = FakeAgentClient(scripts=[[init_message("s1"), gate, result_message("s1")]])
        session = Session(agent, scheduler=scheduler)
        session.subscribe(client)
        turn = asyncio.create_task(session.send("hello"))
        await asyncio.sleep(0.01)
        assert session.session_id == "s1"
        assert len(client.received("messageAdded")) == 2
        client.clear()

        await session.resume_from("s1")

        assert agent.load_calls == ["s1"]
        assert client.received("messagesUpdated") == []
        assert session.is_busy

        gate.set()
        await turn
        assert client.received("messagesUpdated") == []
        assert not session.is_busy

    @pytest.mark.asyncio
    async def test_empty_load_for_new_id_then_persisted(self, scheduler):
        """Test that moving to an unpersisted id clears the loaded flag so a later resume reads it."""
        agent = FakeAgentClient(transcripts={"a": [user_text("a", "first")]})
        session = Session(agent, scheduler=scheduler)

        await session.resume_from("a")
        assert session.is_loaded
        await session.resume_from("b")
        assert session.session_id == "b"
        assert not session.is_loaded

        agent.transcripts["b"] = [user_text("b", "second")]
        await session.resume_from("b")

        assert agent.load_calls == ["a", "b", "b"]
        assert session.is_loaded
        assert first_text(session.messages[0]) == "second"

    @pytest.mark.asyncio
    async def test_failed_load_for_new_id_not_loaded(self, scheduler, client):
        agent = FakeAgentClient(transcripts={"a": [user_text("a", "first")]})
        session = Session(agent, scheduler=scheduler)
        await session.resume_from("a")

        agent.load_error = OSError("disk unavailable")
        await session.resume_from("b")

        assert session.error is agent.load_error
        assert not session.is_loaded
        session.subscribe(client)
        assert client.received("messagesUpdated") == []

    @pytest.mark.asyncio
    async def test_load_for_other_id_waits_then_loads(self, scheduler):
        """Test that a load for a second id runs after the in-flight one instead of sharing it."""
        agent = FakeAgentClient(
            transcripts={"a": [user_text("a", "first")], "b": [user_text("b", "second")]}
        )
        agent.load_gate = asyncio.Event()
        session = Session(agent, scheduler=scheduler)

        first = asyncio.create_task(session.load_from_server("a"))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(session.load_from_server("b"))
        await asyncio.sleep(0.01)
        assert agent.load_calls == ["a"]

        agent.load_gate.set()
        await asyncio.gather(first, second)

        assert agent.load_calls == ["a", "b"]
        assert session.session_id == "b"
        assert first_text(session.messages[0]) == "second"
        assert not session.is_loading

    @pytest.mark.asyncio
    async def test_loaded_transcript_broadcast(self, scheduler, client):
        agent = FakeAgentClient(transcripts={"s1": [user_text("s1", "hi")]})
        session = Session(agent, scheduler=scheduler)
        session.subscribe(client)
        client.clear()

        await session.resume_from("s1")

        [update] = client.received("messagesUpdated")
        assert update.session_id == "s1"
        assert len(update.messages) == 1

    @pytest.mark.asyncio
    async def test_load_failure_recorded(self, scheduler):
        agent = FakeAgentClient()
        agent.load_error = OSError("disk unavailable")
        session = Session(agent, scheduler=scheduler)

        await session.resume_from("s1")

        assert session.error is agent.load_error
        assert not session.is_loading
        assert not session.is_loaded

    @pytest.mark.asyncio
    async def test_last_modified_from_timestamps(self, scheduler):
        first = user_text("s1", "hi")
        first.timestamp = 1_700_000_000_000
        second = assistant_text("s1", "hey")
        second.timestamp = "2023-11-14T22:13:30Z"
        agent = FakeAgentClient(transcripts={"s1": [first, second]})
        session = Session(agent, scheduler=scheduler)

        await session.resume_from("s1")

        assert session.last_modified_time == 1_700_000_010.0

    @pytest.mark.asyncio
    async def test_adopts_transcript_cwd(self, scheduler):
        """Test that a session without a workspace adopts the transcript's."""
        agent = FakeAgentClient(transcripts={"s1": [user_text("s1", "hi", cwd="/work/demo")]})
        session = Session(agent, scheduler=scheduler)

        await session.resume_from("s1")

        assert session.effective_options["cwd"] == "/work/demo"

    @pytest.mark.asyncio
    async def test_resume_turn_uses_transcript_cwd(self, scheduler, tmp_path: Path):
        """Test that a resumed turn runs in the directory the transcript was recorded in."""
        agent = FakeAgentClient(
            scripts=[turn_script("s1")],
            transcripts={"s1": [user_text("s1", "hi", cwd=str(tmp_path))]},
        )
        session = Session(
            agent, options=create_default_options("/elsewhere"), scheduler=scheduler
        )

        await session.resume_from("s1")
        await session.send("more")

        assert agent.options[0]["resume"] == "s1"
        assert agent.options[0]["cwd"] == str(tmp_path)
        assert session.options["cwd"] == str(tmp_path)


# =============================================================================
# Plan approval and questions
# =============================================================================


class TestApprovalRouting:
    """Tests for typed chat answering pending interactive tools."""

    @pytest.mark.asyncio
    async def test_approve_pending_plan(self, scheduler):
        """Test that an approve phrase becomes the plan-exit tool result."""
        agent = FakeAgentClient(scripts=[turn_script("s1")], transcripts={"s1": plan_transcript()})
        session = Session(agent, scheduler=scheduler)
        await session.resume_from("s1")
        assert session.pending_tool_use is not None

        await session.send("Execute")

        block = sent_block(agent)
        assert isinstance(block, ToolResultBlock)
        assert block.tool_use_id == "t1"
        assert block.content == PLAN_APPROVED_TEXT
        assert block.is_error is False
        assert session.pending_tool_use is None

    @pytest.mark.asyncio
    async def test_reject_pending_plan(self, scheduler):
        agent = FakeAgentClient(scripts=[turn_script("s1")], transcripts={"s1": plan_transcript()})
        session = Session(agent, scheduler=scheduler)
        await session.resume_from("s1")

        await session.send("reject")

        block = sent_block(agent)
        assert block.content == PLAN_REJECTED_TEXT
        assert block.is_error is True

    @pytest.mark.asyncio
    async def test_placeholder_result_still_pending(self, scheduler):
        """Test that a placeholder error result leaves the plan awaiting approval."""
        transcript = plan_transcript(tool_result_user("s1", "t1", "Exit plan mode?", is_error=True))
        agent = FakeAgentClient(scripts=[turn_script("s1")], transcripts={"s1": transcript})
        session = Session(agent, scheduler=scheduler)
        await session.resume_from("s1")

        await session.send("run")

        block = sent_block(agent)
        assert isinstance(block, ToolResultBlock)
        assert block.content == PLAN_APPROVED_TEXT

    @pytest.mark.asyncio
    async def test_declined_plan_sends_chat(self, scheduler):
        """Test that after an explicit decline the text goes through as chat."""
        transcript = plan_transcript(
            tool_result_user("s1", "t1", "The user doesn't want to proceed", is_error=True)
        )
        agent = FakeAgentClient(scripts=[turn_script("s1")], transcripts={"s1": transcript})
        session = Session(agent, scheduler=scheduler)
        await session.resume_from("s1")

        await session.send("run")

        assert sent_block(agent) == TextBlock(text="run")

    @pytest.mark.asyncio
    async def test_question_answer(self, scheduler):
        transcript = [tool_use_message("s1", "q1", "AskUserQuestion")]
        agent = FakeAgentClient(scripts=[turn_script("s1")], transcripts={"s1": transcript})
        session = Session(agent, scheduler=scheduler)
        await session.resume_from("s1")

        await session.send("The second option")

        block = sent_block(agent)
        assert block.tool_use_id == "q1"
        assert block.content == "The second option"

    @pytest.mark.asyncio
    async def test_attachments_bypass_routing(self, scheduler):
        agent = FakeAgentClient(scripts=[turn_script("s1")], transcripts={"s1": plan_transcript()})
        session = Session(agent, scheduler=scheduler)
        await session.resume_from("s1")

        await session.send(
            "execute", [Attachment(name="a.png", media_type="image/png", data="AAAA")]
        )

        assert isinstance(sent_block(agent), ImageBlock)


# =============================================================================
# Options and state
# =============================================================================


class TestOptions:
    """Tests for SDK option updates."""

    def test_null_cwd_clears_workspace(self, scheduler, client):
        """Test that options merge with null clearing and are broadcast debounced."""
        session = Session(
            FakeAgentClient(), options=create_default_options("/work/demo"), scheduler=scheduler
        )
        session.subscribe(client)
        client.clear()

        session.set_sdk_options({"cwd": None, "model": "claude-opus-4-1"})

        assert "cwd" not in session.effective_options
        assert session.effective_options["model"] == "claude-opus-4-1"
        assert client.received("sessionStateChanged") == []

        scheduler.advance(0.05)
        [state] = client.received("sessionStateChanged")
        assert state.session_state["options"]["model"] == "claude-opus-4-1"
        assert "cwd" not in state.session_state["options"]

    def test_cleared_field_stays_cleared(self, scheduler):
        session = Session(FakeAgentClient(), scheduler=scheduler)

        session.set_sdk_options({"model": "claude-opus-4-1"})
        session.set_sdk_options({"model": None})
        session.set_sdk_options({"max_turns": 5})

        assert session.options["model"] is None
        assert "model" not in session.effective_options
        assert session.effective_options["max_turns"] == 5


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_subscribe_catches_up(self, scheduler, client):
        """Test that a new subscriber receives state then the transcript."""
        agent = FakeAgentClient(transcripts={"s1": [user_text("s1", "hi")]})
        session = Session(agent, scheduler=scheduler)
        await session.resume_from("s1")

        session.subscribe(client)
        session.subscribe(client)

        assert [event for event, _ in client.events] == ["sessionStateChanged", "messagesUpdated"]
        state = client.events[0][1].session_state
        assert state["is_busy"] is False
        assert state["is_loading"] is False
        assert client.session_id == "s1"

    def test_subscribe_new_session_sends_state_only(self, scheduler, client):
        session = Session(FakeAgentClient(), scheduler=scheduler)
        session.subscribe(client)
        assert [event for event, _ in client.events] == ["sessionStateChanged"]

    def test_unsubscribe_stops_delivery(self, scheduler, client):
        session = Session(FakeAgentClient(), scheduler=scheduler)
        session.subscribe(client)
        session.unsubscribe(client)
        client.clear()

        session.set_sdk_options({"model": "claude-opus-4-1"})
        session.flush_state()

        assert client.events == []
        assert not session.has_client(client)


class TestBusyState:
    @pytest.mark.asyncio
    async def test_busy_transitions_debounced(self, scheduler, client):
        """Test that busy changes reach clients as coalesced state deltas."""
        gate = asyncio.Event()
        agent = FakeAgentClient(
            scripts=[[init_message("s1"), gate, assistant_text("s1", "x"), result_message("s1")]]
        )
        session = Session(agent, scheduler=scheduler)
        session.subscribe(client)
        client.clear()

        task = asyncio.create_task(session.send("go"))
        await asyncio.sleep(0.01)
        assert session.is_busy

        scheduler.advance(0.05)
        [state] = client.received("sessionStateChanged")
        assert state.session_state == {"is_busy": True}
        client.clear()

        gate.set()
        await task
        assert not session.is_busy

        session.flush_state()
        [state] = client.received("sessionStateChanged")
        assert state.session_state == {"is_busy": False}
        assert state.session_id == "s1"
