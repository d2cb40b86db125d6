"""Session and SessionManager implementations.

A Session is the in-memory coordinator for one conversation: it caches the
transcript, runs one agent turn at a time and broadcasts every change to its
subscribed clients. The SessionManager is the registry that binds transport
clients to Sessions; the server constructs one at startup and hands it to
the transport layer.
"""

from __future__ import annotations

import asyncio
import os
import re
import time
import weakref
from collections.abc import AsyncIterator, Coroutine, Sequence
from typing import Any

from agentkit.logging import get_logger
from agentkit.session.approval import ApprovalMatcher, PendingToolUse
from agentkit.session.debounce import DEFAULT_DELAY, Scheduler, StateChangeDebouncer
from agentkit.session.options import (
    SESSION_ONLY_OPTIONS,
    SessionOptions,
    create_default_options,
    effective_options,
    ensure_cwd_alias,
    merge_options,
    normalize_workspace_path,
    resolve_existing_workspace_cwd,
)
from agentkit.session.protocols import (
    AgentStreamClient,
    Attachment,
    CancellationToken,
    MessageAdded,
    MessagesUpdated,
    OutgoingMessage,
    ProtocolMessage,
    ResultMessage,
    SessionClient,
    SessionEvent,
    SessionStateChanged,
    SystemMessage,
    UserMessage,
    build_user_message_content,
    new_user_message,
    tool_result_message,
)
from agentkit.session.storage import parse_timestamp

log = get_logger("session")

# The CLI exits non-zero after reporting an error result; that failure is
# already in the transcript.
_EXIT_AFTER_RESULT = re.compile(r"\bexit(?:ed)? (?:with )?code 1\b", re.IGNORECASE)

_STDERR_LIMIT = 4000
_STDOUT_LIMIT = 2000


def _clean_id(session_id: str | None) -> str | None:
    if not isinstance(session_id, str):
        return None
    return session_id.strip() or None


def _truncate(value: Any, limit: int) -> str | None:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n...(truncated)"


def _describe_error(error: BaseException) -> str:
    """Error text plus any process output the SDK attached to it."""
    parts = [f"{type(error).__name__}: {error}"]
    stderr = _truncate(getattr(error, "stderr", None), _STDERR_LIMIT)
    if stderr:
        parts.append(f"stderr:\n{stderr}")
    stdout = _truncate(getattr(error, "stdout", None), _STDOUT_LIMIT)
    if stdout:
        parts.append(f"stdout:\n{stdout}")
    return "\n".join(parts)


def _is_exit_after_error_result(error: BaseException, last_result: ResultMessage | None) -> bool:
    if last_result is None or not last_result.is_error:
        return False
    return bool(_EXIT_AFTER_RESULT.search(str(error)))


def _find_workspace_path(messages: Sequence[ProtocolMessage]) -> str | None:
    """Working directory recorded by the first message that carries one."""
    for message in messages:
        if message.cwd:
            return message.cwd
    return None


async def _single_turn(message: UserMessage) -> AsyncIterator[UserMessage]:
    yield message


class Session:
    """One conversation's state and its serialized agent turns.

    Busy and loading are independent flags: ``busy`` while a turn is in
    flight, ``loading`` while a transcript is being fetched. Both changes,
    together with option changes, reach clients as debounced
    ``session_state_changed`` deltas. Transcript changes are broadcast
    immediately and in order.

    Errors from turns and loads are recorded on ``error`` and never raised
    to callers, except ``ValueError`` for an invalid tool-use id.
    """

    def __init__(
        self,
        agent_client: AgentStreamClient,
        *,
        session_id: str | None = None,
        options: SessionOptions | None = None,
        approval_matcher: ApprovalMatcher | None = None,
        debounce_delay: float = DEFAULT_DELAY,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._agent_client = agent_client
        self._session_id = _clean_id(session_id)
        self._options: SessionOptions = dict(options) if options else create_default_options()
        self._approval = approval_matcher or ApprovalMatcher()

        self._messages: list[ProtocolMessage] = []
        self._busy = False
        self._loading = False
        self._is_loaded = False
        self._clients: weakref.WeakSet[SessionClient] = weakref.WeakSet()

        self._turn_lock = asyncio.Lock()
        self._cancel_token: CancellationToken | None = None
        self._last_result: ResultMessage | None = None
        self._loading_task: asyncio.Task[None] | None = None
        self._loading_target: str | None = None

        self._debouncer = StateChangeDebouncer(
            debounce_delay, self._emit_state_change, scheduler=scheduler
        )

        self.last_modified_time: float = time.time()
        self.summary: str | None = None
        self.error: BaseException | None = None

    # --- Properties ---

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def messages(self) -> list[ProtocolMessage]:
        """Copy of the transcript."""
        return list(self._messages)

    @property
    def options(self) -> SessionOptions:
        """Stored options, including explicitly cleared (None) entries."""
        return dict(self._options)

    @property
    def effective_options(self) -> SessionOptions:
        return effective_options(self._options)

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def is_loaded(self) -> bool:
        return self._is_loaded

    @property
    def clients(self) -> list[SessionClient]:
        return list(self._clients)

    @property
    def pending_tool_use(self) -> PendingToolUse | None:
        """The interactive tool invocation awaiting a user decision, if any."""
        return self._approval.find_pending(self._messages)

    def state_snapshot(self) -> dict[str, Any]:
        return {
            "is_busy": self._busy,
            "is_loading": self._loading,
            "options": self.effective_options,
        }

    # --- Turns ---

    async def send(self, prompt: str, attachments: list[Attachment] | None = None) -> None:
        """Run a user turn, waiting for any in-flight turn first.

        Text that answers a pending plan approval or question is submitted
        as the corresponding tool result instead of a chat turn.
        """
        async with self._turn_lock:
            if not attachments:
                response = self._approval.resolve(prompt, self._messages)
                if response is not None:
                    log.info(
                        "Routing chat to tool result %s for session %s",
                        response.tool_use_id,
                        self._session_id,
                    )
                    await self._run_turn(
                        tool_result_message(
                            response.tool_use_id, response.content, response.is_error
                        )
                    )
                    return

            content = build_user_message_content(prompt, attachments)
            await self._run_turn(new_user_message(content), summary=prompt.strip())

    async def send_tool_result(self, tool_use_id: str, content: str, is_error: bool = False) -> None:
        """Answer a tool invocation and run the resulting turn.

        Raises:
            ValueError: ``tool_use_id`` is empty.
        """
        trimmed = tool_use_id.strip() if isinstance(tool_use_id, str) else ""
        if not trimmed:
            raise ValueError("tool_use_id is required")

        async with self._turn_lock:
            await self._run_turn(tool_result_message(trimmed, content, is_error))

    async def _run_turn(self, message: UserMessage, summary: str | None = None) -> None:
        """Append ``message`` and pump the agent's response. Caller holds the turn lock."""
        token = CancellationToken()
        self._cancel_token = token

        self._add_message(message)
        if not self.summary and summary:
            self.summary = summary

        self.last_modified_time = time.time()
        self._set_busy(True)
        self._last_result = None

        try:
            options = self._turn_options()
            stream = self._agent_client.query_stream(
                _single_turn(message), options, cancel_token=token
            )
            async for incoming in stream:
                self.process_incoming_message(incoming)
        except Exception as e:
            if _is_exit_after_error_result(e, self._last_result):
                log.debug("Ignoring exit after error result in session %s: %s", self._session_id, e)
            else:
                log.error("Turn failed in session %s: %s", self._session_id, _describe_error(e))
                self.error = e
        finally:
            if self._cancel_token is token:
                self._cancel_token = None
            self._set_busy(False)
            self.last_modified_time = time.time()

    def _turn_options(self) -> SessionOptions:
        options = self.effective_options
        for key in SESSION_ONLY_OPTIONS:
            options.pop(key, None)

        if not self._session_id:
            return options

        options["resume"] = self._session_id

        # Transcripts are stored per working directory, so resuming must use
        # the directory the transcript was recorded in.
        transcript_cwd = normalize_workspace_path(_find_workspace_path(self._messages))
        if transcript_cwd:
            resolved = resolve_existing_workspace_cwd(transcript_cwd)
            if resolved != transcript_cwd:
                ensure_cwd_alias(transcript_cwd, resolved)
            if os.path.isdir(transcript_cwd):
                options["cwd"] = transcript_cwd
                if self._options.get("cwd") != transcript_cwd:
                    self._options["cwd"] = transcript_cwd
        return options

    def process_incoming_message(self, message: ProtocolMessage) -> None:
        """Apply one message from the agent stream."""
        if message.session_id:
            self._update_session_id(message.session_id)

        if isinstance(message, ResultMessage):
            self._last_result = message

        self._add_message(message)
        self.last_modified_time = parse_timestamp(message.timestamp) or time.time()

        match message:
            case SystemMessage(subtype="init"):
                self._set_busy(True)
            case ResultMessage():
                self._set_busy(False)

    def interrupt(self) -> None:
        """Cancel the in-flight turn; busy drops without waiting for the stream."""
        if self._cancel_token is not None:
            self._cancel_token.cancel()
        self._set_busy(False)

    # --- Transcript loading ---

    async def resume_from(self, session_id: str) -> None:
        """Attach to a persisted transcript; no-op if it is already loaded."""
        target = session_id.strip() if isinstance(session_id, str) else ""
        if not target:
            return
        if self._session_id == target and self._is_loaded:
            log.debug("Session %s already loaded", target)
            return
        await self.load_from_server(target)

    async def load_from_server(self, session_id: str | None = None) -> None:
        """Fetch the transcript; concurrent callers for the same id share one load.

        A load for a different id waits for the current one to finish and
        then runs its own.
        """
        target = session_id or self._session_id
        if not target:
            return

        while self._loading_task is not None and self._loading_target != target:
            log.debug("Waiting for load of %s before loading %s", self._loading_target, target)
            await asyncio.shield(self._loading_task)

        if self._loading_task is None:
            if target != self._session_id:
                # Previous transcript belongs to the old id
                self._is_loaded = False
                self._messages = []
            self._update_session_id(target)
            self._loading_target = target
            self._set_loading(True)
            self.error = None
            self._loading_task = asyncio.create_task(self._load(target))

        await asyncio.shield(self._loading_task)

    async def _load(self, session_id: str) -> None:
        try:
            messages = await self._agent_client.load_messages(session_id)
            if not messages:
                # Not persisted yet; keep subscribers' view as is
                log.debug("No persisted transcript for %s yet", session_id)
                self._messages = []
                self.summary = None
                self.last_modified_time = time.time()
                if not self._turn_lock.locked():
                    self._set_busy(False)
                return

            self.summary = None
            self._set_messages(messages)
            if not self._turn_lock.locked():
                self._set_busy(False)
            self._is_loaded = True
            log.info("Loaded %d messages for session %s", len(messages), session_id)
        except Exception as e:
            log.error("Failed to load session %s: %s", session_id, e)
            self.error = e
        finally:
            self._set_loading(False)
            self._loading_task = None
            self._loading_target = None

    def _set_messages(self, messages: Sequence[ProtocolMessage]) -> None:
        self._messages = list(messages)

        if not self._options.get("cwd"):
            detected = _find_workspace_path(self._messages)
            if detected:
                self.set_sdk_options({"cwd": detected})

        timestamps = (parse_timestamp(m.timestamp) for m in self._messages)
        self.last_modified_time = max((t for t in timestamps if t), default=time.time())

        self._broadcast(
            SessionEvent.MESSAGES_UPDATED,
            MessagesUpdated(self._session_id, list(self._messages)),
        )

    # --- Options ---

    def set_sdk_options(self, options: SessionOptions) -> None:
        """Merge a partial option set; None values clear a field."""
        self._options = merge_options(self._options, options)
        self._debouncer.push({"options": self.effective_options})

    # --- Clients ---

    def subscribe(self, client: SessionClient) -> None:
        """Attach a client and catch it up with state and transcript."""
        if client in self._clients:
            return
        self._clients.add(client)
        client.session_id = self._session_id
        log.debug(
            "Client subscribed to %s (messages=%d, loaded=%s)",
            self._session_id or "uninitialized",
            len(self._messages),
            self._is_loaded,
        )

        client.receive_session_message(
            SessionEvent.SESSION_STATE_CHANGED.value,
            SessionStateChanged(self._session_id, self.state_snapshot()),
        )
        if self._is_loaded or self._messages:
            client.receive_session_message(
                SessionEvent.MESSAGES_UPDATED.value,
                MessagesUpdated(self._session_id, list(self._messages)),
            )

    def unsubscribe(self, client: SessionClient) -> None:
        self._clients.discard(client)

    def has_client(self, client: SessionClient) -> bool:
        return client in self._clients

    def flush_state(self) -> None:
        """Deliver any debounced state change now."""
        self._debouncer.flush()

    # --- Internals ---

    def _add_message(self, message: ProtocolMessage) -> None:
        self._messages.append(message)
        self._broadcast(SessionEvent.MESSAGE_ADDED, MessageAdded(self._session_id, message))

    def _update_session_id(self, session_id: str) -> None:
        if self._session_id == session_id:
            return
        log.debug("Session id %s -> %s", self._session_id, session_id)
        self._session_id = session_id
        for client in list(self._clients):
            client.session_id = session_id

    def _set_busy(self, busy: bool) -> None:
        if self._busy == busy:
            return
        self._busy = busy
        self._debouncer.push({"is_busy": busy})

    def _set_loading(self, loading: bool) -> None:
        if self._loading == loading:
            return
        self._loading = loading
        self._debouncer.push({"is_loading": loading})

    def _emit_state_change(self, update: dict[str, Any]) -> None:
        self._broadcast(
            SessionEvent.SESSION_STATE_CHANGED,
            SessionStateChanged(self._session_id, update),
        )

    def _broadcast(self, event: SessionEvent, message: OutgoingMessage) -> None:
        for client in list(self._clients):
            try:
                client.receive_session_message(event.value, message)
            except Exception:
                log.exception("Client failed to receive %s", event.value)


class SessionManager:
    """Registry of Sessions and of the client -> Session binding.

    Every client-driven operation resolves the client's Session through
    ``get_or_create_session`` and re-establishes the binding afterwards.
    """

    def __init__(
        self,
        agent_client: AgentStreamClient,
        *,
        approval_matcher: ApprovalMatcher | None = None,
        debounce_delay: float = DEFAULT_DELAY,
        scheduler: Scheduler | None = None,
    ) -> None:
        """Initialize the session manager.

        Args:
            agent_client: Agent stream client shared by all sessions
            approval_matcher: Chat-to-tool-result matcher for new sessions
            debounce_delay: Seconds to coalesce state-change events
            scheduler: Timer source for the debouncers (tests use a fake)
        """
        self._agent_client = agent_client
        self._approval = approval_matcher or ApprovalMatcher()
        self._debounce_delay = debounce_delay
        self._scheduler = scheduler

        self._sessions: list[Session] = []
        self._client_sessions: weakref.WeakKeyDictionary[SessionClient, Session] = (
            weakref.WeakKeyDictionary()
        )
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions)

    @property
    def sessions_by_last_modified(self) -> list[Session]:
        """Sessions, most recently active first."""
        return sorted(self._sessions, key=lambda s: s.last_modified_time, reverse=True)

    def get_session(self, session_id: str, load_messages: bool = False) -> Session | None:
        """Look up a session by its agent session id."""
        existing = next((s for s in self._sessions if s.session_id == session_id), None)
        if existing is not None and load_messages:
            self._spawn(existing.resume_from(session_id), f"resume-{session_id}")
        return existing

    def create_session(self, session_id: str | None = None) -> Session:
        session = Session(
            self._agent_client,
            session_id=session_id,
            approval_matcher=self._approval,
            debounce_delay=self._debounce_delay,
            scheduler=self._scheduler,
        )
        self._sessions.append(session)
        return session

    def bound_session(self, client: SessionClient) -> Session | None:
        """The Session a client is currently bound to, if any."""
        return self._client_sessions.get(client)

    def get_or_create_session(self, client: SessionClient) -> Session:
        """Resolve the Session for a client, creating one if needed.

        Order: the session matching ``client.session_id``, the session last
        bound to the client, any session listing the client as subscriber,
        else a new session. A new session adopts a remembered client id and
        resumes its transcript in the background.
        """
        session = self.get_session(client.session_id) if client.session_id else None

        if session is None:
            session = self._client_sessions.get(client)

        if session is None:
            session = next((s for s in self._sessions if s.has_client(client)), None)

        if session is None:
            remembered = _clean_id(client.session_id)
            session = self.create_session(session_id=remembered)
            if remembered:
                log.info("Reattaching client to session %s", remembered)
                self._spawn(session.resume_from(remembered), f"resume-{remembered}")
            client.session_id = session.session_id

        self._client_sessions[client] = session
        return session

    def subscribe(self, client: SessionClient) -> Session:
        session = self.get_or_create_session(client)
        self._bind(client, session)
        return session

    def unsubscribe(self, client: SessionClient) -> None:
        """Detach a client from every Session and drop its binding."""
        for session in self._sessions:
            session.unsubscribe(client)
        self._client_sessions.pop(client, None)

    def _bind(self, client: SessionClient, session: Session, subscribe: bool = True) -> None:
        """Bind a client to ``session``; it stays subscribed to no other."""
        for other in self._sessions:
            if other is not session and other.has_client(client):
                other.unsubscribe(client)
                log.debug("Client left session %s for %s", other.session_id, session.session_id)
        if subscribe:
            session.subscribe(client)
        self._client_sessions[client] = session

    def send_message(
        self,
        client: SessionClient,
        prompt: str,
        attachments: list[Attachment] | None = None,
    ) -> asyncio.Task[None]:
        """Start a chat turn on the client's Session in the background."""
        session = self.get_or_create_session(client)
        self._bind(client, session)
        return self._spawn(session.send(prompt, attachments), "send")

    def send_tool_result(
        self,
        client: SessionClient,
        tool_use_id: str,
        content: str,
        is_error: bool = False,
    ) -> asyncio.Task[None]:
        """Start a tool-result turn on the client's Session in the background.

        Raises:
            ValueError: ``tool_use_id`` is empty.
        """
        if not isinstance(tool_use_id, str) or not tool_use_id.strip():
            raise ValueError("tool_use_id is required")

        session = self.get_or_create_session(client)
        self._bind(client, session)
        return self._spawn(session.send_tool_result(tool_use_id, content, is_error), "tool-result")

    def set_sdk_options(self, client: SessionClient, options: SessionOptions) -> None:
        session = self.get_or_create_session(client)
        session.set_sdk_options(options)
        self._bind(client, session, subscribe=False)

    def interrupt(self, client: SessionClient) -> None:
        session = self.get_or_create_session(client)
        session.interrupt()
        self._bind(client, session, subscribe=False)

    async def close(self) -> None:
        """Interrupt all turns and wait for background tasks to finish."""
        for session in self._sessions:
            session.interrupt()
            session.flush_state()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)
