"""Pending tool-approval detection.

Decides, purely from transcript contents, whether the latest interactive
tool invocation (plan exit or multi-choice question) still awaits a user
decision, and turns typed chat into the matching tool result.

A tool result with ``is_error`` is ambiguous. The tool layer also reports
"no non-interactive fallback yet" with an error result whose text is one of
a few placeholder phrases; those keep the invocation pending. Any other
error result is an explicit decline and closes it.

The placeholder phrases mirror the wording of the external tool layer. If
that wording changes, detection fails open (placeholders read as declines),
so keep ``DEFAULT_PLACEHOLDER_PHRASES`` in step with the agent CLI.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from agentkit.session.protocols import (
    ProtocolMessage,
    ToolResultBlock,
    tool_result_blocks,
    tool_use_blocks,
)

if TYPE_CHECKING:
    from agentkit.config.schema import ApprovalConfig

PLAN_EXIT_TOOL = "ExitPlanMode"
ASK_QUESTION_TOOL = "AskUserQuestion"
INTERACTIVE_TOOLS = frozenset({PLAN_EXIT_TOOL, ASK_QUESTION_TOOL})

DEFAULT_PLACEHOLDER_PHRASES: tuple[str, ...] = ("Answer questions?", "Exit plan mode?")
DEFAULT_APPROVE_PHRASES: tuple[str, ...] = ("execute", "run", "执行", "运行")
DEFAULT_REJECT_PHRASES: tuple[str, ...] = ("reject", "拒绝")

PLAN_APPROVED_TEXT = "User approved the plan"
PLAN_REJECTED_TEXT = "User rejected the plan"


@dataclass(frozen=True, slots=True)
class PendingToolUse:
    """An interactive tool invocation awaiting a user decision."""

    tool_use_id: str
    name: str
    index: int  # Position of the invoking message in the transcript


@dataclass(frozen=True, slots=True)
class ToolResponse:
    """A tool result to submit in place of a free-text turn."""

    tool_use_id: str
    content: str
    is_error: bool


def is_placeholder_result(
    block: ToolResultBlock,
    placeholder_phrases: Iterable[str] = DEFAULT_PLACEHOLDER_PHRASES,
) -> bool:
    """True if an error result is a non-decision placeholder."""
    if not block.is_error:
        return False
    text = block.text.strip()
    return any(phrase in text for phrase in placeholder_phrases)


def find_pending_tool_use(
    messages: Sequence[ProtocolMessage],
    *,
    tool_names: Iterable[str] = INTERACTIVE_TOOLS,
    placeholder_phrases: Iterable[str] = DEFAULT_PLACEHOLDER_PHRASES,
) -> PendingToolUse | None:
    """Find the most recent interactive tool invocation still awaiting a decision.

    Only the latest interactive invocation is considered; if it has been
    answered, nothing is pending even if an older one never was.
    """
    names = frozenset(tool_names)
    phrases = tuple(placeholder_phrases)

    for index in range(len(messages) - 1, -1, -1):
        tool_use = next(
            (block for block in tool_use_blocks(messages[index]) if block.name in names),
            None,
        )
        if tool_use is None:
            continue

        for later in messages[index + 1 :]:
            for result in tool_result_blocks(later):
                if result.tool_use_id != tool_use.id:
                    continue
                if is_placeholder_result(result, phrases):
                    # Placeholder: keep looking for a genuine answer
                    break
                return None

        return PendingToolUse(tool_use_id=tool_use.id, name=tool_use.name, index=index)

    return None


def _normalize(text: str) -> str:
    return text.strip().casefold()


@dataclass
class ApprovalMatcher:
    """Maps typed chat onto pending interactive tool invocations.

    Phrase sets are injectable; comparison is on trimmed, case-folded text.
    """

    approve_phrases: Sequence[str] = DEFAULT_APPROVE_PHRASES
    reject_phrases: Sequence[str] = DEFAULT_REJECT_PHRASES
    placeholder_phrases: Sequence[str] = DEFAULT_PLACEHOLDER_PHRASES
    _approve: frozenset[str] = field(init=False, repr=False)
    _reject: frozenset[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._approve = frozenset(_normalize(p) for p in self.approve_phrases)
        self._reject = frozenset(_normalize(p) for p in self.reject_phrases)

    @classmethod
    def from_config(cls, config: ApprovalConfig) -> ApprovalMatcher:
        """Matcher from ``session.approval``; unset lists keep the defaults."""
        return cls(
            approve_phrases=tuple(config.approve_phrases or DEFAULT_APPROVE_PHRASES),
            reject_phrases=tuple(config.reject_phrases or DEFAULT_REJECT_PHRASES),
            placeholder_phrases=tuple(config.placeholder_phrases or DEFAULT_PLACEHOLDER_PHRASES),
        )

    def is_approval(self, text: str) -> bool:
        return _normalize(text) in self._approve

    def is_rejection(self, text: str) -> bool:
        return _normalize(text) in self._reject

    def find_pending(self, messages: Sequence[ProtocolMessage]) -> PendingToolUse | None:
        return find_pending_tool_use(messages, placeholder_phrases=self.placeholder_phrases)

    def resolve(self, prompt: str, messages: Sequence[ProtocolMessage]) -> ToolResponse | None:
        """Turn ``prompt`` into a tool result if it answers a pending invocation.

        Returns None when the prompt should go through as ordinary chat.
        """
        text = prompt.strip()
        if not text:
            return None

        pending = self.find_pending(messages)
        if pending is None:
            return None

        if pending.name == PLAN_EXIT_TOOL:
            if self.is_approval(text):
                return ToolResponse(pending.tool_use_id, PLAN_APPROVED_TEXT, False)
            if self.is_rejection(text):
                return ToolResponse(pending.tool_use_id, PLAN_REJECTED_TEXT, True)
            return None

        if pending.name == ASK_QUESTION_TOOL:
            return ToolResponse(pending.tool_use_id, text, False)

        return None
