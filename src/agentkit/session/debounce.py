"""Coalescing of session state-change notifications.

A burst of state updates (busy, loading, options) inside the delay window is
merged into one delta and delivered once. The timer is armed by the first
pending change and is not extended by later ones, so a steady stream of
updates still flushes at least once per window.

Timers go through a ``Scheduler`` so tests can drive them with a fake clock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Protocol

from agentkit.logging import get_logger

log = get_logger("debounce")

DEFAULT_DELAY = 0.05


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Deferred callback source."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Schedules on the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class StateChangeDebouncer:
    """Accumulates partial state updates and flushes them after a delay.

    Args:
        delay: Seconds between the first pending change and the flush.
        on_flush: Receives the merged delta.
        scheduler: Timer source; defaults to the running event loop.
    """

    def __init__(
        self,
        delay: float,
        on_flush: Callable[[dict[str, Any]], None],
        scheduler: Scheduler | None = None,
    ) -> None:
        self._delay = max(0.0, delay)
        self._on_flush = on_flush
        self._scheduler = scheduler or LoopScheduler()
        self._pending: dict[str, Any] = {}
        self._handle: TimerHandle | None = None

    @property
    def pending(self) -> dict[str, Any]:
        return dict(self._pending)

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def push(self, update: dict[str, Any]) -> None:
        """Merge ``update`` into the pending delta, arming the timer if idle."""
        if not update:
            return
        self._pending.update(update)
        if self._handle is not None:
            return
        try:
            self._handle = self._scheduler.call_later(self._delay, self._on_timer)
        except RuntimeError:
            # No running loop (sync caller outside asyncio): deliver now
            self.flush()

    def flush(self) -> None:
        """Deliver the pending delta immediately and disarm the timer."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if not self._pending:
            return
        update, self._pending = self._pending, {}
        self._on_flush(update)

    def cancel(self) -> None:
        """Drop pending changes without delivering them."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = {}

    def _on_timer(self) -> None:
        self._handle = None
        try:
            self.flush()
        except Exception:
            log.exception("State change flush failed")
