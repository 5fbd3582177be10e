"""PendingOperation state machine and the clocks that drive polling."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from aks_reconciler.clients.base import OperationStatus, PollResult

TERMINAL_STATUSES: frozenset[OperationStatus] = frozenset({"succeeded", "failed", "canceled"})


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class LoopClock:
    """Wall-clock time from the running event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class VirtualClock:
    """Deterministic clock: sleeping advances time instantly.

    Lets tests exercise deadlines and backoff without waiting on wall-clock time.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += seconds
        # Yield so concurrently scheduled tasks interleave as they would on a real loop.
        await asyncio.sleep(0)


@dataclass
class PendingOperation:
    """An in-flight asynchronous remote operation awaiting a terminal status."""

    operation_id: str
    target: str
    poll_interval: float
    deadline: float
    status: OperationStatus = "running"
    expected_terminal: frozenset[OperationStatus] = TERMINAL_STATUSES
    polls: int = 0
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in self.expected_terminal

    def expired(self, now: float) -> bool:
        return not self.terminal and now >= self.deadline

    def record(self, result: PollResult) -> None:
        """Apply one poll result. A terminal operation never changes status again.

        Raises:
            ValueError: If the operation already reached a terminal status.
        """
        if self.terminal:
            msg = f"Operation {self.operation_id} is already {self.status}"
            raise ValueError(msg)
        self.polls += 1
        self.status = result.status
        if result.status == "succeeded":
            self.payload = dict(result.payload)
        elif result.status in ("failed", "canceled"):
            self.error = result.error
            self.error_code = result.error_code
