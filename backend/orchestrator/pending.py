"""
Pending start tasks waiting for the restricted context to become ready.

Responsibilities:
- Hold start tasks in arrival order
- Replay them exactly once when readiness is observed
- Fail them all if readiness does not arrive in time

Non-responsibilities:
- NO session state (the coordinator resolves callers via its reducer)
- NO knowledge of how a task is executed

Invariant: a task leaves the queue exactly once, either through drain()
or through drop_all().
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

from observability.logger import log_event


@dataclass(frozen=True)
class PendingTask:
    """A start request deferred until the context reports ready."""
    language: str
    request_id: int
    enqueued_at_ms: int


TaskExecutor = Callable[[PendingTask], Awaitable[None]]
TimeoutHandler = Callable[[tuple[PendingTask, ...]], Awaitable[None]]


class PendingTaskQueue:
    """
    FIFO of PendingTask with a readiness deadline.

    The deadline is armed by the first enqueue into an empty queue and
    disarmed by drain() or drop_all(). On expiry every queued task is
    dropped and handed to on_timeout.
    """

    def __init__(self, *, timeout_ms: int, on_timeout: TimeoutHandler) -> None:
        self._timeout_ms = timeout_ms
        self._on_timeout = on_timeout
        self._tasks: deque[PendingTask] = deque()
        self._timer: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._tasks)

    def enqueue(self, task: PendingTask) -> None:
        if not self._tasks:
            # Fresh batch, fresh deadline.
            self._disarm()
            self._timer = asyncio.create_task(self._deadline())
        self._tasks.append(task)

        log_event({
            "event_type": "START_TASK_QUEUED",
            "request_id": task.request_id,
            "language": task.language,
            "queue_depth": len(self._tasks),
        })

    async def drain(self, execute: TaskExecutor) -> int:
        """
        Replay queued tasks in FIFO order.

        Each task is removed before it runs, so a task that enqueues more
        work or raises can never be replayed twice. Returns the number of
        tasks replayed.
        """
        self._disarm()
        replayed = 0
        while self._tasks:
            task = self._tasks.popleft()
            replayed += 1
            await execute(task)

        if replayed:
            log_event({"event_type": "START_TASKS_REPLAYED", "count": replayed})
        return replayed

    def drop_all(self) -> tuple[PendingTask, ...]:
        """Remove every queued task without running it."""
        self._disarm()
        dropped = tuple(self._tasks)
        self._tasks.clear()

        if dropped:
            log_event({
                "event_type": "START_TASKS_DROPPED",
                "request_ids": [t.request_id for t in dropped],
            })
        return dropped

    def close(self) -> None:
        self._disarm()

    def _disarm(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    async def _deadline(self) -> None:
        try:
            await asyncio.sleep(self._timeout_ms / 1000.0)
        except asyncio.CancelledError:
            return

        self._timer = None
        dropped = self.drop_all()
        log_event({
            "event_type": "CONTEXT_READY_TIMEOUT",
            "timeout_ms": self._timeout_ms,
            "dropped": len(dropped),
        })
        if dropped:
            await self._on_timeout(dropped)
