"""
Delayed Task Scheduler

Runs the processing step for a claimed message after a randomized delay,
outside the request that received the push notification.

Design Considerations:
- One pending timer per key; scheduling an already scheduled key is refused
- Timers live on the running event loop; a process restart drops them and
  the claimed record stays pending until an operator reprocesses it
- A timer only counts as stale once it is overdue by the stale threshold;
  a long delay that has not elapsed yet is never swept
- Once a step has started it is never cancelled by the sweep, and its key
  stays reserved until it finishes
- Clock and random source are injectable so tests never wait for real delays
"""

import asyncio
import functools
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[None]]


@dataclass
class ScheduledTask:
    """A processing step waiting for its delay to elapse."""
    key: str
    delay_seconds: float
    created_at: float
    scheduled_for: datetime
    factory: TaskFactory
    handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class ProcessingDelayPolicy:
    """
    Chooses how long to wait before processing a claimed message.

    By default a uniformly random delay between the configured bounds is
    used. When client delays are honored and the client configured a
    response delay (minutes), that delay plus the same jitter span is used.
    """

    def __init__(self, min_seconds: float = 45.0, max_seconds: float = 60.0,
                 honor_client_delay: bool = False, rng: Optional[random.Random] = None):
        if min_seconds < 0 or max_seconds < min_seconds:
            raise ValueError("Processing delay bounds must satisfy 0 <= min <= max")
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self.honor_client_delay = honor_client_delay
        self._rng = rng or random.Random()

    def delay_for(self, client_delay_minutes: int = 0) -> float:
        jitter = self._rng.uniform(0, self.max_seconds - self.min_seconds)
        if self.honor_client_delay and client_delay_minutes and client_delay_minutes > 0:
            return client_delay_minutes * 60 + jitter
        return self.min_seconds + jitter


class DelayedTaskScheduler:
    """Registry of delayed processing steps keyed by message id."""

    def __init__(self, stale_after_seconds: float = 300.0,
                 clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], datetime] = datetime.utcnow):
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._wall_clock = wall_clock
        self._pending: Dict[str, ScheduledTask] = {}
        self._running: Dict[str, asyncio.Task] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def running_count(self) -> int:
        return len(self._running)

    def is_scheduled(self, key: str) -> bool:
        return key in self._pending

    def is_running(self, key: str) -> bool:
        return key in self._running

    def schedule(self, key: str, delay_seconds: float, factory: TaskFactory) -> Optional[ScheduledTask]:
        """
        Run ``factory()`` after ``delay_seconds`` on the current event loop.

        Returns:
            The scheduled task, or None if the key already has a pending
            timer or a running step
        """
        if key in self._pending or key in self._running:
            logger.info(f"Processing for {key[:15]}... is already scheduled")
            return None

        loop = asyncio.get_running_loop()
        task = ScheduledTask(
            key=key,
            delay_seconds=delay_seconds,
            created_at=self._clock(),
            scheduled_for=self._wall_clock() + timedelta(seconds=delay_seconds),
            factory=factory,
        )
        task.handle = loop.call_later(delay_seconds, self._start, key)
        self._pending[key] = task
        return task

    def fire(self, key: str) -> Optional[asyncio.Task]:
        """Start a pending step immediately instead of waiting for its timer."""
        scheduled = self._pending.get(key)
        if scheduled is None:
            return None
        if scheduled.handle is not None:
            scheduled.handle.cancel()
        return self._start(key)

    def run_now(self, key: str, factory: TaskFactory) -> Optional[asyncio.Task]:
        """
        Start ``factory()`` immediately under ``key``, replacing any pending timer.

        Returns:
            The running task, or None if a step for the key is already running
        """
        if key in self._running:
            logger.info(f"Processing for {key[:15]}... is already running")
            return None
        self.cancel(key)
        return self._run(key, factory)

    def cancel(self, key: str) -> bool:
        """Cancel a step that has not started yet."""
        scheduled = self._pending.pop(key, None)
        if scheduled is None:
            return False
        if scheduled.handle is not None:
            scheduled.handle.cancel()
        return True

    def sweep(self) -> int:
        """
        Forget timers that are overdue by more than the stale threshold.

        Returns:
            Number of timers cancelled
        """
        now = self._clock()
        stale = [
            key for key, scheduled in self._pending.items()
            if now - (scheduled.created_at + scheduled.delay_seconds) > self.stale_after_seconds
        ]
        for key in stale:
            self.cancel(key)
            logger.warning(f"Cancelled stale processing timer for {key[:15]}...")
        return len(stale)

    def _start(self, key: str) -> Optional[asyncio.Task]:
        scheduled = self._pending.pop(key, None)
        if scheduled is None:
            return None
        return self._run(key, scheduled.factory)

    def _run(self, key: str, factory: TaskFactory) -> asyncio.Task:
        task = asyncio.ensure_future(factory())
        self._running[key] = task
        task.add_done_callback(functools.partial(self._on_done, key))
        return task

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        if self._running.get(key) is task:
            del self._running[key]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Scheduled processing step failed: {error!r}")

    async def shutdown(self, wait: bool = True) -> None:
        """Cancel pending timers and optionally wait for running steps."""
        for key in list(self._pending):
            self.cancel(key)
        if wait and self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)
