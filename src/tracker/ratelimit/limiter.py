"""Fixed-window rate limiter shared by all callers of one external service.

Tokens start at capacity. Every period a timer resets the bucket to
min(capacity, tokens + capacity) -- a window reset, not an incremental
leak -- and hands the freshly available tokens to queued callers strictly in
arrival order. Callers are never dropped and never time out; they wait.

The counter is owned by the event loop: acquire() and refill() never await
while touching it, so no lock is needed.
"""

from __future__ import annotations

import asyncio
from collections import deque

from tracker.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Per-service fixed-window limiter with a FIFO wait queue.

    Usage:
        limiter = RateLimiter("polygon", capacity=10, period=1.0)
        await limiter.start()
        await limiter.acquire()   # suspends until a token is free
        ...
        await limiter.stop()

    A caller whose task is cancelled while queued gives up its place; the
    cancelled waiter is skipped at release time and consumes no token. A
    caller cancelled after being released hands its token on.

    Args:
        name: Service name, used in logs.
        capacity: Tokens granted per window (C).
        period: Window length in seconds (T).
    """

    def __init__(self, name: str, capacity: int, period: float) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if period <= 0:
            raise ValueError("period must be positive")
        self._name = name
        self._capacity = capacity
        self._period = period
        self._tokens = capacity
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    @property
    def name(self) -> str:
        return self._name

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def available_tokens(self) -> int:
        return self._tokens

    @property
    def pending_waiters(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the refill timer."""
        if self.running:
            logger.warning("rate_limiter_already_running", service=self._name)
            return
        self._task = asyncio.create_task(self._refill_loop())
        logger.info(
            "rate_limiter_started",
            service=self._name,
            capacity=self._capacity,
            period=self._period,
        )

    async def stop(self) -> None:
        """Stop the refill timer and cancel anyone still queued."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        abandoned = 0
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.cancel()
                abandoned += 1
        logger.info("rate_limiter_stopped", service=self._name, abandoned_waiters=abandoned)

    async def acquire(self) -> None:
        """Consume one token, waiting in line if none is available."""
        while self._waiters and self._waiters[0].done():
            self._waiters.popleft()
        if self._tokens > 0 and not self._waiters:
            self._tokens -= 1
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        logger.debug(
            "rate_limiter_waiting",
            service=self._name,
            queue_depth=len(self._waiters),
        )
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # released by refill() but cancelled before resuming
                self._release_one()
            raise

    def _release_one(self) -> None:
        """Pass one granted token to the next live waiter, or back to the bucket."""
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._tokens = min(self._capacity, self._tokens + 1)

    def refill(self) -> int:
        """Reset the window and release queued callers FIFO.

        Returns the number of waiters released. Called by the timer every
        period; exposed so the window can be driven deterministically.
        """
        new_tokens = min(self._capacity, self._tokens + self._capacity)
        released = 0
        while self._waiters and released < new_tokens:
            fut = self._waiters.popleft()
            if fut.done():
                # cancelled while waiting
                continue
            fut.set_result(None)
            released += 1
        self._tokens = new_tokens - released
        if released:
            logger.debug(
                "rate_limiter_released",
                service=self._name,
                released=released,
                still_waiting=len(self._waiters),
            )
        return released

    async def _refill_loop(self) -> None:
        while True:
            await asyncio.sleep(self._period)
            self.refill()
