"""Token bucket permit source.

Tokens are refilled in fixed steps by a background timer, and waiters are
served strictly in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

from shopify_dispatch.errors import BucketUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class BucketConfig:
    """Configuration for a token bucket."""

    capacity: int = 40
    refill_amount: int = 2
    refill_interval_ms: int = 1000
    name: str = ""

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("capacity must be at least 1")
        if self.refill_amount < 1:
            raise ValueError("refill_amount must be at least 1")
        if self.refill_interval_ms < 1:
            raise ValueError("refill_interval_ms must be at least 1")


@dataclass
class _Waiter:
    count: int
    future: asyncio.Future
    enqueued_at: float


class TokenBucket:
    """Asynchronous token bucket with a fair waiter queue.

    The bucket starts full. Each refill tick adds ``refill_amount`` tokens
    (capped at ``capacity``) and then grants pending waiters from the head
    of the queue. A waiter that cannot be satisfied blocks everyone behind
    it, so a large request is never starved by a stream of small ones.

    The refill task only runs while the bucket is below capacity or has
    waiters; it parks itself otherwise and is restarted by the next grant.
    """

    def __init__(self, config: BucketConfig | None = None):
        """Initialize token bucket.

        Args:
            config: Bucket configuration (defaults to 40 tokens, +2/second)
        """
        self.config = config or BucketConfig()
        self._available = self.config.capacity
        self._waiters: deque[_Waiter] = deque()
        self._refill_task: asyncio.Task | None = None
        self._closed = False

        # Stats
        self._total_acquired = 0
        self._total_waited = 0.0

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def capacity(self) -> int:
        return self.config.capacity

    @property
    def available(self) -> int:
        """Tokens that can be granted right now."""
        return self._available

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.future.done())

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self, count: int = 1) -> int:
        """Take ``count`` tokens, waiting for refills if needed.

        Args:
            count: Number of tokens to take

        Returns:
            Tokens remaining after the grant

        Raises:
            ValueError: If count is not between 1 and capacity
            BucketUnavailableError: If the bucket is closed before the grant
        """
        if count < 1 or count > self.config.capacity:
            raise ValueError(f"count must be between 1 and {self.config.capacity}, got {count}")
        if self._closed:
            raise BucketUnavailableError(
                f"Token bucket '{self.name or 'bucket'}' is closed", name=self.name
            )

        while self._waiters and self._waiters[0].future.done():
            self._waiters.popleft()

        # Fast path only when nobody is queued ahead of us
        if not self._waiters and self._available >= count:
            self._take(count)
            return self._available

        loop = asyncio.get_running_loop()
        waiter = _Waiter(count=count, future=loop.create_future(), enqueued_at=time.monotonic())
        self._waiters.append(waiter)
        self._ensure_refill()
        logger.debug(
            "Waiting for %d token(s) from %s (%d queued)",
            count,
            self.name or "bucket",
            len(self._waiters),
        )
        return await waiter.future

    def _take(self, count: int) -> None:
        self._available -= count
        self._total_acquired += count
        self._ensure_refill()

    def _ensure_refill(self) -> None:
        """Start the refill timer unless it is already running."""
        if self._closed or self._refill_task is not None:
            return
        if self._available >= self.config.capacity and not self._waiters:
            return
        self._refill_task = asyncio.get_running_loop().create_task(self._refill_loop())

    async def _refill_loop(self) -> None:
        interval = self.config.refill_interval_ms / 1000
        try:
            while not self._closed:
                await asyncio.sleep(interval)
                self._available = min(
                    self.config.capacity,
                    self._available + self.config.refill_amount,
                )
                self._grant_waiters()
                if self._available >= self.config.capacity and not self._waiters:
                    break
        finally:
            self._refill_task = None

    def _grant_waiters(self) -> None:
        """Serve waiters from the head of the queue while tokens last."""
        while self._waiters:
            head = self._waiters[0]
            if head.future.done():
                # Cancelled by its caller, costs nothing
                self._waiters.popleft()
                continue
            if head.count > self._available:
                return
            self._waiters.popleft()
            self._available -= head.count
            self._total_acquired += head.count
            self._total_waited += time.monotonic() - head.enqueued_at
            head.future.set_result(self._available)

    def close(self) -> None:
        """Stop refilling and reject every pending waiter."""
        if self._closed:
            return
        self._closed = True

        if self._refill_task is not None:
            self._refill_task.cancel()
            self._refill_task = None

        rejected = 0
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.future.done():
                waiter.future.set_exception(
                    BucketUnavailableError(
                        f"Token bucket '{self.name or 'bucket'}' closed while waiting",
                        name=self.name,
                    )
                )
                rejected += 1

        if rejected:
            logger.info("Closed token bucket %s, rejected %d waiter(s)", self.name, rejected)

    async def __aenter__(self) -> TokenBucket:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def get_stats(self) -> dict[str, Any]:
        """Get bucket statistics."""
        return {
            "name": self.name,
            "type": "token_bucket",
            "capacity": self.config.capacity,
            "available_tokens": self._available,
            "refill_amount": self.config.refill_amount,
            "refill_interval_ms": self.config.refill_interval_ms,
            "waiting": self.waiting,
            "closed": self._closed,
            "total_acquired": self._total_acquired,
            "total_wait_seconds": round(self._total_waited, 3),
        }
