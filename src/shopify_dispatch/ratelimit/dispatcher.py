"""Rate-limited call dispatcher.

Wraps arbitrary units of work and decides when each one may start. Starts
are paced by a token bucket, the number of occupied slots is capped, and
waiting calls sit in a bounded FIFO queue.

Example:
    dispatcher = RateLimitedDispatcher(DispatcherConfig(concurrency_limit=2))

    result = await dispatcher.submit(fetch_orders, shop_id)

    # Or as decorator:
    @dispatcher
    async def fetch_orders(shop_id):
        return await client.get(...)

A slot is freed ``interval_ms`` after its call *started*, not when the call
finishes. The dispatcher limits request rate per wall-clock interval, not
true concurrent occupancy.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial, wraps
from typing import Any, TypeVar

from shopify_dispatch.errors import DispatcherClosedError, QueueFullError
from shopify_dispatch.ratelimit.bucket import BucketConfig, TokenBucket

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_QUEUE_SIZE = 2**32 - 1


@dataclass
class DispatcherConfig:
    """Configuration for dispatcher behavior."""

    concurrency_limit: int = 2
    interval_ms: int = 1000  # Delay before a started call gives its slot back
    queue_size: int = DEFAULT_QUEUE_SIZE
    name: str = ""

    def __post_init__(self) -> None:
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        if self.interval_ms < 0:
            raise ValueError("interval_ms must not be negative")
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")


@dataclass(eq=False)
class _QueuedCall:
    work: Callable[..., Any]
    args: tuple
    kwargs: dict
    future: asyncio.Future = field(repr=False)


class RateLimitedDispatcher:
    """Admission queue in front of a token bucket.

    Every admitted call waits in FIFO order for a free slot and one token.
    Outcomes are forwarded to the caller untouched: the dispatcher never
    wraps, retries or swallows what the work returns or raises.
    """

    def __init__(
        self,
        config: DispatcherConfig | None = None,
        bucket: TokenBucket | None = None,
    ):
        """Initialize dispatcher.

        Args:
            config: Dispatcher configuration
            bucket: Token bucket to draw from. A private bucket is created
                when omitted; pass the same instance to several dispatchers
                to share one budget.
        """
        self.config = config or DispatcherConfig()
        self._owns_bucket = bucket is None
        self._bucket = bucket or TokenBucket(BucketConfig(name=self.config.name))

        self._queue: deque[_QueuedCall] = deque()
        self._in_flight = 0
        self._starting = 0  # Calls holding a slot while they wait for a token
        self._starters: set[asyncio.Task] = set()
        self._running: set[asyncio.Task] = set()
        self._retry_handle: asyncio.TimerHandle | None = None
        self._closed = False

        # Stats
        self._total_submitted = 0
        self._total_started = 0
        self._total_rejected = 0
        self._total_failed = 0

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def bucket(self) -> TokenBucket:
        return self._bucket

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, work: Callable[..., Any], *args: Any, **kwargs: Any) -> asyncio.Future:
        """Admit a call and return a future for its outcome.

        Must be called from inside the running event loop. Admission is
        decided immediately; the future settles once the work has run.

        Args:
            work: Coroutine function or plain callable
            *args: Positional arguments for ``work``
            **kwargs: Keyword arguments for ``work``

        Returns:
            Future resolving to the work's result or failing with its error

        Raises:
            QueueFullError: If the admission queue is at capacity
            DispatcherClosedError: If the dispatcher has been closed
        """
        if self._closed:
            raise DispatcherClosedError(f"Dispatcher '{self.name or 'dispatcher'}' is closed")

        if len(self._queue) >= self.config.queue_size:
            # Calls cancelled while queued do not count against capacity
            self._purge_cancelled()
        if len(self._queue) >= self.config.queue_size:
            self._total_rejected += 1
            logger.warning(
                "Queue full for %s (%d waiting), rejecting call",
                self.name or "dispatcher",
                len(self._queue),
                extra={"queued": len(self._queue), "in_flight": self._in_flight},
            )
            raise QueueFullError(
                f"Queue is full for '{self.name or 'dispatcher'}'",
                name=self.name,
                queue_size=self.config.queue_size,
            )

        future = asyncio.get_running_loop().create_future()
        call = _QueuedCall(work=work, args=args, kwargs=kwargs, future=future)
        self._queue.append(call)
        future.add_done_callback(partial(self._discard_if_cancelled, call))
        self._total_submitted += 1
        self._advance()
        return future

    async def call(self, work: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Submit a call and wait for its outcome."""
        return await self.submit(work, *args, **kwargs)

    def wrap(self, func: Callable[..., T]) -> Callable[..., Any]:
        """Return an async function whose invocations go through the dispatcher."""

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await self.submit(func, *args, **kwargs)

        return wrapper

    def __call__(self, func: Callable[..., T]) -> Callable[..., Any]:
        """Use dispatcher as decorator."""
        return self.wrap(func)

    def _advance(self) -> None:
        """Claim free slots for queued calls that nobody is starting yet."""
        if self._closed:
            return

        loop = asyncio.get_running_loop()
        while (
            len(self._queue) > self._starting
            and self._in_flight + self._starting < self.config.concurrency_limit
        ):
            self._starting += 1
            task = loop.create_task(self._start_next())
            self._starters.add(task)
            task.add_done_callback(self._starters.discard)

    async def _start_next(self) -> None:
        try:
            remaining = await self._bucket.acquire(1)
        except Exception as e:
            # The call stays queued; a later advance picks it up again
            logger.warning("Token acquisition failed for %s: %s", self.name or "dispatcher", e)
            self._schedule_retry()
            return
        finally:
            self._starting -= 1

        call = self._pop_live_call()
        if call is None:
            return

        self._in_flight += 1
        self._total_started += 1
        logger.debug(
            "Tokens left: %d",
            remaining,
            extra={
                "tokens_left": remaining,
                "queued": len(self._queue),
                "in_flight": self._in_flight,
            },
        )

        asyncio.get_running_loop().call_later(self.config.interval_ms / 1000, self._release_slot)
        self._invoke(call)

    def _pop_live_call(self) -> _QueuedCall | None:
        """Pop the oldest call whose caller is still waiting."""
        while self._queue:
            call = self._queue.popleft()
            if not call.future.done():
                return call
            logger.debug("Dropping call cancelled while queued")
        return None

    def _discard_if_cancelled(self, call: _QueuedCall, future: asyncio.Future) -> None:
        if future.cancelled() and call in self._queue:
            self._queue.remove(call)

    def _purge_cancelled(self) -> None:
        """Drop queued calls whose callers have already given up."""
        live = [call for call in self._queue if not call.future.done()]
        if len(live) != len(self._queue):
            self._queue.clear()
            self._queue.extend(live)

    def _invoke(self, call: _QueuedCall) -> None:
        try:
            result = call.work(*call.args, **call.kwargs)
        except Exception as e:
            self._total_failed += 1
            call.future.set_exception(e)
            return

        if not inspect.isawaitable(result):
            call.future.set_result(result)
            return

        task = asyncio.ensure_future(result)
        self._running.add(task)
        task.add_done_callback(partial(self._settle, call.future))
        call.future.add_done_callback(partial(self._cancel_if_abandoned, task))

    def _settle(self, future: asyncio.Future, task: asyncio.Task) -> None:
        self._running.discard(task)
        if future.done():
            # Caller gave up; mark the outcome as retrieved
            if not task.cancelled():
                task.exception()
            return
        if task.cancelled():
            future.cancel()
            return
        exc = task.exception()
        if exc is not None:
            self._total_failed += 1
            future.set_exception(exc)
        else:
            future.set_result(task.result())

    @staticmethod
    def _cancel_if_abandoned(task: asyncio.Task, future: asyncio.Future) -> None:
        # The slot stays occupied until its release timer fires
        if future.cancelled() and not task.done():
            task.cancel()

    def _release_slot(self) -> None:
        self._in_flight -= 1
        self._advance()

    def _schedule_retry(self) -> None:
        """Retry queued calls later when no slot release is going to."""
        if self._closed or self._retry_handle is not None:
            return
        if self._bucket.closed:
            logger.error(
                "Bucket for %s is closed; %d call(s) stay queued until the dispatcher closes",
                self.name or "dispatcher",
                len(self._queue),
            )
            return
        if self._in_flight > 0:
            return
        self._retry_handle = asyncio.get_running_loop().call_later(
            self.config.interval_ms / 1000, self._retry
        )

    def _retry(self) -> None:
        self._retry_handle = None
        self._advance()

    def close(self) -> None:
        """Reject queued calls and stop starting new ones.

        Calls that already started keep running and still settle their
        futures. The bucket is closed only if this dispatcher created it.
        """
        if self._closed:
            return
        self._closed = True

        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

        for task in list(self._starters):
            task.cancel()

        rejected = 0
        while self._queue:
            call = self._queue.popleft()
            if not call.future.done():
                call.future.set_exception(
                    DispatcherClosedError(
                        f"Dispatcher '{self.name or 'dispatcher'}' closed before the call started"
                    )
                )
                rejected += 1

        if self._owns_bucket:
            self._bucket.close()

        logger.info("Closed dispatcher %s (%d queued call(s) rejected)", self.name, rejected)

    async def __aenter__(self) -> RateLimitedDispatcher:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def get_stats(self) -> dict[str, Any]:
        """Get dispatcher statistics."""
        return {
            "name": self.name,
            "concurrency_limit": self.config.concurrency_limit,
            "interval_ms": self.config.interval_ms,
            "queue_size": self.config.queue_size,
            "queued": len(self._queue),
            "in_flight": self._in_flight,
            "starting": self._starting,
            "total_submitted": self._total_submitted,
            "total_started": self._total_started,
            "total_rejected": self._total_rejected,
            "total_failed": self._total_failed,
            "bucket": self._bucket.get_stats(),
        }
