"""Rate limiting module for shop API calls.

Provides:
- Token bucket pacing with a fair waiter queue
- A dispatcher with a bounded FIFO admission queue and timed slots
- Call quota tracking from server-reported usage headers
"""

from shopify_dispatch.errors import (
    BucketUnavailableError,
    DispatcherClosedError,
    QueueFullError,
)
from shopify_dispatch.ratelimit.bucket import BucketConfig, TokenBucket
from shopify_dispatch.ratelimit.dispatcher import (
    DEFAULT_QUEUE_SIZE,
    DispatcherConfig,
    RateLimitedDispatcher,
)
from shopify_dispatch.ratelimit.quota import (
    CALL_LIMIT_HEADER,
    CallLimits,
    CallQuotaTracker,
    parse_call_limit,
)

__all__ = [
    "TokenBucket",
    "BucketConfig",
    "BucketUnavailableError",
    "RateLimitedDispatcher",
    "DispatcherConfig",
    "DispatcherClosedError",
    "QueueFullError",
    "DEFAULT_QUEUE_SIZE",
    "CallQuotaTracker",
    "CallLimits",
    "CALL_LIMIT_HEADER",
    "parse_call_limit",
]
