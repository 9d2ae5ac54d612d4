"""Shopify Dispatch - a rate-limited async client for the Shopify REST Admin API."""

__version__ = "1.0.0"

from .client import ClientOptions, ShopifyClient
from .config import (
    Settings,
    configure_logging,
    configure_logging_from_settings,
    get_settings,
)
from .errors import (
    APIError,
    BucketUnavailableError,
    DispatcherClosedError,
    InvalidOptionsError,
    QueueFullError,
    ShopifyDispatchError,
)
from .ratelimit import (
    BucketConfig,
    CallLimits,
    CallQuotaTracker,
    DispatcherConfig,
    RateLimitedDispatcher,
    TokenBucket,
)

__all__ = [
    "ShopifyClient",
    "ClientOptions",
    "Settings",
    "get_settings",
    "configure_logging",
    "configure_logging_from_settings",
    "TokenBucket",
    "BucketConfig",
    "RateLimitedDispatcher",
    "DispatcherConfig",
    "CallQuotaTracker",
    "CallLimits",
    "ShopifyDispatchError",
    "QueueFullError",
    "BucketUnavailableError",
    "DispatcherClosedError",
    "InvalidOptionsError",
    "APIError",
]
