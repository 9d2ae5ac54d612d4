"""Shopify Dispatch Error Hierarchy.

Structured exception types for the client and its rate-limiting core.
"""

from __future__ import annotations


class ShopifyDispatchError(Exception):
    """Base error for all shopify-dispatch exceptions."""

    code = "SHOPIFY_DISPATCH_ERROR"

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# Admission Errors
class DispatchError(ShopifyDispatchError):
    """Base error for admission and pacing failures."""

    code = "DISPATCH_ERROR"


class QueueFullError(DispatchError):
    """Submission rejected because the admission queue is at capacity."""

    code = "QUEUE_FULL"

    def __init__(self, message: str = "Queue is full", name: str = "", queue_size: int = 0):
        super().__init__(message, {"name": name, "queue_size": queue_size})
        self.name = name
        self.queue_size = queue_size


class DispatcherClosedError(DispatchError):
    """Dispatcher was closed before the call could start."""

    code = "DISPATCHER_CLOSED"

    def __init__(self, message: str = "Dispatcher is closed", details: dict = None):
        super().__init__(message, details)


class BucketUnavailableError(DispatchError):
    """Token bucket was closed while a request was pending."""

    code = "BUCKET_UNAVAILABLE"

    def __init__(self, message: str = "Token bucket is closed", name: str = ""):
        super().__init__(message, {"name": name})
        self.name = name


# Client Errors
class InvalidOptionsError(ShopifyDispatchError):
    """Client options are missing or contradictory."""

    code = "INVALID_OPTIONS"


class APIError(ShopifyDispatchError):
    """Shop API call failed."""

    code = "API_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = None,
        url: str = None,
        body: object = None,
    ):
        super().__init__(message, {"status_code": status_code, "url": url})
        self.status_code = status_code
        self.url = url
        self.body = body
