"""Shopify Dispatch utility modules."""

from shopify_dispatch.utils.validation import sanitize_log_message, validate_shop_name

__all__ = [
    "sanitize_log_message",
    "validate_shop_name",
]
