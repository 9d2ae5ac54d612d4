"""Configuration module for shopify-dispatch."""

from .logging import (
    JSONFormatter,
    SanitizingFilter,
    TextFormatter,
    configure_logging,
    configure_logging_from_settings,
)
from .settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "configure_logging_from_settings",
    "JSONFormatter",
    "SanitizingFilter",
    "TextFormatter",
]
