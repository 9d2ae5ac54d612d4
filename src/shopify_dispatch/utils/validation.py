"""Helpers for keeping credentials out of logs and validating shop names."""

from __future__ import annotations

import re

from shopify_dispatch.errors import InvalidOptionsError

# Shop subdomains: lowercase letters, digits and hyphens
SHOP_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$", re.IGNORECASE)

MAX_SHOP_NAME_LENGTH = 60

# Default sensitive patterns
_DEFAULT_PATTERNS = [
    (r"shpat_[a-fA-F0-9]{20,}", "[REDACTED_ACCESS_TOKEN]"),  # Admin API access tokens
    (r"shpca_[a-fA-F0-9]{20,}", "[REDACTED_ACCESS_TOKEN]"),  # Custom app tokens
    (r"shppa_[a-fA-F0-9]{20,}", "[REDACTED_PASSWORD]"),  # Private app passwords
    (r"shpss_[a-fA-F0-9]{20,}", "[REDACTED_SECRET]"),  # Shared secrets
    (r"(https?://)[^:/@\s]+:[^@\s]+@", r"\1[REDACTED]@"),  # user:pass@host
    (r"x-shopify-access-token[\"']?\s*[:=]\s*[\"']?[^\"'\s,}]+", "access-token=[REDACTED]"),
    (r'password["\']?\s*[:=]\s*["\']?[^"\'\s]+', "password=[REDACTED]"),
    (r'token["\']?\s*[:=]\s*["\']?[^"\'\s]+', "token=[REDACTED]"),
]


def sanitize_log_message(message: str, sensitive_patterns: list[str] | None = None) -> str:
    """Sanitize a log message to remove sensitive data.

    Args:
        message: Message to sanitize
        sensitive_patterns: Additional patterns to redact

    Returns:
        Sanitized message with sensitive data redacted
    """
    result = message

    for pattern, replacement in _DEFAULT_PATTERNS:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)

    # Apply additional patterns
    if sensitive_patterns:
        for pattern in sensitive_patterns:
            result = re.sub(pattern, "[REDACTED]", result, flags=re.IGNORECASE)

    return result


def validate_shop_name(shop_name: str) -> str:
    """Validate a shop subdomain.

    Accepts either the bare name or the full ``<name>.myshopify.com`` host.

    Args:
        shop_name: Shop name to validate

    Returns:
        The bare shop name

    Raises:
        InvalidOptionsError: If the name is empty or not a valid subdomain
    """
    if not shop_name:
        raise InvalidOptionsError("Shop name cannot be empty")

    name = shop_name.strip()
    if name.lower().endswith(".myshopify.com"):
        name = name[: -len(".myshopify.com")]

    if len(name) > MAX_SHOP_NAME_LENGTH:
        raise InvalidOptionsError(
            f"Shop name exceeds maximum length of {MAX_SHOP_NAME_LENGTH}",
            {"shop_name": shop_name},
        )

    if not SHOP_NAME_PATTERN.match(name):
        raise InvalidOptionsError(
            f"Invalid shop name '{shop_name}': must contain only letters, digits and hyphens",
            {"shop_name": shop_name},
        )

    return name
