"""Call quota tracking from server-reported usage headers.

The shop reports its leaky-bucket usage on every response as
``X-Shopify-Shop-Api-Call-Limit: <used>/<max>``. The tracker keeps the
latest reading and tells interested parties about it. It is observational
only and never throttles anything.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)

CALL_LIMIT_HEADER = "X-Shopify-Shop-Api-Call-Limit"

_CALL_LIMIT_RE = re.compile(r"^\s*(\d+)\s*/\s*(\d+)\s*$")


@dataclass(frozen=True)
class CallLimits:
    """Snapshot of the shop's call budget."""

    remaining: int | None = None
    current: int | None = None
    max: int | None = None

    @property
    def percent_used(self) -> float | None:
        """Percentage of the budget in use, if known."""
        if self.current is None or not self.max:
            return None
        return (self.current / self.max) * 100

    def to_dict(self) -> dict[str, int | None]:
        return asdict(self)


def parse_call_limit(value: str | None) -> tuple[int, int] | None:
    """Parse a ``"<used>/<max>"`` header value.

    Args:
        value: Raw header value

    Returns:
        (used, max) or None if the value is absent or malformed
    """
    if not value:
        return None
    match = _CALL_LIMIT_RE.match(value)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


class CallQuotaTracker:
    """Holds the latest call-limit reading for one client."""

    def __init__(self):
        self._limits = CallLimits()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[CallLimits], None]] = []

    @property
    def limits(self) -> CallLimits:
        """Latest reading (all fields None until the first valid header)."""
        with self._lock:
            return self._limits

    def register_callback(self, callback: Callable[[CallLimits], None]) -> None:
        """Register a callback for limit updates.

        Args:
            callback: Function called with the new CallLimits
        """
        self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[CallLimits], None]) -> None:
        """Unregister a previously registered callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def observe(self, value: str | None) -> CallLimits | None:
        """Record a header value.

        Absent or malformed values are ignored and the previous reading is
        kept.

        Args:
            value: Raw ``X-Shopify-Shop-Api-Call-Limit`` value

        Returns:
            The new reading, or None if nothing changed
        """
        parsed = parse_call_limit(value)
        if parsed is None:
            if value:
                logger.debug("Ignoring malformed call limit header: %r", value)
            return None

        used, maximum = parsed
        limits = CallLimits(remaining=maximum - used, current=used, max=maximum)
        with self._lock:
            self._limits = limits

        self._notify(limits)
        return limits

    def observe_headers(self, headers: Mapping[str, str] | None) -> CallLimits | None:
        """Record the call-limit header from a response header mapping."""
        if not headers:
            return None
        value = headers.get(CALL_LIMIT_HEADER)
        if value is None:
            value = headers.get(CALL_LIMIT_HEADER.lower())
        return self.observe(value)

    def reset(self) -> None:
        """Forget the current reading."""
        with self._lock:
            self._limits = CallLimits()

    def _notify(self, limits: CallLimits) -> None:
        for callback in list(self._callbacks):
            try:
                callback(limits)
            except Exception as e:
                logger.error(f"Call limit callback error: {e}")

    def get_usage(self) -> dict[str, Any]:
        """Get the latest reading as a dict."""
        limits = self.limits
        usage: dict[str, Any] = limits.to_dict()
        percent = limits.percent_used
        usage["percent_used"] = round(percent, 1) if percent is not None else None
        return usage
