"""Shop API client.

Sends JSON requests to ``https://<shop>.myshopify.com``, keeps the latest
call-limit reading, and optionally routes every request through a
per-client rate-limited dispatcher.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from shopify_dispatch import __version__
from shopify_dispatch.config.logging import configure_logging_from_settings
from shopify_dispatch.config.settings import Settings, get_settings
from shopify_dispatch.errors import APIError, InvalidOptionsError
from shopify_dispatch.http.client import HTTPClientConfig, create_async_client
from shopify_dispatch.ratelimit.bucket import BucketConfig, TokenBucket
from shopify_dispatch.ratelimit.dispatcher import (
    DEFAULT_QUEUE_SIZE,
    DispatcherConfig,
    RateLimitedDispatcher,
)
from shopify_dispatch.ratelimit.quota import CallLimits, CallQuotaTracker
from shopify_dispatch.utils.validation import validate_shop_name

logger = logging.getLogger(__name__)

USER_AGENT = f"shopify-dispatch/{__version__}"
ACCESS_TOKEN_HEADER = "X-Shopify-Access-Token"

# autoLimit defaults: 2 calls per second
DEFAULT_AUTO_LIMIT = {"calls": 2, "interval": 1000}


@dataclass
class ClientOptions:
    """Options for a ShopifyClient.

    Private apps authenticate with ``api_key`` + ``password``; public apps
    with ``access_token``. Exactly one style must be given.

    ``auto_limit`` enables the dispatcher. Pass True for the defaults or a
    dict with any of ``calls``, ``interval`` (ms) and ``queue_size``.
    """

    shop_name: str | None = None
    api_key: str | None = None
    password: str | None = None
    access_token: str | None = None
    timeout: float = 60.0
    auto_limit: bool | dict[str, int] = False
    bucket_size: int = 38  # Headroom below the shop's 40-call bucket
    bucket_refill_amount: int = 2
    bucket_refill_interval_ms: int = 1000

    def validate(self) -> None:
        """Check that the options describe a usable client.

        Raises:
            InvalidOptionsError: If the shop name or credentials are missing,
                both credential styles are given, or the rate limit settings
                are out of range
        """
        if (
            not self.shop_name
            or (not self.access_token and not (self.api_key and self.password))
            or (self.access_token and (self.api_key or self.password))
        ):
            raise InvalidOptionsError(
                "Missing or invalid options",
                {
                    "shop_name": bool(self.shop_name),
                    "access_token": bool(self.access_token),
                    "api_key": bool(self.api_key),
                    "password": bool(self.password),
                },
            )
        validate_shop_name(self.shop_name)
        self._validate_limits()

    def _auto_limit_conf(self) -> dict[str, int]:
        conf = dict(DEFAULT_AUTO_LIMIT)
        if isinstance(self.auto_limit, dict):
            conf.update(self.auto_limit)
        return conf

    def _validate_limits(self) -> None:
        problems = []
        if self.auto_limit:
            conf = self._auto_limit_conf()
            if not _is_int_at_least(conf.get("calls"), 1):
                problems.append("auto_limit.calls must be an integer of at least 1")
            if not _is_int_at_least(conf.get("interval"), 0):
                problems.append("auto_limit.interval must be a non-negative integer")
            if conf.get("queue_size") is not None and not _is_int_at_least(conf["queue_size"], 1):
                problems.append("auto_limit.queue_size must be an integer of at least 1")
        if not _is_int_at_least(self.bucket_size, 1):
            problems.append("bucket_size must be an integer of at least 1")
        if not _is_int_at_least(self.bucket_refill_amount, 1):
            problems.append("bucket_refill_amount must be an integer of at least 1")
        if not _is_int_at_least(self.bucket_refill_interval_ms, 1):
            problems.append("bucket_refill_interval_ms must be an integer of at least 1")

        if problems:
            raise InvalidOptionsError("Missing or invalid options", {"problems": problems})

    def dispatcher_config(self) -> DispatcherConfig | None:
        """Dispatcher configuration, or None when auto limiting is off."""
        if not self.auto_limit:
            return None

        conf = self._auto_limit_conf()
        return DispatcherConfig(
            concurrency_limit=conf["calls"],
            interval_ms=conf["interval"],
            queue_size=conf.get("queue_size") or DEFAULT_QUEUE_SIZE,
            name=self.shop_name or "",
        )

    def bucket_config(self) -> BucketConfig:
        return BucketConfig(
            capacity=self.bucket_size,
            refill_amount=self.bucket_refill_amount,
            refill_interval_ms=self.bucket_refill_interval_ms,
            name=self.shop_name or "",
        )

    @classmethod
    def from_settings(cls, settings: Any) -> ClientOptions:
        """Build options from a Settings instance."""
        auto_limit: bool | dict[str, int] = False
        if settings.autolimit_enabled:
            auto_limit = {
                "calls": settings.autolimit_calls,
                "interval": settings.autolimit_interval_ms,
            }
            if settings.autolimit_queue_size:
                auto_limit["queue_size"] = settings.autolimit_queue_size

        return cls(
            shop_name=settings.shopify_shop_name,
            api_key=settings.shopify_api_key,
            password=settings.shopify_password,
            access_token=settings.shopify_access_token,
            timeout=settings.request_timeout,
            auto_limit=auto_limit,
            bucket_size=settings.bucket_size,
            bucket_refill_amount=settings.bucket_refill_amount,
            bucket_refill_interval_ms=settings.bucket_refill_interval_ms,
        )


class ShopifyClient:
    """Client for one shop.

    Each client owns its token bucket and dispatcher. Pass the same
    ``bucket`` to several clients to make them share one budget.
    """

    def __init__(
        self,
        options: ClientOptions,
        *,
        bucket: TokenBucket | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            options: Client options
            bucket: Token bucket to pace requests with (auto_limit only)
            http_client: httpx client to send requests through. One is
                created (and closed by ``close()``) when omitted.

        Raises:
            InvalidOptionsError: If the options are invalid
        """
        options.validate()
        self.options = options
        self.shop_name = validate_shop_name(options.shop_name)
        self.base_url = f"https://{self.shop_name}.myshopify.com"
        self.quota = CallQuotaTracker()

        self._dispatcher: RateLimitedDispatcher | None = None
        self._bucket: TokenBucket | None = None
        self._owns_bucket = False
        dispatcher_config = options.dispatcher_config()
        if dispatcher_config is not None:
            self._owns_bucket = bucket is None
            self._bucket = bucket or TokenBucket(options.bucket_config())
            self._dispatcher = RateLimitedDispatcher(dispatcher_config, bucket=self._bucket)

        self._owns_http = http_client is None
        self._http = http_client or create_async_client(HTTPClientConfig(timeout=options.timeout))
        self._auth = (
            None if options.access_token else httpx.BasicAuth(options.api_key, options.password)
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        configure_logs: bool = True,
        bucket: TokenBucket | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> ShopifyClient:
        """Build a client from application settings.

        Entry point for applications: applies the logging settings
        (``log_level``, ``log_format``, ``sanitize_logs``) and then builds
        the client from the shop, rate limit and bucket settings.

        Args:
            settings: Settings instance (defaults to ``get_settings()``)
            configure_logs: Set to False to leave logging configuration alone
            bucket: Token bucket to share with other clients
            http_client: httpx client to send requests through
        """
        settings = settings or get_settings()
        if configure_logs:
            configure_logging_from_settings(settings)
        return cls(ClientOptions.from_settings(settings), bucket=bucket, http_client=http_client)

    @property
    def call_limits(self) -> CallLimits:
        """Latest call-limit reading reported by the shop."""
        return self.quota.limits

    @property
    def dispatcher(self) -> RateLimitedDispatcher | None:
        return self._dispatcher

    def on_update_limits(self, callback: Callable[[CallLimits], None]) -> None:
        """Register a callback fired whenever a new call-limit reading arrives."""
        self.quota.register_callback(callback)

    async def request(
        self,
        method: str,
        path: str,
        key: str | None = None,
        params: Any = None,
        query: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request to a shop API endpoint.

        Args:
            method: HTTP method
            path: Path below the shop URL (e.g. ``/admin/orders.json``) or a full URL
            key: Name of the wrapper object in the request and response bodies
            params: Request body
            query: Query string parameters

        Returns:
            ``body[key]`` when a key is given, otherwise the whole body

        Raises:
            QueueFullError: If auto limiting is on and the queue is full
            APIError: If the request fails or the shop answers with an error
        """
        if self._dispatcher is not None:
            return await self._dispatcher.submit(self._send, method, path, key, params, query)
        return await self._send(method, path, key, params, query)

    async def get(self, path: str, key: str | None = None, query: dict | None = None) -> Any:
        return await self.request("GET", path, key=key, query=query)

    async def post(self, path: str, key: str | None = None, params: Any = None) -> Any:
        return await self.request("POST", path, key=key, params=params)

    async def put(self, path: str, key: str | None = None, params: Any = None) -> Any:
        return await self.request("PUT", path, key=key, params=params)

    async def delete(self, path: str, query: dict | None = None) -> Any:
        return await self.request("DELETE", path, query=query)

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _send(
        self,
        method: str,
        path: str,
        key: str | None,
        params: Any,
        query: dict[str, Any] | None,
    ) -> Any:
        url = self._url(path)
        headers = {"User-Agent": USER_AGENT}
        if self.options.access_token:
            headers[ACCESS_TOKEN_HEADER] = self.options.access_token

        kwargs: dict[str, Any] = {"headers": headers}
        if params is not None:
            kwargs["json"] = {key: params} if key else params
        if query:
            kwargs["params"] = query
        if self._auth is not None:
            kwargs["auth"] = self._auth

        start = time.monotonic()
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise APIError(f"{method} {path} failed: {e}", url=url) from e

        duration_ms = round((time.monotonic() - start) * 1000, 1)
        limits = self.quota.observe_headers(response.headers)
        logger.debug(
            "%s %s -> %d",
            method,
            path,
            response.status_code,
            extra={
                "shop": self.shop_name,
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "call_limit": limits.to_dict() if limits else None,
            },
        )

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise APIError(
                f"Response code {response.status_code} ({response.reason_phrase})",
                status_code=response.status_code,
                url=url,
                body=_decode_body(response),
            ) from e

        body = _decode_body(response)
        if key:
            return body.get(key) if isinstance(body, dict) else None
        return body or {}

    async def close(self) -> None:
        """Close the dispatcher, the owned bucket and the owned HTTP client."""
        if self._dispatcher is not None:
            self._dispatcher.close()
        if self._owns_bucket and self._bucket is not None:
            self._bucket.close()
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> ShopifyClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


def _decode_body(response: httpx.Response) -> Any:
    """Decode a JSON body, falling back to text for non-JSON payloads."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _is_int_at_least(value: Any, minimum: int) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= minimum
