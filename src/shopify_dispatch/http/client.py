"""Async HTTP client factory.

Builds the httpx clients the shop client sends its requests through.
Retries default to zero: retry policy belongs to whoever submits calls.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)


@dataclass
class HTTPClientConfig:
    """Configuration for HTTP clients.

    Attributes:
        pool_connections: Keep-alive connections to hold open
        pool_maxsize: Maximum simultaneous connections
        max_retries: Transport-level retries for failed connections
        timeout: Default timeout in seconds
        connect_timeout: Connection timeout in seconds
        headers: Headers sent with every request
    """

    pool_connections: int = 10
    pool_maxsize: int = 20
    max_retries: int = 0
    timeout: float = 60.0
    connect_timeout: float = 10.0
    headers: dict[str, str] = field(default_factory=dict)


# Default config
_default_config = HTTPClientConfig()


def configure_http_client(config: HTTPClientConfig) -> None:
    """Configure the default HTTP client settings.

    Affects clients created afterwards.
    """
    global _default_config
    _default_config = config


def create_async_client(
    config: HTTPClientConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create a new httpx AsyncClient with connection pooling.

    The caller owns the client and must close it with ``aclose()``.

    Args:
        config: Optional custom configuration
        transport: Optional transport override (e.g. ``httpx.MockTransport``)

    Returns:
        Configured httpx.AsyncClient
    """
    cfg = config or _default_config

    limits = httpx.Limits(
        max_keepalive_connections=cfg.pool_connections,
        max_connections=cfg.pool_maxsize,
        keepalive_expiry=30.0,
    )

    timeout = httpx.Timeout(cfg.timeout, connect=cfg.connect_timeout)

    if transport is None:
        transport = httpx.AsyncHTTPTransport(
            retries=cfg.max_retries,
            limits=limits,
        )

    logger.debug(f"Created async HTTP client (max_connections={cfg.pool_maxsize})")
    return httpx.AsyncClient(
        limits=limits,
        timeout=timeout,
        transport=transport,
        headers=cfg.headers,
    )


@asynccontextmanager
async def get_async_client(
    config: HTTPClientConfig | None = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """Get an async HTTP client that is closed on exit.

    Args:
        config: Optional custom configuration

    Yields:
        httpx.AsyncClient configured with connection pooling

    Example:
        async with get_async_client() as client:
            response = await client.get("https://example.myshopify.com/admin/shop.json")
    """
    client = create_async_client(config)
    try:
        yield client
    finally:
        await client.aclose()
