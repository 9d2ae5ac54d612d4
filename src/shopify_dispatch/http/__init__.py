"""HTTP client module with connection pooling.

Usage:
    from shopify_dispatch.http import get_async_client
    async with get_async_client() as client:
        response = await client.get("https://example.myshopify.com/admin/shop.json")
"""

from shopify_dispatch.http.client import (
    HTTPClientConfig,
    configure_http_client,
    create_async_client,
    get_async_client,
)

__all__ = [
    "HTTPClientConfig",
    "configure_http_client",
    "create_async_client",
    "get_async_client",
]
