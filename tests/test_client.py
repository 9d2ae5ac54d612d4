"""Tests for the shop API client."""

import json
import sys
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest

sys.path.insert(0, "src")

from shopify_dispatch import __version__
from shopify_dispatch.client import (
    ACCESS_TOKEN_HEADER,
    USER_AGENT,
    ClientOptions,
    ShopifyClient,
)
from shopify_dispatch.errors import APIError, InvalidOptionsError
from shopify_dispatch.ratelimit.bucket import BucketConfig, TokenBucket
from shopify_dispatch.ratelimit.dispatcher import DEFAULT_QUEUE_SIZE
from shopify_dispatch.ratelimit.quota import CALL_LIMIT_HEADER, CallLimits

# =============================================================================
# Helpers
# =============================================================================


def _mock_http(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _json_response(payload, status_code=200, call_limit="1/40"):
    headers = {CALL_LIMIT_HEADER: call_limit} if call_limit else {}
    return httpx.Response(status_code, json=payload, headers=headers)


def _token_options(**overrides):
    options = dict(shop_name="my-shop", access_token="shpat_0123456789abcdef0123")
    options.update(overrides)
    return ClientOptions(**options)


def _settings_namespace(**overrides):
    settings = dict(
        shopify_shop_name="my-shop",
        shopify_api_key="key",
        shopify_password="secret",
        shopify_access_token=None,
        request_timeout=15.0,
        autolimit_enabled=False,
        autolimit_calls=4,
        autolimit_interval_ms=500,
        autolimit_queue_size=None,
        bucket_size=38,
        bucket_refill_amount=2,
        bucket_refill_interval_ms=1000,
    )
    settings.update(overrides)
    return SimpleNamespace(**settings)


# =============================================================================
# ClientOptions
# =============================================================================


class TestClientOptions:
    """Tests for ClientOptions validation and derived configs."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {},
            {"access_token": "token"},
            {"shop_name": "my-shop"},
            {"shop_name": "my-shop", "api_key": "key"},
            {"shop_name": "my-shop", "password": "secret"},
            {"shop_name": "my-shop", "access_token": "token", "api_key": "key"},
            {"shop_name": "my-shop", "access_token": "token", "password": "secret"},
        ],
    )
    def test_missing_or_conflicting_options_rejected(self, kwargs):
        with pytest.raises(InvalidOptionsError, match="Missing or invalid options"):
            ClientOptions(**kwargs).validate()

    @pytest.mark.parametrize(
        "auto_limit",
        [
            {"calls": 0},
            {"calls": "2"},
            {"interval": -1},
            {"queue_size": 0},
            {"calls": 2, "interval": 1000, "queue_size": -5},
        ],
    )
    def test_invalid_auto_limit_rejected(self, auto_limit):
        with pytest.raises(InvalidOptionsError, match="Missing or invalid options") as exc:
            _token_options(auto_limit=auto_limit).validate()
        assert exc.value.details["problems"]

    @pytest.mark.parametrize(
        "kwargs",
        [{"bucket_size": 0}, {"bucket_refill_amount": 0}, {"bucket_refill_interval_ms": 0}],
    )
    def test_invalid_bucket_policy_rejected(self, kwargs):
        with pytest.raises(InvalidOptionsError):
            _token_options(auto_limit=True, **kwargs).validate()

    def test_zero_interval_allowed(self):
        _token_options(auto_limit={"calls": 1, "interval": 0}).validate()

    def test_invalid_shop_name_rejected(self):
        with pytest.raises(InvalidOptionsError):
            ClientOptions(shop_name="bad shop/../", access_token="token").validate()

    def test_valid_credential_styles(self):
        ClientOptions(shop_name="my-shop", access_token="token").validate()
        ClientOptions(shop_name="my-shop", api_key="key", password="secret").validate()

    def test_auto_limit_off_by_default(self):
        assert _token_options().dispatcher_config() is None

    def test_auto_limit_true_uses_defaults(self):
        config = _token_options(auto_limit=True).dispatcher_config()
        assert config.concurrency_limit == 2
        assert config.interval_ms == 1000
        assert config.queue_size == DEFAULT_QUEUE_SIZE
        assert config.name == "my-shop"

    def test_auto_limit_dict_overrides(self):
        options = _token_options(auto_limit={"calls": 5, "interval": 250, "queue_size": 10})
        config = options.dispatcher_config()
        assert config.concurrency_limit == 5
        assert config.interval_ms == 250
        assert config.queue_size == 10

    def test_bucket_config(self):
        config = _token_options(bucket_size=10, bucket_refill_amount=1).bucket_config()
        assert config.capacity == 10
        assert config.refill_amount == 1
        assert config.refill_interval_ms == 1000

    def test_from_settings(self):
        options = ClientOptions.from_settings(_settings_namespace(autolimit_enabled=True))

        assert options.shop_name == "my-shop"
        assert options.timeout == 15.0
        assert options.auto_limit == {"calls": 4, "interval": 500}
        options.validate()


# =============================================================================
# ShopifyClient
# =============================================================================


class TestShopifyClientInit:
    """Tests for client construction."""

    def test_invalid_options_raise(self):
        with pytest.raises(InvalidOptionsError):
            ShopifyClient(ClientOptions(shop_name="my-shop"))

    def test_invalid_auto_limit_raises_before_http_client_is_built(self):
        with patch("shopify_dispatch.client.create_async_client") as factory:
            with pytest.raises(InvalidOptionsError):
                ShopifyClient(_token_options(auto_limit={"calls": 0}))

        factory.assert_not_called()

    def test_dispatcher_failure_leaves_no_http_client(self):
        """The owned HTTP client is created only after the rate limiter is in place."""
        with (
            patch("shopify_dispatch.client.create_async_client") as factory,
            patch(
                "shopify_dispatch.client.RateLimitedDispatcher",
                side_effect=RuntimeError("no loop"),
            ),
        ):
            with pytest.raises(RuntimeError):
                ShopifyClient(_token_options(auto_limit=True))

        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_from_settings_builds_client_and_configures_logging(self):
        settings = _settings_namespace(autolimit_enabled=True)
        http = _mock_http(lambda request: _json_response({}))

        with patch("shopify_dispatch.client.configure_logging_from_settings") as configure:
            client = ShopifyClient.from_settings(settings, http_client=http)

        configure.assert_called_once_with(settings)
        assert client.shop_name == "my-shop"
        assert client.dispatcher.config.concurrency_limit == 4

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_from_settings_can_leave_logging_alone(self):
        http = _mock_http(lambda request: _json_response({}))

        with patch("shopify_dispatch.client.configure_logging_from_settings") as configure:
            client = ShopifyClient.from_settings(
                _settings_namespace(), configure_logs=False, http_client=http
            )

        configure.assert_not_called()
        assert client.dispatcher is None

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_base_url_from_shop_name(self):
        async with ShopifyClient(_token_options(shop_name="my-shop.myshopify.com")) as client:
            assert client.shop_name == "my-shop"
            assert client.base_url == "https://my-shop.myshopify.com"
            assert client.dispatcher is None

    def test_user_agent_carries_version(self):
        assert USER_AGENT == f"shopify-dispatch/{__version__}"


class TestShopifyClientRequests:
    """Tests for request building and response handling."""

    @pytest.mark.asyncio
    async def test_access_token_request(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return _json_response({"shop": {"id": 1}})

        http = _mock_http(handler)
        client = ShopifyClient(_token_options(), http_client=http)

        result = await client.get("/admin/shop.json", key="shop")

        request = seen["request"]
        assert result == {"id": 1}
        assert str(request.url) == "https://my-shop.myshopify.com/admin/shop.json"
        assert request.method == "GET"
        assert request.headers[ACCESS_TOKEN_HEADER] == "shpat_0123456789abcdef0123"
        assert request.headers["User-Agent"] == USER_AGENT
        assert "Authorization" not in request.headers

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_private_app_uses_basic_auth(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return _json_response({})

        http = _mock_http(handler)
        options = ClientOptions(shop_name="my-shop", api_key="key", password="secret")
        client = ShopifyClient(options, http_client=http)

        await client.get("admin/orders.json")

        request = seen["request"]
        assert request.headers["Authorization"].startswith("Basic ")
        assert ACCESS_TOKEN_HEADER not in request.headers

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_body_wrapped_in_key(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["content_type"] = request.headers["Content-Type"]
            return _json_response({"product": {"id": 7, "title": "Hat"}}, status_code=201)

        http = _mock_http(handler)
        client = ShopifyClient(_token_options(), http_client=http)

        result = await client.post("/admin/products.json", key="product", params={"title": "Hat"})

        assert seen["body"] == {"product": {"title": "Hat"}}
        assert seen["content_type"] == "application/json"
        assert result == {"id": 7, "title": "Hat"}

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_body_without_key_sent_as_is(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return _json_response({"ok": True})

        http = _mock_http(handler)
        client = ShopifyClient(_token_options(), http_client=http)

        result = await client.put("/admin/things/1.json", params={"title": "x"})

        assert seen["body"] == {"title": "x"}
        assert result == {"ok": True}

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_query_parameters(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return _json_response({"orders": []})

        http = _mock_http(handler)
        client = ShopifyClient(_token_options(), http_client=http)

        result = await client.get("/admin/orders.json", key="orders", query={"limit": 5})

        assert seen["params"] == {"limit": "5"}
        assert result == []

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_empty_body_returns_empty_dict(self):
        http = _mock_http(lambda request: httpx.Response(200, headers={CALL_LIMIT_HEADER: "1/40"}))
        client = ShopifyClient(_token_options(), http_client=http)

        assert await client.delete("/admin/products/7.json") == {}

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_call_limits_updated_and_emitted(self):
        http = _mock_http(lambda request: _json_response({}, call_limit="12/40"))
        client = ShopifyClient(_token_options(), http_client=http)
        updates = []
        client.on_update_limits(updates.append)

        await client.get("/admin/shop.json")

        expected = CallLimits(remaining=28, current=12, max=40)
        assert client.call_limits == expected
        assert updates == [expected]

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_missing_call_limit_keeps_previous_reading(self):
        responses = iter(
            [_json_response({}, call_limit="3/40"), _json_response({}, call_limit=None)]
        )
        http = _mock_http(lambda request: next(responses))
        client = ShopifyClient(_token_options(), http_client=http)

        await client.get("/admin/shop.json")
        await client.get("/admin/shop.json")

        assert client.call_limits.current == 3

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_error_status_raises_api_error_and_updates_limits(self):
        http = _mock_http(
            lambda request: _json_response(
                {"errors": "Exceeded 2 calls per second"}, status_code=429, call_limit="40/40"
            )
        )
        client = ShopifyClient(_token_options(), http_client=http)

        with pytest.raises(APIError) as exc:
            await client.get("/admin/orders.json")

        assert exc.value.status_code == 429
        assert exc.value.body == {"errors": "Exceeded 2 calls per second"}
        assert isinstance(exc.value.__cause__, httpx.HTTPStatusError)
        assert client.call_limits == CallLimits(remaining=0, current=40, max=40)

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_raises_api_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = _mock_http(handler)
        client = ShopifyClient(_token_options(), http_client=http)

        with pytest.raises(APIError) as exc:
            await client.get("/admin/shop.json")

        assert exc.value.status_code is None
        assert client.call_limits == CallLimits()

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_full_url_passed_through(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return _json_response({})

        http = _mock_http(handler)
        client = ShopifyClient(_token_options(), http_client=http)

        await client.get("https://other-shop.myshopify.com/admin/shop.json")

        assert seen["url"] == "https://other-shop.myshopify.com/admin/shop.json"

        await client.close()
        await http.aclose()


class TestShopifyClientAutoLimit:
    """Tests for requests routed through the dispatcher."""

    @pytest.mark.asyncio
    async def test_requests_go_through_dispatcher(self):
        http = _mock_http(lambda request: _json_response({"shop": {"id": 1}}))
        client = ShopifyClient(
            _token_options(auto_limit={"calls": 2, "interval": 10}), http_client=http
        )

        result = await client.get("/admin/shop.json", key="shop")

        assert result == {"id": 1}
        stats = client.dispatcher.get_stats()
        assert stats["total_started"] == 1
        assert stats["bucket"]["capacity"] == 38

        await client.close()
        assert client.dispatcher.closed is True
        assert client.dispatcher.bucket.closed is True
        assert http.is_closed is False

        await http.aclose()

    @pytest.mark.asyncio
    async def test_api_errors_pass_through_dispatcher(self):
        http = _mock_http(lambda request: _json_response({}, status_code=404))
        client = ShopifyClient(_token_options(auto_limit=True), http_client=http)

        with pytest.raises(APIError) as exc:
            await client.get("/admin/missing.json")

        assert exc.value.status_code == 404

        await client.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_shared_bucket_not_closed_by_client(self):
        bucket = TokenBucket(BucketConfig(capacity=4, refill_interval_ms=10_000))
        http = _mock_http(lambda request: _json_response({}))
        first = ShopifyClient(_token_options(auto_limit=True), bucket=bucket, http_client=http)
        second = ShopifyClient(
            _token_options(shop_name="other-shop", auto_limit=True), bucket=bucket, http_client=http
        )

        await first.get("/admin/shop.json")
        await second.get("/admin/shop.json")

        assert bucket.available == 2
        assert first.dispatcher.bucket is second.dispatcher.bucket

        await first.close()
        await second.close()
        assert bucket.closed is False

        bucket.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_owned_http_client_closed(self):
        client = ShopifyClient(_token_options())
        http = client._http

        await client.close()

        assert http.is_closed is True
