"""
Platform connector tests against mocked HTTP.

Guards against:
1. Platform pagination cursors being dropped or misparsed
2. HTTP failures escaping untranslated (auth must be fatal, 5xx retryable)
3. Requests going out with missing credentials
"""
import json
from datetime import datetime, timezone

import httpx
import pytest

from commerce_sync.connectors import (
    CustomConnector,
    FetchWindow,
    ShopifyConnector,
    StripeConnector,
    WooCommerceConnector,
    get_connector,
)
from commerce_sync.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectorError,
    RateLimitError,
    SyncTimeoutError,
    is_retryable,
)

SINCE = datetime(2024, 1, 1, tzinfo=timezone.utc)

SHOPIFY_CREDENTIALS = {"shopDomain": "demo.myshopify.com", "accessToken": "shpat_test"}
WOO_CREDENTIALS = {"storeUrl": "https://shop.example.com/", "consumerKey": "ck", "consumerSecret": "cs"}
STRIPE_CREDENTIALS = {"apiKey": "sk_test", "accountId": "acct_1"}


class Recorder:
    """httpx MockTransport handler replaying canned responses"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def connector_with(cls, recorder, **kwargs):
    return cls(transport=httpx.MockTransport(recorder), requests_per_second=0, **kwargs)


# ---------------------------------------------------------------------------
# Shopify
# ---------------------------------------------------------------------------

class TestShopify:

    async def test_first_page_then_link_cursor(self):
        next_url = "https://demo.myshopify.com/admin/api/2024-01/orders.json?page_info=abc&limit=50"
        recorder = Recorder(
            httpx.Response(
                200,
                json={"orders": [{"id": 1}, {"id": 2}]},
                headers={
                    "Link": f'<{next_url}>; rel="next"',
                    "X-Shopify-Shop-Api-Call-Limit": "38/40",
                },
            ),
            httpx.Response(200, json={"orders": [{"id": 3}]}),
        )
        connector = connector_with(ShopifyConnector, recorder, api_version="2024-01")

        first = await connector.fetch_page(SHOPIFY_CREDENTIALS, "orders", FetchWindow(since=SINCE, limit=50))
        second = await connector.fetch_page(SHOPIFY_CREDENTIALS, "orders", FetchWindow(cursor=first.next_cursor, limit=50))

        request = recorder.requests[0]
        assert request.url.path == "/admin/api/2024-01/orders.json"
        assert request.url.params["limit"] == "50"
        assert request.url.params["status"] == "any"
        assert request.url.params["updated_at_min"] == SINCE.isoformat()
        assert request.headers["X-Shopify-Access-Token"] == "shpat_test"

        assert [r.source_id for r in first.records] == ["1", "2"]
        assert first.next_cursor == next_url
        assert first.rate_limit_hint == 3.0
        assert recorder.requests[1].url.path == "/admin/api/2024-01/orders.json"
        assert recorder.requests[1].url.params["page_info"] == "abc"
        assert second.next_cursor is None
        await connector.aclose()

    async def test_cursor_page_uses_current_page_size(self):
        cursor = "https://demo.myshopify.com/admin/api/2024-01/orders.json?limit=100&page_info=abc"
        recorder = Recorder(httpx.Response(200, json={"orders": []}))
        connector = connector_with(ShopifyConnector, recorder, api_version="2024-01")

        await connector.fetch_page(SHOPIFY_CREDENTIALS, "orders", FetchWindow(cursor=cursor, limit=50))

        params = recorder.requests[0].url.params
        assert params["limit"] == "50"
        assert params["page_info"] == "abc"
        assert params.get_list("limit") == ["50"]

    async def test_page_size_is_capped(self):
        recorder = Recorder(httpx.Response(200, json={"products": []}))
        connector = connector_with(ShopifyConnector, recorder, api_version="2024-01")

        await connector.fetch_page(SHOPIFY_CREDENTIALS, "products", FetchWindow(limit=1000))

        assert recorder.requests[0].url.params["limit"] == "250"

    async def test_unsupported_sync_type(self):
        connector = connector_with(ShopifyConnector, Recorder(), api_version="2024-01")

        with pytest.raises(ConfigurationError):
            await connector.fetch_page(SHOPIFY_CREDENTIALS, "payments", FetchWindow())


# ---------------------------------------------------------------------------
# WooCommerce
# ---------------------------------------------------------------------------

async def test_woocommerce_offset_totals_and_trash():
    recorder = Recorder(httpx.Response(
        200,
        json=[{"id": 11, "status": "processing"}, {"id": 12, "status": "trash"}],
        headers={"X-WP-Total": "42", "X-WP-TotalPages": "21"},
    ))
    connector = connector_with(WooCommerceConnector, recorder, api_version="wc/v3")

    page = await connector.fetch_page(WOO_CREDENTIALS, "orders", FetchWindow(offset=20, limit=2, since=SINCE))

    request = recorder.requests[0]
    assert str(request.url).startswith("https://shop.example.com/wp-json/wc/v3/orders")
    assert request.url.params["offset"] == "20"
    assert request.url.params["per_page"] == "2"
    assert request.url.params["modified_after"] == SINCE.isoformat()
    assert request.headers["Authorization"].startswith("Basic ")
    assert page.total_count == 42
    assert [r.deleted for r in page.records] == [False, True]
    assert page.next_cursor == "2"


async def test_woocommerce_page_cursor():
    recorder = Recorder(httpx.Response(200, json=[{"id": 1}], headers={"X-WP-TotalPages": "3"}))
    connector = connector_with(WooCommerceConnector, recorder, api_version="wc/v3")

    page = await connector.fetch_page(WOO_CREDENTIALS, "products", FetchWindow(cursor="3", limit=10))

    assert recorder.requests[0].url.params["page"] == "3"
    assert "offset" not in recorder.requests[0].url.params
    assert page.next_cursor is None


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

async def test_stripe_params_and_has_more():
    recorder = Recorder(httpx.Response(200, json={
        "data": [{"id": "pi_1", "created": 1704067200}, {"id": "pi_2", "created": 1704067300}],
        "has_more": True,
    }))
    connector = connector_with(StripeConnector, recorder, api_base="https://api.stripe.test/v1")

    page = await connector.fetch_page(
        STRIPE_CREDENTIALS, "payments", FetchWindow(since=SINCE, cursor="pi_0", limit=2)
    )

    request = recorder.requests[0]
    assert request.url.path == "/v1/payment_intents"
    assert request.url.params["created[gte]"] == str(int(SINCE.timestamp()))
    assert request.url.params["starting_after"] == "pi_0"
    assert request.headers["Authorization"] == "Bearer sk_test"
    assert request.headers["Stripe-Account"] == "acct_1"
    assert page.next_cursor == "pi_2"


async def test_stripe_last_page():
    recorder = Recorder(httpx.Response(200, json={"data": [{"id": "cus_1"}], "has_more": False}))
    connector = connector_with(StripeConnector, recorder, api_base="https://api.stripe.test/v1")

    page = await connector.fetch_page(STRIPE_CREDENTIALS, "customers", FetchWindow())

    assert page.next_cursor is None


# ---------------------------------------------------------------------------
# Custom
# ---------------------------------------------------------------------------

CUSTOM_CREDENTIALS = {
    "apiUrl": "https://api.custom.test/",
    "apiKey": "secret",
    "endpoints": {"orders": "/v2/orders"},
    "recordsPath": "result.items",
    "nextCursorPath": "result.next",
    "totalPath": "result.total",
}


async def test_custom_paths_and_auth():
    recorder = Recorder(httpx.Response(200, json={
        "result": {"items": [{"id": "a"}, {"id": "b", "deleted": True}], "next": "tok_2", "total": 9},
    }))
    connector = connector_with(CustomConnector, recorder)

    page = await connector.fetch_page(CUSTOM_CREDENTIALS, "orders", FetchWindow(offset=4, limit=2))

    request = recorder.requests[0]
    assert str(request.url).startswith("https://api.custom.test/v2/orders")
    assert request.url.params["offset"] == "4"
    assert request.headers["Authorization"] == "Bearer secret"
    assert [r.deleted for r in page.records] == [False, True]
    assert page.next_cursor == "tok_2"
    assert page.total_count == 9


async def test_custom_plain_list_response():
    recorder = Recorder(httpx.Response(200, content=json.dumps([{"id": 1}])))
    connector = connector_with(CustomConnector, recorder)

    page = await connector.fetch_page(CUSTOM_CREDENTIALS, "orders", FetchWindow())

    assert len(page.records) == 1
    assert page.next_cursor is None


async def test_custom_missing_endpoint():
    connector = connector_with(CustomConnector, Recorder())

    with pytest.raises(ConfigurationError):
        await connector.fetch_page(CUSTOM_CREDENTIALS, "refunds", FetchWindow())


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------

class TestErrorTranslation:

    async def fetch(self, response):
        recorder = Recorder(response)
        connector = connector_with(ShopifyConnector, recorder, api_version="2024-01")
        return await connector.fetch_page(SHOPIFY_CREDENTIALS, "orders", FetchWindow())

    async def test_401_is_fatal(self):
        with pytest.raises(AuthenticationError) as excinfo:
            await self.fetch(httpx.Response(401, text="Invalid API key"))
        assert not is_retryable(excinfo.value)

    async def test_429_carries_retry_after(self):
        with pytest.raises(RateLimitError) as excinfo:
            await self.fetch(httpx.Response(429, headers={"Retry-After": "7"}))
        assert excinfo.value.retry_after == 7.0
        assert is_retryable(excinfo.value)

    async def test_5xx_is_retryable(self):
        with pytest.raises(ConnectorError) as excinfo:
            await self.fetch(httpx.Response(503, text="unavailable"))
        assert excinfo.value.status_code == 503
        assert is_retryable(excinfo.value)

    async def test_4xx_is_not_retryable(self):
        with pytest.raises(ConnectorError) as excinfo:
            await self.fetch(httpx.Response(404, text="not found"))
        assert not is_retryable(excinfo.value)

    async def test_timeout(self):
        with pytest.raises(SyncTimeoutError):
            await self.fetch(httpx.ReadTimeout("timed out"))

    async def test_connection_error_is_retryable(self):
        with pytest.raises(ConnectorError) as excinfo:
            await self.fetch(httpx.ConnectError("refused"))
        assert is_retryable(excinfo.value)

    async def test_invalid_json(self):
        with pytest.raises(ConnectorError):
            await self.fetch(httpx.Response(200, content=b"<html>"))


async def test_missing_credentials_never_hit_the_network():
    recorder = Recorder()
    connector = connector_with(ShopifyConnector, recorder, api_version="2024-01")

    with pytest.raises(AuthenticationError):
        await connector.fetch_page({"shopDomain": "demo.myshopify.com"}, "orders", FetchWindow())
    assert recorder.requests == []


def test_get_connector():
    assert isinstance(get_connector("shopify"), ShopifyConnector)
    assert isinstance(get_connector("WooCommerce"), WooCommerceConnector)
    with pytest.raises(ConfigurationError):
        get_connector("amazon")


def test_connector_status():
    connector = WooCommerceConnector(api_version="wc/v3", requests_per_second=0)

    status = connector.get_status()

    assert status["name"] == connector.name
    assert status["request_count"] == 0
    assert status["supports_offset"] is True
    assert "orders" in status["sync_types"]
