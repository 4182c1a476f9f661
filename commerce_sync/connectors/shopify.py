"""
Shopify Connector

Reads orders, products and customers from the Shopify Admin REST API.
"""
from typing import Any, Dict, Optional

import httpx

from commerce_sync.config import get_settings
from commerce_sync.connectors.base import BaseConnector, ConnectorPage, FetchWindow
from commerce_sync.models.records import Platform


class ShopifyConnector(BaseConnector):
    """
    Connector for Shopify Admin API

    Credentials: shopDomain (e.g. "your-store.myshopify.com"), accessToken.
    Pagination is cursor based through the Link header; the cursor is the
    full next-page URL.
    """

    platform = Platform.SHOPIFY
    RESOURCES = {
        "orders": "orders",
        "products": "products",
        "customers": "customers",
    }
    REQUIRED_CREDENTIALS = ("shopDomain", "accessToken")
    MAX_PAGE_SIZE = 250  # Shopify max per page
    REQUESTS_PER_SECOND = 2.0  # Shopify: 2 req/sec

    def __init__(self, api_version: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_version = api_version or get_settings().shopify_api_version

    def _base_url(self, credentials: Dict[str, Any]) -> str:
        store_url = str(credentials["shopDomain"]).replace("https://", "").replace("http://", "").rstrip("/")
        return f"https://{store_url}/admin/api/{self.api_version}"

    def _get_headers(self, credentials: Dict[str, Any]) -> Dict[str, str]:
        """Get HTTP headers for Shopify API requests"""
        return {
            "X-Shopify-Access-Token": credentials["accessToken"],
            "Content-Type": "application/json"
        }

    async def _fetch(
        self,
        credentials: Dict[str, Any],
        sync_type: str,
        window: FetchWindow
    ) -> ConnectorPage:
        resource = self.resource_for(sync_type)

        if window.cursor:
            # Params are in the URL for subsequent pages; only the page size may change
            url = str(httpx.URL(window.cursor).copy_set_param("limit", window.limit))
            params = None
        else:
            url = f"{self._base_url(credentials)}/{resource}.json"
            params = {"limit": window.limit}
            if resource == "orders":
                params["status"] = "any"  # open, closed and cancelled
            if window.since:
                params["updated_at_min"] = window.since.isoformat()
            if window.until:
                params["updated_at_max"] = window.until.isoformat()

        response = await self._request("GET", url, params=params, headers=self._get_headers(credentials))
        data = self._json(response)

        records = [
            self._make_record(item, sync_type, window.cursor)
            for item in data.get(resource, [])
        ]

        return ConnectorPage(
            records=records,
            next_cursor=self._get_next_page_url(response.headers.get("Link")),
            rate_limit_hint=self._call_limit_hint(response.headers.get("X-Shopify-Shop-Api-Call-Limit")),
        )

    def _get_next_page_url(self, link_header: Optional[str]) -> Optional[str]:
        """
        Parse next page URL from Link header

        Args:
            link_header: Link header from response, <url>; rel="next"

        Returns:
            Next page URL or None
        """
        if not link_header:
            return None

        for link in link_header.split(","):
            parts = link.split(";")
            if len(parts) == 2 and 'rel="next"' in parts[1]:
                return parts[0].strip().strip("<>")

        return None

    def _call_limit_hint(self, header: Optional[str]) -> Optional[float]:
        """
        Back off when the leaky bucket is nearly full

        Args:
            header: X-Shopify-Shop-Api-Call-Limit, e.g. "39/40"

        Returns:
            Seconds to wait before the next call, or None
        """
        if not header or "/" not in header:
            return None

        try:
            used, limit = (int(part) for part in header.split("/", 1))
        except ValueError:
            return None

        if limit and used / limit >= 0.9:
            # Bucket leaks at 2 calls/sec
            return (used - int(limit * 0.8)) / 2.0
        return None
