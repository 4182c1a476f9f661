"""
WooCommerce Connector

Reads orders, products and customers from the WooCommerce REST API.
"""
from typing import Any, Dict, Optional

from commerce_sync.config import get_settings
from commerce_sync.connectors.base import BaseConnector, ConnectorPage, FetchWindow
from commerce_sync.models.records import Platform


class WooCommerceConnector(BaseConnector):
    """
    Connector for the WooCommerce REST API

    Credentials: storeUrl, consumerKey, consumerSecret (HTTP basic auth).
    Pagination is page numbered, so the cursor is the next page number and
    offset windows are supported.
    """

    platform = Platform.WOOCOMMERCE
    RESOURCES = {
        "orders": "orders",
        "products": "products",
        "customers": "customers",
    }
    REQUIRED_CREDENTIALS = ("storeUrl", "consumerKey", "consumerSecret")
    MAX_PAGE_SIZE = 100
    REQUESTS_PER_SECOND = 5.0
    supports_offset = True

    def __init__(self, api_version: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_version = api_version or get_settings().woocommerce_api_version

    def _page_for(self, window: FetchWindow) -> int:
        if window.cursor:
            return max(1, int(window.cursor))
        return 1

    async def _fetch(
        self,
        credentials: Dict[str, Any],
        sync_type: str,
        window: FetchWindow
    ) -> ConnectorPage:
        resource = self.resource_for(sync_type)
        store_url = str(credentials["storeUrl"]).rstrip("/")
        url = f"{store_url}/wp-json/{self.api_version}/{resource}"
        page = self._page_for(window)

        params = {
            "per_page": window.limit,
            # Stable ordering keeps page N the same across re-fetches
            "orderby": "id",
            "order": "asc",
        }
        if window.offset is not None and not window.cursor:
            # The REST API takes a raw offset, which stays exact when the
            # page size changes between calls
            params["offset"] = window.offset
        else:
            params["page"] = page
        if window.since:
            params["modified_after"] = window.since.isoformat()
        if window.until:
            params["modified_before"] = window.until.isoformat()

        response = await self._request(
            "GET",
            url,
            params=params,
            auth=(credentials["consumerKey"], credentials["consumerSecret"]),
        )
        items = self._json(response) or []

        records = [
            self._make_record(item, sync_type, str(page), deleted=item.get("status") == "trash")
            for item in items
        ]

        total_pages = self._int_header(response.headers.get("X-WP-TotalPages"))
        if total_pages is not None:
            next_cursor = str(page + 1) if page < total_pages else None
        else:
            next_cursor = str(page + 1) if len(items) >= window.limit else None

        return ConnectorPage(
            records=records,
            next_cursor=next_cursor,
            total_count=self._int_header(response.headers.get("X-WP-Total")),
        )

    @staticmethod
    def _int_header(value: Optional[str]) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None
