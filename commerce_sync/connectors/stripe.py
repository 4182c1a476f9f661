"""
Stripe Connector

Reads payments, customers, subscriptions and invoices from the Stripe API.
"""
from typing import Any, Dict, Optional

from commerce_sync.config import get_settings
from commerce_sync.connectors.base import BaseConnector, ConnectorPage, FetchWindow
from commerce_sync.models.records import Platform


class StripeConnector(BaseConnector):
    """
    Connector for the Stripe API

    Credentials: apiKey (secret key), optional accountId for connected
    accounts. List endpoints page with starting_after, so the cursor is the
    id of the last object on the previous page.
    """

    platform = Platform.STRIPE
    RESOURCES = {
        "payments": "payment_intents",
        "customers": "customers",
        "subscriptions": "subscriptions",
        "invoices": "invoices",
    }
    REQUIRED_CREDENTIALS = ("apiKey",)
    MAX_PAGE_SIZE = 100
    REQUESTS_PER_SECOND = 25.0

    def __init__(self, api_base: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_base = (api_base or get_settings().stripe_api_base).rstrip("/")

    def _get_headers(self, credentials: Dict[str, Any]) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {credentials['apiKey']}"}
        if credentials.get("accountId"):
            headers["Stripe-Account"] = credentials["accountId"]
        return headers

    async def _fetch(
        self,
        credentials: Dict[str, Any],
        sync_type: str,
        window: FetchWindow
    ) -> ConnectorPage:
        resource = self.resource_for(sync_type)

        params: Dict[str, Any] = {"limit": window.limit}
        if window.since:
            params["created[gte]"] = int(window.since.timestamp())
        if window.until:
            params["created[lte]"] = int(window.until.timestamp())
        if window.cursor:
            params["starting_after"] = window.cursor

        response = await self._request(
            "GET",
            f"{self.api_base}/{resource}",
            params=params,
            headers=self._get_headers(credentials),
        )
        data = self._json(response)
        items = data.get("data", [])

        records = [
            self._make_record(item, sync_type, window.cursor, deleted=bool(item.get("deleted")))
            for item in items
        ]

        next_cursor = None
        if data.get("has_more") and items:
            next_cursor = str(items[-1]["id"])

        return ConnectorPage(records=records, next_cursor=next_cursor)
