"""
Custom Platform Connector

Generic JSON-over-HTTP connector for platforms without a dedicated adapter.
Everything platform specific comes from the credentials mapping:

    {
        "apiUrl": "https://api.custom-platform.com",
        "apiKey": "...",
        "endpoints": {"orders": "/orders", "products": "/products"},
        "recordsPath": "data",            # dotted path to the record list
        "nextCursorPath": "next_cursor",  # dotted path to the next cursor
        "totalPath": "total",
        "cursorParam": "cursor",
        "sinceParam": "updated_since",
        "limitParam": "limit",
        "offsetParam": "offset",
        "authHeader": "Authorization",
        "authScheme": "Bearer",
        "deletedField": "deleted"
    }
"""
from typing import Any, Dict, List, Optional

from commerce_sync.connectors.base import BaseConnector, ConnectorPage, FetchWindow
from commerce_sync.errors import ConfigurationError
from commerce_sync.models.records import Platform


def _dig(data: Any, path: Optional[str]) -> Any:
    """Follow a dotted path through nested dicts"""
    if not path:
        return data
    for part in path.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


class CustomConnector(BaseConnector):
    """Connector for arbitrary platforms configured through credentials"""

    platform = Platform.CUSTOM
    REQUIRED_CREDENTIALS = ("apiUrl", "endpoints")
    MAX_PAGE_SIZE = 1000
    REQUESTS_PER_SECOND = 0  # Pacing is left to the platform's 429s
    supports_offset = True

    def resource_for(self, sync_type: str) -> str:
        # Endpoints are per credentials, checked in _fetch
        return sync_type

    def _endpoint(self, credentials: Dict[str, Any], sync_type: str) -> str:
        endpoints = credentials.get("endpoints") or {}
        if sync_type not in endpoints:
            raise ConfigurationError(
                f"custom platform has no endpoint for '{sync_type}'. "
                f"Valid options: {', '.join(endpoints)}"
            )
        return str(credentials["apiUrl"]).rstrip("/") + "/" + str(endpoints[sync_type]).lstrip("/")

    def _get_headers(self, credentials: Dict[str, Any]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if credentials.get("apiKey"):
            header = credentials.get("authHeader", "Authorization")
            scheme = credentials.get("authScheme", "Bearer")
            headers[header] = f"{scheme} {credentials['apiKey']}".strip()
        return headers

    async def _fetch(
        self,
        credentials: Dict[str, Any],
        sync_type: str,
        window: FetchWindow
    ) -> ConnectorPage:
        url = self._endpoint(credentials, sync_type)

        params: Dict[str, Any] = {credentials.get("limitParam", "limit"): window.limit}
        if window.since:
            params[credentials.get("sinceParam", "updated_since")] = window.since.isoformat()
        if window.until:
            params[credentials.get("untilParam", "updated_until")] = window.until.isoformat()
        if window.cursor:
            params[credentials.get("cursorParam", "cursor")] = window.cursor
        elif window.offset is not None:
            params[credentials.get("offsetParam", "offset")] = window.offset

        response = await self._request("GET", url, params=params, headers=self._get_headers(credentials))
        data = self._json(response)

        if isinstance(data, list):
            items: List[Dict[str, Any]] = data
            next_cursor = None
            total = None
        else:
            items = _dig(data, credentials.get("recordsPath", "data")) or []
            next_cursor = _dig(data, credentials.get("nextCursorPath", "next_cursor"))
            total = _dig(data, credentials.get("totalPath", "total"))

        deleted_field = credentials.get("deletedField", "deleted")
        records = [
            self._make_record(item, sync_type, window.cursor, deleted=bool(item.get(deleted_field)))
            for item in items
        ]

        return ConnectorPage(
            records=records,
            next_cursor=str(next_cursor) if next_cursor else None,
            total_count=int(total) if isinstance(total, (int, float)) else None,
        )
