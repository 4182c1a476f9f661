"""
Base Connector Class

All platform connectors inherit from this base class.
Provides the shared HTTP client, request pacing, credential checks and the
translation of platform failures into the engine's error taxonomy.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

from commerce_sync.config import get_settings
from commerce_sync.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectorError,
    RateLimitError,
    SyncTimeoutError,
)
from commerce_sync.models.records import Platform, RawRecord
from commerce_sync.utils.helpers import utcnow
from commerce_sync.utils.logger import log


@dataclass
class FetchWindow:
    """
    What to fetch for one page

    since=None means "from epoch" (full sync). cursor is the opaque value a
    previous page returned as next_cursor; offset is only honoured by
    connectors that support random access (batch sync).
    """
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    cursor: Optional[str] = None
    offset: Optional[int] = None
    limit: int = 100


@dataclass
class ConnectorPage:
    """One page of raw records"""
    records: List[RawRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None
    rate_limit_hint: Optional[float] = None  # seconds
    total_count: Optional[int] = None


class BaseConnector(ABC):
    """
    Base class for all platform connectors

    Connectors only read. Re-fetching the same window with the same cursor
    yields the same page, modulo platform-side changes.
    """

    platform: Platform = Platform.CUSTOM
    # Sync type -> platform resource
    RESOURCES: Dict[str, str] = {}
    REQUIRED_CREDENTIALS: Tuple[str, ...] = ()
    MAX_PAGE_SIZE = 100
    REQUESTS_PER_SECOND = 2.0
    # Random access by offset (needed for parallel batch sync)
    supports_offset = False

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        requests_per_second: Optional[float] = None
    ):
        """
        Initialize connector

        Args:
            timeout: Per-call timeout in seconds (defaults to SYNC_TIMEOUT)
            transport: httpx transport override, used by tests
            requests_per_second: Client-side pacing; 0 disables it
        """
        settings = get_settings()
        self.timeout = timeout if timeout is not None else settings.sync_timeout_seconds
        self.transport = transport
        self.requests_per_second = (
            requests_per_second if requests_per_second is not None else self.REQUESTS_PER_SECOND
        )
        self.last_request_time = 0.0
        self.request_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def name(self) -> str:
        return self.platform.value

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        return self._client

    async def aclose(self):
        """Close the HTTP client"""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def validate_credentials(self, credentials: Dict[str, Any]) -> None:
        """
        Check required credential keys before any network access

        Raises:
            AuthenticationError: when a required credential is missing
        """
        missing = [key for key in self.REQUIRED_CREDENTIALS if not (credentials or {}).get(key)]
        if missing:
            raise AuthenticationError(
                f"{self.name} credentials missing: {', '.join(missing)}"
            )

    def resource_for(self, sync_type: str) -> str:
        if sync_type not in self.RESOURCES:
            raise ConfigurationError(
                f"{self.name} does not support sync type '{sync_type}'. "
                f"Valid options: {', '.join(self.RESOURCES)}"
            )
        return self.RESOURCES[sync_type]

    async def fetch_page(
        self,
        credentials: Dict[str, Any],
        sync_type: str,
        window: FetchWindow
    ) -> ConnectorPage:
        """
        Fetch one page of raw records

        Args:
            credentials: Opaque credential mapping owned by this connector
            sync_type: Record kind (orders, products, customers, ...)
            window: Time/cursor window

        Returns:
            ConnectorPage with records, next cursor and optional rate limit hint

        Raises:
            RateLimitError, SyncTimeoutError: retryable
            AuthenticationError: fatal for the run
            ConnectorError: retryable for 5xx / transport failures only
        """
        self.validate_credentials(credentials)
        window.limit = max(1, min(window.limit, self.MAX_PAGE_SIZE))
        page = await self._fetch(credentials, sync_type, window)
        log.debug(
            f"{self.name} fetched {len(page.records)} {sync_type} "
            f"(cursor={window.cursor}, offset={window.offset}, next={page.next_cursor})"
        )
        return page

    @abstractmethod
    async def _fetch(
        self,
        credentials: Dict[str, Any],
        sync_type: str,
        window: FetchWindow
    ) -> ConnectorPage:
        """Platform-specific page fetch"""
        pass

    def _make_record(self, data: Dict[str, Any], sync_type: str, cursor: Optional[str],
                     deleted: bool = False) -> RawRecord:
        return RawRecord(
            data=data,
            platform=self.platform,
            record_type=sync_type,
            fetched_at=utcnow(),
            source_page_cursor=cursor,
            deleted=deleted,
        )

    async def _request(
        self,
        method: str,
        url: str,
        **kwargs
    ) -> httpx.Response:
        """
        Execute one HTTP call with pacing and error translation

        Returns:
            Successful (2xx) response
        """
        await self._rate_limit()
        self.request_count += 1

        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise SyncTimeoutError(f"{self.name} request timed out: {url}") from e
        except httpx.TransportError as e:
            raise ConnectorError(
                f"{self.name} connection failed: {type(e).__name__}: {e}",
                retryable=True
            ) from e

        self._raise_for_status(response)
        return response

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        body = response.text[:200]

        if status in (401, 403):
            raise AuthenticationError(f"{self.name} rejected credentials: {status} - {body}")

        if status == 429:
            retry_after = self._parse_retry_after(response.headers.get("Retry-After"))
            log.warning(f"{self.name} rate limited, retry after {retry_after}s")
            raise RateLimitError(f"{self.name} rate limit exceeded", retry_after=retry_after)

        raise ConnectorError(f"{self.name} request failed: {status} - {body}", status_code=status)

    @staticmethod
    def _parse_retry_after(value: Optional[str]) -> Optional[float]:
        if not value:
            return None
        try:
            return max(0.0, float(value))
        except ValueError:
            return None

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ConnectorError(
                f"Invalid JSON from {response.request.url}: {e}",
                status_code=response.status_code
            ) from e

    async def _rate_limit(self):
        """
        Enforce client-side request pacing
        """
        if not self.requests_per_second:
            return

        now = time.monotonic()
        elapsed = now - self.last_request_time
        interval = 1.0 / self.requests_per_second

        if elapsed < interval:
            await asyncio.sleep(interval - elapsed)

        self.last_request_time = time.monotonic()

    def get_status(self) -> Dict[str, Any]:
        """Get connector status"""
        return {
            "name": self.name,
            "request_count": self.request_count,
            "supports_offset": self.supports_offset,
            "sync_types": list(self.RESOURCES),
            "timeout_seconds": self.timeout,
        }
