"""HTTP client for a remote store served by ``changesync serve``.

Handles network transport with retry logic and exponential backoff.
"""

import asyncio
import logging
from typing import Any

import httpx

from ..errors import RemoteConflict, RemoteError
from .remote import ChangePage, RemoteRecord, RemoteStore

logger = logging.getLogger(__name__)


class HttpRemoteStore(RemoteStore):
    """RemoteStore talking to a changesync server over HTTP."""

    def __init__(
        self,
        base_url: str,
        zone: str = "changesets",
        max_retries: int = 3,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the HTTP remote.

        Args:
            base_url: Server URL (e.g., "http://sync-host:8765").
            zone: Record zone to read and write.
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/")
        self.zone = zone
        self.max_retries = max_retries
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._consecutive_failures = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> tuple[httpx.Response | None, str | None]:
        """Make HTTP request with exponential backoff retry.

        Server errors, connection failures and timeouts are retried;
        any other response is returned as is.

        Returns:
            Tuple of (response, error_message).
        """
        client = await self._get_client()
        backoff = 1.0

        for attempt in range(self.max_retries):
            try:
                response = await client.request(method, path, json=json_data, params=params)

                if response.status_code < 500:
                    self._consecutive_failures = 0
                    return response, None

                logger.warning(
                    f"Server error {response.status_code}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )

            except httpx.ConnectError:
                logger.warning(
                    f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.TimeoutException:
                logger.warning(
                    f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.HTTPError as e:
                logger.error(f"Request error: {e}")
                self._consecutive_failures += 1
                return None, str(e)

            # Exponential backoff
            if attempt < self.max_retries - 1:
                await asyncio.sleep(backoff)
                backoff *= 2

        self._consecutive_failures += 1
        return None, f"Max retries ({self.max_retries}) exceeded"

    def _zone_path(self, suffix: str) -> str:
        return f"/api/zones/{self.zone}{suffix}"

    async def save(self, record: RemoteRecord) -> None:
        response, error = await self._request_with_retry(
            "PUT",
            self._zone_path(f"/records/{record.record_id}"),
            json_data={"fields": record.fields},
        )
        if error:
            raise RemoteError(error)
        if response.status_code == 409:
            raise RemoteConflict(_detail(response), record_id=record.record_id)
        if response.status_code != 200:
            raise RemoteError(
                f"HTTP {response.status_code}: {_detail(response)}",
                status_code=response.status_code,
            )

    async def enumerate_changes(self, since: str | None, limit: int = 100) -> ChangePage:
        params: dict[str, Any] = {"limit": limit}
        if since is not None:
            params["since"] = since

        response, error = await self._request_with_retry(
            "GET", self._zone_path("/changes"), params=params
        )
        if error:
            raise RemoteError(error)
        if response.status_code != 200:
            raise RemoteError(
                f"HTTP {response.status_code}: {_detail(response)}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            return ChangePage(
                records=[RemoteRecord.from_dict(r) for r in data.get("records", [])],
                cursor=data.get("cursor"),
                more_coming=bool(data.get("more_coming", False)),
                failures=data.get("failures") or {},
            )
        except (ValueError, KeyError, TypeError) as e:
            raise RemoteError(f"Malformed change page: {e}")

    async def delete_zone(self) -> None:
        response, error = await self._request_with_retry("DELETE", self._zone_path(""))
        if error:
            raise RemoteError(error)
        if response.status_code != 200:
            raise RemoteError(
                f"HTTP {response.status_code}: {_detail(response)}",
                status_code=response.status_code,
            )

    async def health_check(self) -> bool:
        """Check if the server is reachable."""
        try:
            client = await self._get_client()
            response = await client.get("/api/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except (ValueError, AttributeError):
        return response.text
