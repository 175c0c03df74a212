"""HTTP client for the replication endpoint.

Handles bearer authentication, bounded timeouts, and capped retries with
randomized exponential backoff.
"""

import asyncio
import logging
import random
from typing import Any

import httpx

from ..errors import AuthenticationError, BatchRejectedError, RemoteError, TransientError

logger = logging.getLogger(__name__)


class RemoteClient:
    """Client for the push and pull endpoints of a replication server."""

    def __init__(
        self,
        base_url: str | None,
        timeout: float = 15.0,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the remote client.

        Args:
            base_url: Base URL of the server (e.g., "https://sync.example.com").
            timeout: Request timeout in seconds.
            max_retries: Maximum attempts per request.
            base_delay: Backoff delay before the second attempt, in seconds.
            max_delay: Upper bound for a single backoff delay.
            transport: Optional httpx transport (tests use ASGITransport).
        """
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._transport = transport

    def _backoff(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return delay * random.uniform(0.5, 1.5)

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        token: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated request, retrying transient failures.

        Args:
            method: HTTP method (GET, POST).
            path: URL path appended to base_url.
            token: Bearer token.
            json_data: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Decoded JSON response body.

        Raises:
            AuthenticationError: On 401/403.
            TransientError: When every attempt failed transiently.
            RemoteError: On other client errors or a malformed response.
        """
        if not self.base_url:
            raise RemoteError("No server URL configured")

        url = f"{self.base_url.rstrip('/')}{path}"
        headers = {"Authorization": f"Bearer {token}"}
        last_error = "no attempts made"
        last_status: int | None = None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.request(
                        method, url, json=json_data, params=params, headers=headers
                    )
                except httpx.TimeoutException:
                    last_error = "request timeout"
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TransportError as e:
                    last_error = f"connection failed: {e}"
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                else:
                    if response.status_code == 200:
                        try:
                            return response.json()
                        except ValueError as e:
                            raise RemoteError(f"Malformed response: {e}", 200) from e

                    if response.status_code in (401, 403):
                        raise AuthenticationError(
                            f"HTTP {response.status_code}: authentication rejected",
                            response.status_code,
                        )

                    if response.status_code < 500:
                        raise RemoteError(
                            f"HTTP {response.status_code}: {response.text}",
                            response.status_code,
                        )

                    last_error = f"HTTP {response.status_code}"
                    last_status = response.status_code
                    logger.warning(
                        f"Server error {response.status_code}, "
                        f"attempt {attempt + 1}/{self.max_retries}"
                    )

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self._backoff(attempt))

        raise TransientError(
            f"Max retries ({self.max_retries}) exceeded: {last_error}", last_status
        )

    async def push_batch(self, token: str, entries: list[dict[str, Any]]) -> dict[str, list[str]]:
        """Push one batch of sealed entries.

        Returns:
            Dict with "acceptedIds" and "skippedIds".

        Raises:
            BatchRejectedError: If the server rolled the batch back.
        """
        try:
            data = await self._request_with_retry(
                "POST", "/api/sync/push", token, json_data={"entries": entries}
            )
        except TransientError as e:
            # The server answers 500 when it rolled the batch transaction back
            if e.status_code == 500:
                raise BatchRejectedError(str(e), 500) from e
            raise

        if not isinstance(data, dict):
            raise RemoteError("Malformed push response")
        return {
            "acceptedIds": list(data.get("acceptedIds", [])),
            "skippedIds": list(data.get("skippedIds", [])),
        }

    async def pull_page(self, token: str, since: int, limit: int) -> dict[str, Any]:
        """Fetch one page of changes newer than the cursor.

        Returns:
            Dict with "entries", "nextCursor" and "serverTime".
        """
        data = await self._request_with_retry(
            "GET", "/api/sync/pull", token, params={"since": since, "limit": limit}
        )
        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            raise RemoteError("Malformed pull response")
        return data
