"""aiohttp plumbing shared by the peer and cloud sync clients."""

from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from weighsync.sync.errors import (
    NetworkError,
    PayloadTooLargeError,
    ProtocolError,
    SyncUnsupportedError,
)

logger = logging.getLogger(__name__)


class JsonHttpClient:
    """
    Base class for JSON-over-HTTP sync clients bound to one base URL.

    Usage:
        async with CloudSyncClient("https://backup.example.com") as client:
            envelope = await client.pull(tenant_id, since)

    Or without context manager:
        client = CloudSyncClient("https://backup.example.com")
        await client.connect()
        try:
            ...
        finally:
            await client.close()
    """

    def __init__(self, base_url: str, *, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> JsonHttpClient:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: bytes | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and decode the JSON response.

        Raises:
            NetworkError: Connection failure or timeout
            SyncUnsupportedError: HTTP 404
            PayloadTooLargeError: HTTP 413
            ProtocolError: Any other status >= 400 or a non-JSON body
        """
        if not self._session:
            await self.connect()

        assert self._session is not None

        url = f"{self._base_url}{path}"
        headers = {"Content-Type": "application/json"} if body is not None else None
        request_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None

        try:
            async with self._session.request(
                method,
                url,
                params=params,
                data=body,
                headers=headers,
                timeout=request_timeout,
            ) as response:
                text = await response.text()
                status = response.status
        except (aiohttp.ClientError, TimeoutError) as e:
            raise NetworkError(f"Connection error for {method} {url}: {e}") from e

        if status == 404:
            raise SyncUnsupportedError(f"{url} has no sync endpoint", status_code=status)
        if status == 413:
            raise PayloadTooLargeError(f"Payload too large for {url}", status_code=status)
        if status >= 400:
            raise ProtocolError(f"HTTP {status}: {text[:200]}", status_code=status)

        try:
            return json.loads(text) if text else {}
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Unparsable response from {url}", status_code=status) from e

    async def _probe(self, path: str = "", timeout: float = 5.0) -> int | None:
        """GET ``path`` and return the status code, or None if unreachable."""
        if not self._session:
            await self.connect()

        assert self._session is not None

        try:
            async with self._session.get(
                f"{self._base_url}{path}",
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                return response.status
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.debug("Probe of %s%s failed: %s", self._base_url, path, e)
            return None
