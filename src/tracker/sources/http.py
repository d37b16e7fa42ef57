"""Shared aiohttp plumbing for the upstream source clients.

Every client owns its own pacing state, so the delay between sequential
calls applies per source and concurrent fetches against different sources
do not slow each other down.
"""

import asyncio
import time
from typing import Any

import aiohttp

from tracker.config import SourceSettings
from tracker.exceptions import SourceUnavailable
from tracker.logging import get_logger

logger = get_logger(__name__)

RATE_LIMIT_STATUS = 429


class HttpSource:
    """Base class for JSON-over-HTTP sources with pacing and retry.

    The aiohttp session is injected and owned by the caller; clients never
    close it.

    Usage:
        async with aiohttp.ClientSession() as session:
            client = GnosisscanClient(session, settings.sources)
            transfers = await client.get_transfers(address, token_address)
    """

    name = "http"

    def __init__(self, session: aiohttp.ClientSession, settings: SourceSettings) -> None:
        self._session = session
        self._settings = settings
        self._pace_lock = asyncio.Lock()
        self._last_request_at = 0.0

    async def _pace(self) -> None:
        """Wait until request_delay has elapsed since this source's previous call."""
        async with self._pace_lock:
            delay = self._settings.request_delay
            if delay > 0 and self._last_request_at:
                remaining = delay - (time.monotonic() - self._last_request_at)
                if remaining > 0:
                    await asyncio.sleep(remaining)
            self._last_request_at = time.monotonic()

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json: Any = None,
        headers: dict | None = None,
    ) -> Any:
        """Perform one JSON request with exponential backoff retry.

        Retries up to max_retries times with delays of retry_base_delay * 2**attempt;
        HTTP 429 waits three times longer. Raises SourceUnavailable on final failure.
        """
        max_retries = max(1, self._settings.max_retries)
        base_delay = self._settings.retry_base_delay
        timeout = aiohttp.ClientTimeout(total=self._settings.request_timeout)

        for attempt in range(max_retries):
            await self._pace()
            try:
                async with self._session.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=headers,
                    timeout=timeout,
                ) as resp:
                    resp.raise_for_status()
                    return await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                if attempt == max_retries - 1:
                    logger.error(
                        "source_request_failed",
                        source=self.name,
                        error=str(e) or type(e).__name__,
                        attempts=max_retries,
                    )
                    raise SourceUnavailable(self.name, str(e) or type(e).__name__) from e

                delay = base_delay * (2**attempt)
                if isinstance(e, aiohttp.ClientResponseError) and e.status == RATE_LIMIT_STATUS:
                    delay *= 3
                    logger.warning(
                        "rate_limit_exceeded",
                        source=self.name,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                    )
                else:
                    logger.warning(
                        "source_request_retry",
                        source=self.name,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e) or type(e).__name__,
                    )
                await asyncio.sleep(delay)

        raise SourceUnavailable(self.name, "no attempts made")  # unreachable
