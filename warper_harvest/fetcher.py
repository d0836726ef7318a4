"""
Single-URL retrieval with bounded retries, a request timeout and an
optional post-fetch delay (rate limiting).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from .config import HarvestConfig
from .errors import FetchError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class _TransientStatus(Exception):
    """HTTP status worth retrying (429, 5xx)"""
    def __init__(self, status: int):
        self.status = status
        super().__init__(f"HTTP {status}")


def _is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


class Fetcher:
    """
    Fetches catalog URLs through a shared aiohttp session.

    Usage:
        async with aiohttp.ClientSession() as session:
            fetcher = Fetcher.from_config(session, config)
            body = await fetcher.fetch(url)
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        timeout_s: float = 25.0,
        retries: int = 5,
        delay_s: float = 0.0,
        backoff_s: float = 2.0,
        max_backoff_s: float = 60.0,
        sleep: Optional[Sleep] = None,
    ):
        """
        Args:
            session: Shared aiohttp session (reused across requests)
            timeout_s: Total timeout per attempt
            retries: Attempts before giving up on transient failures
            delay_s: Sleep after each successful fetch
            backoff_s: First retry wait, doubled per attempt
            max_backoff_s: Upper bound for a single retry wait
            sleep: Coroutine used for every wait (asyncio.sleep by default)
        """
        if retries < 1:
            raise ValueError(f"retries must be at least 1, got {retries}")
        self.session = session
        self.timeout_s = timeout_s
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.retries = retries
        self.delay_s = delay_s
        self.backoff_s = backoff_s
        self.max_backoff_s = max_backoff_s
        self.sleep = sleep or asyncio.sleep

        self.request_count = 0

    @classmethod
    def from_config(
        cls,
        session: aiohttp.ClientSession,
        config: HarvestConfig,
        sleep: Optional[Sleep] = None,
    ) -> "Fetcher":
        return cls(
            session,
            timeout_s=config.timeout_s,
            retries=config.retries,
            delay_s=config.page_delay_s,
            backoff_s=config.backoff_s,
            max_backoff_s=config.max_backoff_s,
            sleep=sleep,
        )

    def with_delay(self, delay_s: float) -> "Fetcher":
        """Same session and retry policy, different rate limit"""
        return Fetcher(
            self.session,
            timeout_s=self.timeout_s,
            retries=self.retries,
            delay_s=delay_s,
            backoff_s=self.backoff_s,
            max_backoff_s=self.max_backoff_s,
            sleep=self.sleep,
        )

    def backoff(self, attempt: int) -> float:
        """Wait before retry number attempt + 1 (attempt is 0-based)"""
        return min(self.backoff_s * 2 ** attempt, self.max_backoff_s)

    async def fetch(self, url: str) -> Any:
        """Fetch and decode a JSON document"""
        return await self._retrieve(url, lambda resp: resp.json(content_type=None))

    async def fetch_text(self, url: str) -> str:
        """Fetch a text document (mask GML)"""
        return await self._retrieve(url, lambda resp: resp.text())

    async def _retrieve(self, url: str, read) -> Any:
        if self.delay_s:
            logger.info(f"\tDownloading {url} (and sleeping {self.delay_s}s)")
        else:
            logger.info(f"\tDownloading {url}")

        last_error: Optional[BaseException] = None

        for attempt in range(self.retries):
            self.request_count += 1
            try:
                async with self.session.get(url, timeout=self.timeout) as resp:
                    if _is_transient_status(resp.status):
                        raise _TransientStatus(resp.status)
                    if resp.status >= 400:
                        raise FetchError(url, f"HTTP {resp.status}", attempt + 1)
                    body = await read(resp)

            except (asyncio.TimeoutError, aiohttp.ClientError, _TransientStatus) as e:
                last_error = e
                if attempt + 1 < self.retries:
                    wait = self.backoff(attempt)
                    logger.warning(
                        f"Transient error for {url}: {self._describe(e)}, "
                        f"retry {attempt + 1}/{self.retries - 1} in {wait}s"
                    )
                    if wait:
                        await self.sleep(wait)
                continue

            except ValueError as e:
                # Body is not valid JSON; retrying will not help
                raise FetchError(url, f"Invalid JSON: {e}", attempt + 1) from e

            if self.delay_s:
                await self.sleep(self.delay_s)
            return body

        raise FetchError(url, self._describe(last_error), self.retries) from last_error

    def _describe(self, error: Optional[BaseException]) -> str:
        if isinstance(error, asyncio.TimeoutError):
            return f"Request timeout ({self.timeout_s:g}s)"
        if error is None:
            return "Max retries exceeded"
        return str(error) or type(error).__name__
