# rasp_parser/core/client.py
import asyncio
import logging
from typing import Dict, Iterable, Optional

import httpx
from httpx import Limits

from .constants import DEFAULT_HEADERS
from .errors import FetchError

log = logging.getLogger(__name__)


class AsyncPageClient:
    """
    An asynchronous HTTP client for the timetable site's pages, retrying
    idempotent GET requests with a fixed pause between attempts.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff: float = 1.0,
        retry_status_codes: Iterable[int] = (408, 425, 429, 500, 502, 503, 504),
        retry_error_codes: Iterable[str] = ("ConnectError", "ConnectTimeout", "ReadTimeout"),
        user_agent: Optional[str] = None,
        external_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initializes the AsyncPageClient.

        Args:
            timeout: Request timeout in seconds.
            max_retries: Total number of attempts per request.
            backoff: Seconds to sleep between attempts.
            retry_status_codes: HTTP statuses worth another attempt.
            retry_error_codes: Names of httpx transport exceptions worth another attempt.
            user_agent: Overrides the default User-Agent header.
            external_client: Optional pre-configured httpx.AsyncClient to use.
                             If provided, it will NOT be closed by this client.
        """
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.retry_status_codes = set(retry_status_codes)
        self.retry_error_codes = set(retry_error_codes)
        self._is_external_client = external_client is not None

        headers: Dict[str, str] = DEFAULT_HEADERS.copy()
        if user_agent:
            headers["User-Agent"] = user_agent

        if self._is_external_client:
            self.client = external_client
            self.client.headers.update(headers)
            log.info("AsyncPageClient initialized using external httpx client.")
        else:
            self.client = httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                headers=headers,
                limits=Limits(max_keepalive_connections=10, max_connections=20),
                http2=True,
            )
            log.info("AsyncPageClient initialized with internal httpx client.")

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self):
        """Closes the underlying httpx client, ONLY if it was created internally."""
        if not self._is_external_client and not self.client.is_closed:
            await self.client.aclose()
            log.info("AsyncPageClient closed its internally managed session.")

    def _is_retryable(self, error: Exception) -> bool:
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code in self.retry_status_codes
        return type(error).__name__ in self.retry_error_codes

    async def fetch_page(self, url: str) -> str:
        """
        Fetches a page with retries.

        Args:
            url: Absolute URL of the page.

        Returns:
            The decoded response body.

        Raises:
            FetchError: On a non-retryable failure or after exhausting retries.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                log.debug(f"Attempt {attempt}/{self.max_retries} for GET {url}")
                response = await self.client.get(url)
                response.raise_for_status()
                return response.text
            except (httpx.RequestError, httpx.HTTPStatusError) as e:
                status_code = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
                log.warning(
                    f"GET {url} attempt {attempt} failed: {type(e).__name__}"
                    f"{f' (Status: {status_code})' if status_code else ''}"
                )
                if not self._is_retryable(e) or attempt >= self.max_retries:
                    message = f"HTTP error {status_code}" if status_code else f"{type(e).__name__}: {e}"
                    raise FetchError(
                        f"cannot fetch page: {message}",
                        status_code=status_code,
                        original_exception=e,
                        context={"stage": "fetch", "url": url, "attempts": attempt},
                    ) from e
                await asyncio.sleep(self.backoff)
