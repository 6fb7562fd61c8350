import logging
from urllib.parse import quote

import httpx

from core.bounded import BoundedCallError, bounded_call

logger = logging.getLogger(__name__)


class UnsplashSourceAdapter:
    """Keyword redirect service. No API key; the final redirected URL is the image."""

    BASE_URL = "https://source.unsplash.com/800x600/"

    def __init__(self, timeout: float = 10.0):
        self._timeout = timeout
        self._client = httpx.AsyncClient(follow_redirects=True)

    async def search(self, query: str) -> str | None:
        try:
            response = await bounded_call(
                self._client.get(f"{self.BASE_URL}?{quote(query)}"),
                timeout=self._timeout,
                label="unsplash_source",
            )
        except BoundedCallError as e:
            if e.timed_out:
                logger.warning("Unsplash Source timed out for %r", query)
            else:
                logger.warning("Unsplash Source failed for %r: %s", query, e.reason)
            return None

        if not response.is_success:
            logger.warning("Unsplash Source returned %s for %r", response.status_code, query)
            return None
        return str(response.url)

    async def close(self) -> None:
        await self._client.aclose()
