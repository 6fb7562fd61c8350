import logging

import httpx

logger = logging.getLogger(__name__)


class PexelsImageSearchAdapter:
    BASE_URL = "https://api.pexels.com/v1"

    def __init__(self, api_key: str):
        self._api_key = api_key
        self._client = httpx.AsyncClient(timeout=10.0)

    async def search(self, query: str) -> str | None:
        try:
            response = await self._client.get(
                f"{self.BASE_URL}/search",
                params={"query": query, "per_page": 5, "orientation": "landscape"},
                headers={"Authorization": self._api_key},
            )
            response.raise_for_status()
            photos = response.json().get("photos", [])
            if not photos:
                return None
            src = photos[0]["src"]
            url = src.get("landscape") or src["large"]
            return url if isinstance(url, str) else None
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            logger.warning("Pexels search failed for %r: %s", query, e)
            return None

    async def close(self) -> None:
        await self._client.aclose()
