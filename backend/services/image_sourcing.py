import re
import secrets
import string
import time

import httpx
import structlog

from core.bounded import bounded_call
from core.errors import ImageSourcingError
from models.types import UNCATEGORIZED, ImageCandidate, ImageSource
from providers.image_generation.interface import ImageGenerationProvider
from providers.image_search.interface import ImageSearchProvider
from providers.storage.interface import StorageSink

logger = structlog.get_logger()

_UNSAFE_PATH_CHARS = re.compile(r"[^a-z0-9]")
_BASE36 = string.ascii_lowercase + string.digits
_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


def build_search_queries(product_name: str, category: str | None = None) -> list[str]:
    """Successively looser photo-search queries, most specific first."""
    if category == UNCATEGORIZED:
        category = None
    queries = [
        f"{product_name} food",
        f"{product_name} {category or ''} dish".replace("  ", " ").strip(),
        f"{product_name} mexican food",
        f"{product_name} restaurant",
        f"{category} food" if category else "delicious food",
    ]
    return list(dict.fromkeys(queries))


def build_generation_prompt(product_name: str, description: str | None = None) -> str:
    subject = f"{product_name}, {description}" if description else f"{product_name} dish"
    return (
        f"Create a professional, appetizing photo of {subject}. The image should show "
        "restaurant quality presentation, well-plated food, natural lighting, high resolution, "
        "professional food photography style. Make it look delicious and appealing."
    )


def build_storage_path(product_name: str, content_type: str = "image/jpeg") -> str:
    sanitized = _UNSAFE_PATH_CHARS.sub("-", product_name.lower())
    timestamp = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    extension = _EXTENSIONS.get(content_type, "jpg")
    return f"products/product-{sanitized}-{timestamp}-{suffix}.{extension}"


class ImageSourcingChain:
    """Ordered image providers plus the download/upload hand-off to storage.

    Every step reports failure as None; sourcing never raises into the caller.
    """

    def __init__(
        self,
        storage: StorageSink,
        search: ImageSearchProvider | None = None,
        fallback_search: ImageSearchProvider | None = None,
        generator: ImageGenerationProvider | None = None,
        http: httpx.AsyncClient | None = None,
        download_timeout: float = 15.0,
        max_bytes: int = 10 * 1024 * 1024,
    ):
        self._storage = storage
        self._search = search
        self._fallback_search = fallback_search
        self._generator = generator
        self._http = http or httpx.AsyncClient(follow_redirects=True)
        self._download_timeout = download_timeout
        self._max_bytes = max_bytes

    async def find_web_image(self, product_name: str, category: str | None = None) -> ImageCandidate | None:
        if self._search is not None:
            for query in build_search_queries(product_name, category):
                url = await self._search_safely(self._search, query, product_name)
                if url:
                    logger.info("Web image found", product=product_name, query=query)
                    return ImageCandidate(url=url, source=ImageSource.WEB)

        if self._fallback_search is not None:
            url = await self._search_safely(self._fallback_search, f"{product_name} food", product_name)
            if url:
                logger.info("Web image found via fallback", product=product_name)
                return ImageCandidate(url=url, source=ImageSource.WEB)

        logger.info("No web image found", product=product_name)
        return None

    async def _search_safely(self, provider: ImageSearchProvider, query: str, product_name: str) -> str | None:
        try:
            return await provider.search(query)
        except Exception as e:
            logger.warning("Image search failed", product=product_name, query=query, error=str(e))
            return None

    async def generate_image(self, product_name: str, description: str | None = None) -> ImageCandidate | None:
        if self._generator is None:
            logger.warning("Image generation not configured", product=product_name)
            return None
        try:
            candidate = await self._generator.generate(build_generation_prompt(product_name, description))
        except Exception as e:
            logger.warning("Image generation failed", product=product_name, error=str(e))
            return None
        if candidate is None:
            logger.warning("Image generation returned no image", product=product_name)
        return candidate

    async def store(self, candidate: ImageCandidate, product_name: str) -> str | None:
        """Upload the candidate and return its public URL, or None on any failure."""
        try:
            if candidate.is_inline:
                data, content_type = candidate.data or b"", candidate.content_type
            else:
                data, content_type = await self.download(candidate.url or "")
            path = build_storage_path(product_name, content_type)
            return await self._storage.upload(data, content_type, path)
        except ImageSourcingError as e:
            logger.warning(
                "Image storage failed",
                product=product_name,
                source=candidate.source.value,
                error=str(e),
            )
            return None

    async def download(self, url: str) -> tuple[bytes, str]:
        """Fetch an image under the download deadline, refusing anything over the size cap."""
        return await bounded_call(self._fetch(url), timeout=self._download_timeout, label="image_download")

    async def _fetch(self, url: str) -> tuple[bytes, str]:
        async with self._http.stream("GET", url) as response:
            response.raise_for_status()

            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > self._max_bytes:
                raise ImageSourcingError(f"Image too large: {declared} bytes")

            chunks: list[bytes] = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > self._max_bytes:
                    raise ImageSourcingError(f"Image exceeded {self._max_bytes} bytes")
                chunks.append(chunk)

            content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
            if not content_type.startswith("image/"):
                content_type = "image/jpeg"
            return b"".join(chunks), content_type

    async def close(self) -> None:
        await self._http.aclose()
        for provider in (self._search, self._fallback_search, self._generator):
            if provider is not None:
                await provider.close()
