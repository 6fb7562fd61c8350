from core.config import settings
from providers.image_search.interface import ImageSearchProvider


def get_image_search_provider() -> ImageSearchProvider | None:
    """Primary photo-search API. None when it is not configured."""
    match settings.image_search_provider:
        case "pexels":
            if not settings.pexels_api_key:
                return None
            from providers.image_search.pexels_adapter import PexelsImageSearchAdapter

            return PexelsImageSearchAdapter(api_key=settings.pexels_api_key)
        case "none":
            return None
        case _:
            raise ValueError(f"Unknown image search provider: {settings.image_search_provider}")


def get_fallback_image_search_provider() -> ImageSearchProvider:
    from providers.image_search.unsplash_source_adapter import UnsplashSourceAdapter

    return UnsplashSourceAdapter(timeout=settings.image_fallback_timeout)
