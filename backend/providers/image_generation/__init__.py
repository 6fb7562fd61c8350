from core.config import settings
from providers.image_generation.interface import ImageGenerationProvider


def get_image_generation_provider() -> ImageGenerationProvider | None:
    match settings.image_generation_provider:
        case "openrouter":
            if not settings.openrouter_api_key:
                return None
            from providers.image_generation.openrouter_adapter import (
                OpenRouterImageGenerationAdapter,
            )

            return OpenRouterImageGenerationAdapter(
                api_key=settings.openrouter_api_key,
                model=settings.image_generation_model,
                base_url=settings.openrouter_base_url,
                app_url=settings.app_url,
                app_title=settings.app_title,
            )
        case "none":
            return None
        case _:
            raise ValueError(
                f"Unknown image generation provider: {settings.image_generation_provider}"
            )
