from core.config import settings
from providers.vision.interface import VisionProvider


def get_vision_provider() -> VisionProvider:
    match settings.vision_provider:
        case "openrouter":
            from providers.vision.openrouter_adapter import OpenRouterVisionAdapter

            return OpenRouterVisionAdapter(
                api_key=settings.openrouter_api_key,
                model=settings.openrouter_model,
                base_url=settings.openrouter_base_url,
                app_url=settings.app_url,
                app_title=settings.app_title,
            )
        case "anthropic":
            from providers.vision.anthropic_adapter import AnthropicVisionAdapter

            return AnthropicVisionAdapter(
                api_key=settings.anthropic_api_key,
                model=settings.anthropic_model,
            )
        case _:
            raise ValueError(f"Unknown vision provider: {settings.vision_provider}")
