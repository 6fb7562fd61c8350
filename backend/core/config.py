from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase
    supabase_url: str = "http://127.0.0.1:54321"
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""
    storage_bucket: str = "product-images"

    # Vision (menu extraction)
    vision_provider: str = "openrouter"
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "anthropic/claude-3.5-sonnet"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-6-20250514"

    # Image generation
    image_generation_provider: str = "openrouter"
    image_generation_model: str = "google/gemini-2.5-flash-image-preview"

    # Image search
    image_search_provider: str = "pexels"
    pexels_api_key: str = ""

    # Attribution headers sent to OpenRouter
    app_url: str = "http://localhost:8000"
    app_title: str = "Menu Digital"

    # Pipeline
    default_currency: str = "MXN"
    image_download_timeout: float = 15.0
    image_fallback_timeout: float = 10.0
    max_image_bytes: int = 10 * 1024 * 1024

    # Sentry
    sentry_dsn: str = ""

    # App
    environment: str = "development"
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
