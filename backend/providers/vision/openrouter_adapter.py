import base64
import logging

import openai
from openai import AsyncOpenAI

from core.bounded import BoundedCallError, bounded_call
from core.errors import ItemExtractionError
from models.types import UploadedImage

logger = logging.getLogger(__name__)


def to_data_url(image: UploadedImage) -> str:
    encoded = base64.b64encode(image.content).decode("ascii")
    return f"data:{image.content_type};base64,{encoded}"


class OpenRouterVisionAdapter:
    """Multimodal completions through OpenRouter's OpenAI-compatible API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        app_url: str = "",
        app_title: str = "",
    ):
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            default_headers={"HTTP-Referer": app_url, "X-Title": app_title},
            max_retries=0,
        )
        self._model = model

    async def complete_vision(self, prompt: str, images: list[UploadedImage]) -> str:
        content: list[dict] = [{"type": "text", "text": prompt}]
        content.extend(
            {"type": "image_url", "image_url": {"url": to_data_url(image)}} for image in images
        )

        try:
            response = await bounded_call(
                self._client.chat.completions.create(
                    model=self._model,
                    messages=[{"role": "user", "content": content}],
                ),
                timeout=None,
                label="vision_completion",
            )
        except openai.APIStatusError as e:
            logger.warning("OpenRouter vision error %s: %s", e.status_code, e.message)
            raise ItemExtractionError(f"Vision provider returned {e.status_code}") from e
        except (openai.APIConnectionError, BoundedCallError) as e:
            logger.warning("OpenRouter vision call failed: %s", e)
            raise ItemExtractionError(f"Vision provider unreachable: {e}") from e
        except (openai.APIError, ValueError) as e:
            logger.warning("OpenRouter vision response unreadable: %s", e)
            raise ItemExtractionError(f"Malformed vision response: {e}") from e

        if not response.choices:
            raise ItemExtractionError("Vision provider returned no choices")
        return response.choices[0].message.content or ""

    async def close(self) -> None:
        await self._client.close()
