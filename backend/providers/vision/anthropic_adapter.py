import base64
import logging

import anthropic
from anthropic import AsyncAnthropic

from core.bounded import BoundedCallError, bounded_call
from core.errors import ItemExtractionError
from models.types import UploadedImage

logger = logging.getLogger(__name__)

SUPPORTED_MEDIA_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}


class AnthropicVisionAdapter:
    def __init__(self, api_key: str, model: str):
        self._client = AsyncAnthropic(api_key=api_key, max_retries=0)
        self._model = model

    async def complete_vision(self, prompt: str, images: list[UploadedImage]) -> str:
        content: list[dict] = [self._image_block(image) for image in images]
        content.append({"type": "text", "text": prompt})

        try:
            response = await bounded_call(
                self._client.messages.create(
                    model=self._model,
                    max_tokens=8192,
                    messages=[{"role": "user", "content": content}],
                ),
                timeout=None,
                label="vision_completion",
            )
        except anthropic.APIStatusError as e:
            logger.warning("Anthropic vision error %s: %s", e.status_code, e.message)
            raise ItemExtractionError(f"Vision provider returned {e.status_code}") from e
        except (anthropic.APIConnectionError, BoundedCallError) as e:
            logger.warning("Anthropic vision call failed: %s", e)
            raise ItemExtractionError(f"Vision provider unreachable: {e}") from e
        except (anthropic.APIError, ValueError) as e:
            logger.warning("Anthropic vision response unreadable: %s", e)
            raise ItemExtractionError(f"Malformed vision response: {e}") from e

        return "".join(block.text for block in response.content if block.type == "text")

    @staticmethod
    def _image_block(image: UploadedImage) -> dict:
        media_type = image.content_type
        if media_type == "image/jpg":
            media_type = "image/jpeg"
        if media_type not in SUPPORTED_MEDIA_TYPES:
            raise ItemExtractionError(f"Unsupported image type: {image.content_type}")
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": media_type,
                "data": base64.b64encode(image.content).decode("ascii"),
            },
        }

    async def close(self) -> None:
        await self._client.close()
