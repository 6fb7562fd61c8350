import base64
import binascii
import logging
import re
from typing import Any

import openai
from openai import AsyncOpenAI

from core.bounded import BoundedCallError, bounded_call
from core.errors import ImageSourcingError
from models.types import ImageCandidate, ImageSource

logger = logging.getLogger(__name__)

_DATA_URL_PATTERN = re.compile(r"^data:(image/[\w.+-]+);base64,(.*)$", re.DOTALL)


def decode_data_url(value: str) -> ImageCandidate | None:
    match = _DATA_URL_PATTERN.match(value)
    if not match:
        return None
    try:
        data = base64.b64decode(match.group(2), validate=False)
    except (binascii.Error, ValueError):
        logger.warning("Generated image carried invalid base64")
        return None
    return ImageCandidate(data=data, content_type=match.group(1), source=ImageSource.AI)


def _candidate_from_reference(ref: Any) -> ImageCandidate | None:
    if not isinstance(ref, str) or not ref:
        return None
    if ref.startswith("data:image/"):
        return decode_data_url(ref)
    return ImageCandidate(url=ref, source=ImageSource.AI)


def parse_generated_image(data: dict[str, Any]) -> ImageCandidate | None:
    """Normalize the shapes image models answer with into one candidate.

    Handles the images-API shape (`data[0].url` / `data[0].b64_json`) and the
    chat shape (`choices[0].message.images[0]` as a string, `{image_url: {url}}`,
    `{url}` or `{data}`).
    """
    items = data.get("data")
    if isinstance(items, list) and items and isinstance(items[0], dict):
        first = items[0]
        if first.get("url"):
            return _candidate_from_reference(first["url"])
        if first.get("b64_json"):
            return decode_data_url(f"data:image/png;base64,{first['b64_json']}")

    choices = data.get("choices") or []
    if not choices:
        return None
    message = choices[0].get("message") or {}
    images = message.get("images") or []
    if not images:
        return None

    raw = images[0]
    if isinstance(raw, str):
        return _candidate_from_reference(raw)
    if isinstance(raw, dict):
        nested = raw.get("image_url")
        if isinstance(nested, dict) and nested.get("url"):
            return _candidate_from_reference(nested["url"])
        if raw.get("url"):
            return _candidate_from_reference(raw["url"])
        if raw.get("data"):
            return _candidate_from_reference(raw["data"])
    logger.warning("Unexpected generated image format: %.200r", raw)
    return None


class OpenRouterImageGenerationAdapter:
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

    async def generate(self, prompt: str) -> ImageCandidate | None:
        try:
            response = await bounded_call(
                self._client.chat.completions.create(
                    model=self._model,
                    messages=[{"role": "user", "content": prompt}],
                    extra_body={"modalities": ["image", "text"]},
                ),
                timeout=None,
                label="image_generation",
            )
        except openai.APIStatusError as e:
            raise ImageSourcingError(f"Image generation returned {e.status_code}") from e
        except (openai.APIConnectionError, BoundedCallError) as e:
            raise ImageSourcingError(f"Image generation unreachable: {e}") from e
        except (openai.APIError, ValueError) as e:
            raise ImageSourcingError(f"Malformed image generation response: {e}") from e

        return parse_generated_image(response.model_dump())

    async def close(self) -> None:
        await self._client.close()
