from typing import Protocol

from models.types import UploadedImage


class VisionProvider(Protocol):
    async def complete_vision(self, prompt: str, images: list[UploadedImage]) -> str:
        """Send one multimodal completion and return the model's text answer.

        Raises ItemExtractionError when the provider answers with a non-success
        status or cannot be reached.
        """
        ...

    async def close(self) -> None: ...
