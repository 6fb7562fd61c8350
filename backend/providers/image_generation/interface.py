from typing import Protocol

from models.types import ImageCandidate


class ImageGenerationProvider(Protocol):
    async def generate(self, prompt: str) -> ImageCandidate | None:
        """Generate one image. None when the response carried no image.

        Raises ImageSourcingError when the provider call itself fails.
        """
        ...

    async def close(self) -> None: ...
