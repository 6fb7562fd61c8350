from typing import Protocol, runtime_checkable


@runtime_checkable
class ImageSearchProvider(Protocol):
    async def search(self, query: str) -> str | None:
        """Return an image URL for the query, or None when nothing usable was found."""
        ...

    async def close(self) -> None:
        """Clean up resources."""
        ...
