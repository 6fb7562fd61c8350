from typing import Protocol


class StorageSink(Protocol):
    async def upload(self, data: bytes, content_type: str, path: str) -> str:
        """Store the bytes at `path` and return a stable public URL.

        Raises StorageError on failure.
        """
        ...
