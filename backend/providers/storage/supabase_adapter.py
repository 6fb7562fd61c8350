import asyncio

import structlog
from supabase import Client

from core.bounded import bounded_call
from core.errors import StorageError

logger = structlog.get_logger()


class SupabaseStorageAdapter:
    """Supabase Storage bucket. The client is sync, so calls run in a worker thread."""

    def __init__(self, db: Client, bucket: str):
        self._db = db
        self._bucket = bucket

    async def upload(self, data: bytes, content_type: str, path: str) -> str:
        def _sync_upload() -> str:
            bucket = self._db.storage.from_(self._bucket)
            bucket.upload(
                path=path,
                file=data,
                file_options={
                    "content-type": content_type,
                    "cache-control": "3600",
                    "upsert": "true",
                },
            )
            return bucket.get_public_url(path)

        try:
            url = await bounded_call(
                asyncio.to_thread(_sync_upload), timeout=None, label="storage_upload"
            )
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Upload to {self._bucket}/{path} failed: {e}") from e

        logger.info("Image uploaded", bucket=self._bucket, path=path, size=len(data))
        return url
