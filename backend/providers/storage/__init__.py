from core.config import settings
from db.supabase_client import get_service_role_client
from providers.storage.interface import StorageSink


def get_storage_sink() -> StorageSink:
    from providers.storage.supabase_adapter import SupabaseStorageAdapter

    return SupabaseStorageAdapter(db=get_service_role_client(), bucket=settings.storage_bucket)
