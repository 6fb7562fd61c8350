from functools import lru_cache

from supabase import Client, ClientOptions, create_client

from core.config import settings


def get_user_client(token: str) -> Client:
    """Create a per-request Supabase client carrying the caller's JWT.

    Only used to resolve the caller via Supabase Auth; catalog writes go
    through the service-role client scoped explicitly by owner id.
    """
    return create_client(
        settings.supabase_url,
        settings.supabase_anon_key,
        options=ClientOptions(headers={"Authorization": f"Bearer {token}"}),
    )


@lru_cache(maxsize=1)
def get_service_role_client() -> Client:
    """Get Supabase client using service role key (bypasses RLS).
    Use for pipeline catalog writes and storage uploads, always filtered by user_id."""
    return create_client(settings.supabase_url, settings.supabase_service_role_key)
