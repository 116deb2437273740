from supabase import create_client, Client  # type: ignore
from typing import Optional
from exam_integrity.config import settings


def get_supabase_client(use_service_role: bool = True) -> Optional[Client]:
    """
    Get Supabase client for the audit mirror.

    Args:
        use_service_role: When True (default), use the service role key if available
            so audit inserts bypass RLS restrictions intended for public clients.

    Returns:
        None when Supabase is not configured; audit records then stay in memory.
    """
    if not settings.supabase_url:
        return None
    if use_service_role and settings.supabase_service_role_key:
        key = settings.supabase_service_role_key
    else:
        key = settings.supabase_key
    if not key:
        return None
    return create_client(settings.supabase_url, key)


# Default client instance
supabase_client: Optional[Client] = get_supabase_client()
