from supabase import create_client, Client

from leaveflow.core.config import settings
from leaveflow.core.exceptions import StoreError

_supabase_client: Client | None = None


def get_supabase() -> Client:
    global _supabase_client
    if _supabase_client is None:
        if not settings.SUPABASE_URL:
            raise StoreError("STORE_BACKEND=supabase but SUPABASE_URL is not configured")
        _supabase_client = create_client(
            settings.SUPABASE_URL,
            settings.SUPABASE_SERVICE_KEY or settings.SUPABASE_KEY,
        )
    return _supabase_client
