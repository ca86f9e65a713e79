from typing import Optional

from app.config import Settings

from .base import RecordStore
from .memory import MemoryRecordStore
from .rest import RestRecordStore


def get_record_store(settings: Settings, kind: Optional[str] = None) -> RecordStore:
    """Return the record store selected by RECORD_STORE ('memory' by default).

    'rest' talks to the hosted database's REST endpoint and requires
    SUPABASE_URL; a missing URL is a configuration error, not a fallback.
    """
    name = (kind or settings.record_store or "memory").strip().lower()
    if name in ("rest", "supabase", "postgrest"):
        return RestRecordStore(
            base_url=settings.store_url,
            api_key=settings.store_key,
            timeout=settings.store_timeout,
            poll_interval=settings.store_poll_interval,
        )
    return MemoryRecordStore()
