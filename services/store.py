# services/store.py
import logging
import threading
from typing import Optional

from core.settings import settings
from services.document_store import DocumentStore
from services.memory_store import MemoryStore

logger = logging.getLogger("storefront.store")

_lock = threading.Lock()
_STORE: Optional[DocumentStore] = None


def _supabase_or_raise(op: str) -> None:
    """
    With strict mode on, running without Supabase is an error.
    """
    if settings.SUPABASE_STRICT and not settings.HAS_SUPABASE:
        raise RuntimeError(f"SUPABASE_STRICT=1 and Supabase is not available ({op})")


def _build_store() -> DocumentStore:
    backend = settings.STORE_BACKEND
    _supabase_or_raise("build_store")

    # ✅ Supabase-first
    if backend in ("", "supabase") and settings.HAS_SUPABASE:
        try:
            from services.supabase_store import SupabaseStore
            store = SupabaseStore()
            logger.info("Document store: supabase")
            return store
        except Exception:
            logger.warning("Supabase store unavailable", exc_info=True)
            if backend == "supabase" or settings.SUPABASE_STRICT:
                raise
    elif backend == "supabase":
        raise RuntimeError("STORE_BACKEND=supabase but SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY are not set")

    # ✅ SQL fallback
    if backend == "sql" or (backend == "" and settings.HAS_DB):
        from services.sql_store import SQLStore
        store = SQLStore(settings.DATABASE_URL) if settings.DATABASE_URL else SQLStore()
        logger.info("Document store: sql")
        return store

    if backend not in ("", "memory"):
        raise RuntimeError(f"Unknown STORE_BACKEND={backend!r}")

    logger.info("Document store: memory (data is lost on restart)")
    return MemoryStore()


def get_store() -> DocumentStore:
    global _STORE
    if _STORE is not None:
        return _STORE
    with _lock:
        if _STORE is None:
            _STORE = _build_store()
        return _STORE


def set_store(store: Optional[DocumentStore]) -> None:
    """Swap the process-wide store (tests, scripts). None resets to auto-selection."""
    global _STORE
    with _lock:
        _STORE = store
