# services/supabase_store.py
from __future__ import annotations

import copy
import logging
import uuid
from typing import Any, Dict, List, Optional

from core.errors import ConcurrencyConflict, NotFoundError, UniqueViolation
from core.schemas import utcnow_iso
from core.settings import settings
from services.document_store import Doc, DocumentStore, Filters, _matches, _sorted

logger = logging.getLogger("storefront.supabase")

SUPABASE_URL = settings.SUPABASE_URL
SUPABASE_SERVICE_ROLE_KEY = settings.SUPABASE_SERVICE_ROLE_KEY
SUPABASE_STRICT = settings.SUPABASE_STRICT

DOCUMENTS_TABLE = "documents"
UNIQUE_KEYS_TABLE = "unique_keys"

# Postgres unique_violation
_PG_UNIQUE_VIOLATION = "23505"

# Singleton
_supabase = None


# ============================================================
# Client
# ============================================================
def _is_configured() -> bool:
    return bool(SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY)


def supabase_client():
    """
    Returns the Supabase client (singleton).
    SERVICE_ROLE_KEY = server-side only.
    """
    global _supabase
    if _supabase is not None:
        return _supabase

    if not _is_configured():
        logger.warning("Supabase not configured")
        return None

    try:
        from supabase import create_client  # type: ignore
        _supabase = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
        return _supabase
    except Exception:
        logger.exception("Could not create Supabase client")
        return None


def check_supabase_health() -> Dict[str, Any]:
    if not _is_configured():
        return {"ok": False, "configured": False}
    sb = supabase_client()
    if sb is None:
        return {"ok": False, "configured": True}
    try:
        sb.table(DOCUMENTS_TABLE).select("id").limit(1).execute()
        return {"ok": True, "configured": True}
    except Exception as e:
        logger.warning("Supabase health check failed", exc_info=True)
        return {"ok": False, "configured": True, "error": f"{type(e).__name__}: {e}"[:200]}


def _is_unique_violation(exc: Exception) -> bool:
    code = getattr(exc, "code", None)
    return str(code) == _PG_UNIQUE_VIOLATION or "duplicate key" in str(exc).lower()


def _rows(res) -> List[Dict[str, Any]]:
    return list(getattr(res, "data", None) or [])


# ============================================================
# Store
# ============================================================
class SupabaseStore(DocumentStore):
    """
    Documents live in one `documents` table:
      (collection text, store_id text, id text, version int, data jsonb)
      primary key (collection, store_id, id)
    and unique values in `unique_keys`:
      (collection, store_id, field, value, doc_id) unique (collection, store_id, field, value)

    Writes are compare-and-set on `version`; counters use the base class CAS
    loop, and multi-document batches compensate on failure.
    """
    name = "supabase"

    def __init__(self, client=None, max_retries: Optional[int] = None):
        super().__init__(max_retries=max_retries)
        self.sb = client or supabase_client()
        if self.sb is None:
            raise RuntimeError("Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY)")

    def _docs(self):
        return self.sb.table(DOCUMENTS_TABLE)

    def get(self, collection: str, store_id: str, doc_id: str) -> Optional[Doc]:
        if not doc_id:
            return None
        res = (
            self._docs()
            .select("data")
            .eq("collection", collection)
            .eq("store_id", store_id)
            .eq("id", doc_id)
            .limit(1)
            .execute()
        )
        rows = _rows(res)
        return copy.deepcopy(rows[0]["data"]) if rows else None

    def find(
        self,
        collection: str,
        store_id: str,
        filters: Filters = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Doc]:
        q = self._docs().select("data").eq("collection", collection).eq("store_id", store_id)
        if filters:
            # jsonb containment; re-checked below for exact equality
            q = q.contains("data", filters)
        docs = [r["data"] for r in _rows(q.execute()) if _matches(r.get("data") or {}, filters)]
        docs = _sorted(docs, order_by, desc)
        return docs[:limit] if limit else docs

    def _new_doc(self, store_id: str, data: Doc, doc_id: Optional[str]) -> Doc:
        now = utcnow_iso()
        doc = copy.deepcopy(data)
        doc.update({
            "id": doc_id or data.get("id") or str(uuid.uuid4()),
            "store_id": store_id,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        })
        return doc

    def insert(self, collection: str, store_id: str, data: Doc, doc_id: Optional[str] = None) -> Doc:
        doc = self._new_doc(store_id, data, doc_id)
        try:
            self._docs().insert({
                "collection": collection,
                "store_id": store_id,
                "id": doc["id"],
                "version": 1,
                "data": doc,
            }).execute()
        except Exception as e:
            if _is_unique_violation(e):
                raise UniqueViolation(f"{collection}/{doc['id']} already exists", id=doc["id"])
            raise
        return doc

    def insert_unique(self, collection: str, store_id: str, data: Doc, unique_field: str) -> Doc:
        value = data.get(unique_field)
        doc = self._new_doc(store_id, data, None)
        # claim the unique value first; the index decides races
        try:
            self.sb.table(UNIQUE_KEYS_TABLE).insert({
                "collection": collection,
                "store_id": store_id,
                "field": unique_field,
                "value": str(value),
                "doc_id": doc["id"],
            }).execute()
        except Exception as e:
            if _is_unique_violation(e):
                raise UniqueViolation(f"{unique_field}={value!r} already exists", field=unique_field)
            raise

        try:
            return self.insert(collection, store_id, doc, doc_id=doc["id"])
        except Exception:
            self._release_unique_keys(collection, store_id, doc["id"])
            raise

    def _release_unique_keys(self, collection: str, store_id: str, doc_id: str) -> None:
        try:
            (
                self.sb.table(UNIQUE_KEYS_TABLE)
                .delete()
                .eq("collection", collection)
                .eq("store_id", store_id)
                .eq("doc_id", doc_id)
                .execute()
            )
        except Exception:
            logger.warning(f"Could not release unique keys for {collection}/{doc_id}", exc_info=True)

    def update(
        self,
        collection: str,
        store_id: str,
        doc_id: str,
        patch: Doc,
        expected_version: Optional[int] = None,
    ) -> Doc:
        current = self.get(collection, store_id, doc_id)
        if current is None:
            raise NotFoundError(f"{collection}/{doc_id} not found", id=doc_id)
        version = int(current.get("version") or 0)
        if expected_version is not None and version != expected_version:
            raise ConcurrencyConflict(f"{collection}/{doc_id} version {version} != expected {expected_version}")

        doc = dict(current)
        doc.update({k: v for k, v in patch.items() if k not in ("id", "store_id", "version", "created_at")})
        doc["version"] = version + 1
        doc["updated_at"] = utcnow_iso()

        res = (
            self._docs()
            .update({"data": doc, "version": version + 1})
            .eq("collection", collection)
            .eq("store_id", store_id)
            .eq("id", doc_id)
            .eq("version", version)
            .execute()
        )
        if not _rows(res):
            raise ConcurrencyConflict(f"{collection}/{doc_id} changed concurrently")
        return doc

    def delete(self, collection: str, store_id: str, doc_id: str) -> bool:
        res = (
            self._docs()
            .delete()
            .eq("collection", collection)
            .eq("store_id", store_id)
            .eq("id", doc_id)
            .execute()
        )
        self._release_unique_keys(collection, store_id, doc_id)
        return bool(_rows(res))

    def health(self) -> Dict[str, Any]:
        out = check_supabase_health()
        out["backend"] = self.name
        return out
