# services/memory_store.py
from __future__ import annotations

import copy
import threading
import uuid
from typing import Any, Dict, List, Optional, Tuple

from core.errors import ConcurrencyConflict, NotFoundError, UniqueViolation
from core.schemas import utcnow_iso
from services.document_store import Doc, DocumentStore, Filters, Increment, _matches, _sorted

# ============================================================
# In-process document store
# - dev default and test backend
# - thread-safe: one RLock guards every read/write, so CAS and
#   multi-document counter batches are truly atomic here
# - find() is a full scan of the (collection, store_id) partition
# ============================================================

_Key = Tuple[str, str]


class MemoryStore(DocumentStore):
    name = "memory"

    def __init__(self, max_retries: Optional[int] = None):
        super().__init__(max_retries=max_retries)
        self._lock = threading.RLock()
        # (collection, store_id) -> doc_id -> doc
        self._docs: Dict[_Key, Dict[str, Doc]] = {}
        # (collection, store_id, field, value) -> doc_id
        self._unique: Dict[Tuple[str, str, str, Any], str] = {}

    def _partition(self, collection: str, store_id: str) -> Dict[str, Doc]:
        return self._docs.setdefault((collection, store_id), {})

    # --------------------------------------------------------
    # Primitives
    # --------------------------------------------------------
    def get(self, collection: str, store_id: str, doc_id: str) -> Optional[Doc]:
        if not doc_id:
            return None
        with self._lock:
            doc = self._partition(collection, store_id).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def find(
        self,
        collection: str,
        store_id: str,
        filters: Filters = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Doc]:
        with self._lock:
            rows = [copy.deepcopy(d) for d in self._partition(collection, store_id).values() if _matches(d, filters)]
        rows = _sorted(rows, order_by, desc)
        return rows[:limit] if limit else rows

    def _insert_locked(self, collection: str, store_id: str, data: Doc, doc_id: Optional[str]) -> Doc:
        part = self._partition(collection, store_id)
        doc_id = doc_id or data.get("id") or str(uuid.uuid4())
        if doc_id in part:
            raise UniqueViolation(f"{collection}/{doc_id} already exists", id=doc_id)
        now = utcnow_iso()
        doc = copy.deepcopy(data)
        doc.update({"id": doc_id, "store_id": store_id, "version": 1, "created_at": now, "updated_at": now})
        part[doc_id] = doc
        return copy.deepcopy(doc)

    def insert(self, collection: str, store_id: str, data: Doc, doc_id: Optional[str] = None) -> Doc:
        with self._lock:
            return self._insert_locked(collection, store_id, data, doc_id)

    def insert_unique(self, collection: str, store_id: str, data: Doc, unique_field: str) -> Doc:
        value = data.get(unique_field)
        ukey = (collection, store_id, unique_field, value)
        with self._lock:
            if ukey in self._unique:
                raise UniqueViolation(f"{unique_field}={value!r} already exists", field=unique_field)
            doc = self._insert_locked(collection, store_id, data, None)
            self._unique[ukey] = doc["id"]
            return doc

    def _update_locked(self, collection: str, store_id: str, doc_id: str, patch: Doc, expected_version: Optional[int]) -> Doc:
        part = self._partition(collection, store_id)
        doc = part.get(doc_id)
        if doc is None:
            raise NotFoundError(f"{collection}/{doc_id} not found", id=doc_id)
        if expected_version is not None and doc.get("version") != expected_version:
            raise ConcurrencyConflict(
                f"{collection}/{doc_id} version {doc.get('version')} != expected {expected_version}"
            )
        clean = {k: copy.deepcopy(v) for k, v in patch.items() if k not in ("id", "store_id", "version", "created_at")}
        doc.update(clean)
        doc["version"] = int(doc.get("version") or 0) + 1
        doc["updated_at"] = utcnow_iso()
        return copy.deepcopy(doc)

    def update(
        self,
        collection: str,
        store_id: str,
        doc_id: str,
        patch: Doc,
        expected_version: Optional[int] = None,
    ) -> Doc:
        with self._lock:
            return self._update_locked(collection, store_id, doc_id, patch, expected_version)

    def delete(self, collection: str, store_id: str, doc_id: str) -> bool:
        with self._lock:
            doc = self._partition(collection, store_id).pop(doc_id, None)
            if doc is None:
                return False
            for k in [k for k, v in self._unique.items() if v == doc_id and k[0] == collection and k[1] == store_id]:
                self._unique.pop(k, None)
            return True

    # --------------------------------------------------------
    # Atomic overrides
    # --------------------------------------------------------
    def mutate(self, collection, store_id, doc_id, fn, retries=None) -> Doc:
        # the lock makes read-modify-write atomic; fn must not call back into the store
        with self._lock:
            doc = self.get_or_raise(collection, store_id, doc_id)
            patch = fn(dict(doc))
            if not patch:
                return doc
            return self._update_locked(collection, store_id, doc_id, patch, doc.get("version"))

    def increment(self, collection, store_id, doc_id, field, delta, minimum=None, maximum=None) -> Doc:
        return self.apply_increments([Increment(collection, store_id, doc_id, field, delta, minimum, maximum)])[0]

    def apply_increments(self, ops: List[Increment]) -> List[Doc]:
        with self._lock:
            # validate everything first; write only if every op fits
            staged: Dict[Tuple[str, str, str], Doc] = {}
            for op in ops:
                key = (op.collection, op.store_id, op.doc_id)
                if key not in staged:
                    current = self._partition(op.collection, op.store_id).get(op.doc_id)
                    if current is None:
                        raise NotFoundError(f"{op.collection}/{op.doc_id} not found", id=op.doc_id)
                    staged[key] = dict(current)
                staged[key][op.field] = op.check(staged[key])

            out: List[Doc] = []
            for (collection, store_id, doc_id), doc in staged.items():
                fields = {op.field for op in ops if (op.collection, op.store_id, op.doc_id) == (collection, store_id, doc_id)}
                out.append(self._update_locked(collection, store_id, doc_id, {f: doc[f] for f in fields}, None))
            return out

    def clear(self) -> None:
        with self._lock:
            self._docs.clear()
            self._unique.clear()
