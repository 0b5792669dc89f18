# services/document_store.py
"""
Document-store contract used by the commerce services.

Collections are partitioned by store_id. Each document is a JSON-safe dict
with `id`, `store_id`, `version`, `created_at`, `updated_at`. Backends must
provide the primitives (get/find/insert/insert_unique/update/delete) with a
per-document version check on `update`; the counter helpers below are built
on those primitives and may be overridden with something more atomic.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from core.errors import CommerceError, ConcurrencyConflict, NotFoundError
from core.settings import settings

logger = logging.getLogger("storefront.store")

Doc = Dict[str, Any]
Filters = Optional[Dict[str, Any]]

COUNTERS = "counters"


class CounterOutOfRange(CommerceError):
    """An increment would push a counter past its floor/ceiling. Nothing was written."""
    code = "counter_out_of_range"
    http_status = 409

    def __init__(self, collection: str, doc_id: str, field: str, current: Any, delta: Any):
        super().__init__(
            f"{collection}/{doc_id}.{field}={current} cannot change by {delta}",
            collection=collection,
            doc_id=doc_id,
            field=field,
        )
        self.collection = collection
        self.doc_id = doc_id
        self.field = field


@dataclass
class Increment:
    collection: str
    store_id: str
    doc_id: str
    field: str
    delta: float
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def check(self, doc: Doc) -> float:
        current = doc.get(self.field) or 0
        new_value = current + self.delta
        if self.minimum is not None and new_value < self.minimum:
            raise CounterOutOfRange(self.collection, self.doc_id, self.field, current, self.delta)
        if self.maximum is not None and new_value > self.maximum:
            raise CounterOutOfRange(self.collection, self.doc_id, self.field, current, self.delta)
        return new_value


def _matches(doc: Doc, filters: Filters) -> bool:
    for k, v in (filters or {}).items():
        if doc.get(k) != v:
            return False
    return True


def _sorted(docs: List[Doc], order_by: Optional[str], desc: bool) -> List[Doc]:
    if not order_by:
        return docs
    # None sorts first ascending
    def _key(d: Doc):
        v = d.get(order_by)
        return (v is not None, v if v is not None else 0)

    return sorted(docs, key=_key, reverse=desc)


class DocumentStore:
    name = "base"

    def __init__(self, max_retries: Optional[int] = None):
        self.max_retries = max_retries if max_retries is not None else settings.CONCURRENCY_MAX_RETRIES

    # --------------------------------------------------------
    # Primitives (backend-specific)
    # --------------------------------------------------------
    def get(self, collection: str, store_id: str, doc_id: str) -> Optional[Doc]:
        raise NotImplementedError

    def find(
        self,
        collection: str,
        store_id: str,
        filters: Filters = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Doc]:
        """Equality filters only."""
        raise NotImplementedError

    def insert(self, collection: str, store_id: str, data: Doc, doc_id: Optional[str] = None) -> Doc:
        raise NotImplementedError

    def insert_unique(self, collection: str, store_id: str, data: Doc, unique_field: str) -> Doc:
        """
        Insert-if-absent on (collection, store_id, data[unique_field]).
        Raises UniqueViolation when the value is taken.
        """
        raise NotImplementedError

    def update(
        self,
        collection: str,
        store_id: str,
        doc_id: str,
        patch: Doc,
        expected_version: Optional[int] = None,
    ) -> Doc:
        """
        Shallow-merges patch. With expected_version the write only lands if
        the stored version still matches (ConcurrencyConflict otherwise).
        """
        raise NotImplementedError

    def delete(self, collection: str, store_id: str, doc_id: str) -> bool:
        raise NotImplementedError

    # --------------------------------------------------------
    # Helpers built on the primitives
    # --------------------------------------------------------
    def get_or_raise(self, collection: str, store_id: str, doc_id: str) -> Doc:
        doc = self.get(collection, store_id, doc_id)
        if doc is None:
            raise NotFoundError(f"{collection[:-1] if collection.endswith('s') else collection} not found", id=doc_id)
        return doc

    def find_one(self, collection: str, store_id: str, filters: Filters) -> Optional[Doc]:
        rows = self.find(collection, store_id, filters=filters, limit=1)
        return rows[0] if rows else None

    def mutate(
        self,
        collection: str,
        store_id: str,
        doc_id: str,
        fn: Callable[[Doc], Optional[Doc]],
        retries: Optional[int] = None,
    ) -> Doc:
        """
        Read-modify-write with a version check. `fn` gets a copy of the
        current document and returns a patch (or None to leave it alone).
        Re-reads and re-runs `fn` on conflict, up to `retries` times.
        """
        attempts = (retries if retries is not None else self.max_retries) + 1
        for attempt in range(attempts):
            doc = self.get_or_raise(collection, store_id, doc_id)
            patch = fn(dict(doc))
            if not patch:
                return doc
            try:
                return self.update(collection, store_id, doc_id, patch, expected_version=doc.get("version"))
            except ConcurrencyConflict:
                logger.debug(f"CAS conflict {collection}/{doc_id} attempt={attempt + 1}/{attempts}")
                continue
        raise ConcurrencyConflict(f"{collection}/{doc_id} kept changing; giving up after {attempts} attempts")

    def increment(
        self,
        collection: str,
        store_id: str,
        doc_id: str,
        field: str,
        delta: float,
        minimum: Optional[float] = None,
        maximum: Optional[float] = None,
    ) -> Doc:
        op = Increment(collection, store_id, doc_id, field, delta, minimum, maximum)
        return self.mutate(collection, store_id, doc_id, lambda d: {field: op.check(d)})

    def apply_increments(self, ops: List[Increment]) -> List[Doc]:
        """
        All-or-nothing batch of counter changes. This default applies them
        one by one and compensates the ones already applied if a later one
        fails; backends with real transactions override it.
        """
        applied: List[Increment] = []
        out: List[Doc] = []
        try:
            for op in ops:
                out.append(self.increment(op.collection, op.store_id, op.doc_id, op.field, op.delta, op.minimum, op.maximum))
                applied.append(op)
        except Exception:
            for op in reversed(applied):
                try:
                    self.increment(op.collection, op.store_id, op.doc_id, op.field, -op.delta)
                except Exception:
                    logger.exception(f"Compensation failed for {op.collection}/{op.doc_id}.{op.field} delta={-op.delta}")
            raise
        return out

    def next_sequence(self, store_id: str, name: str) -> int:
        """Atomic per-store counter (order numbers)."""
        if self.get(COUNTERS, store_id, name) is None:
            try:
                self.insert(COUNTERS, store_id, {"value": 0}, doc_id=name)
            except CommerceError:
                # someone else created it first
                pass
        doc = self.increment(COUNTERS, store_id, name, "value", 1)
        return int(doc["value"])

    def health(self) -> Dict[str, Any]:
        return {"backend": self.name, "ok": True}
