# services/sql_store.py
from __future__ import annotations

import copy
import logging
import uuid
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete as sa_delete
from sqlalchemy import select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import ConcurrencyConflict, NotFoundError, UniqueViolation
from core.schemas import utcnow_iso
from db import DATABASE_URL, DocumentRow, UniqueKeyRow, init_db, make_engine, make_session_factory
from services.document_store import Doc, DocumentStore, Filters, Increment, _matches, _sorted

logger = logging.getLogger("storefront.sql")


class SQLStore(DocumentStore):
    """
    SQLAlchemy backend. Every write is a conditional UPDATE on the version
    column; counter batches run in one transaction.
    find() loads the (collection, store_id) partition and filters in Python.
    """
    name = "sql"

    def __init__(self, url: str = DATABASE_URL, max_retries: Optional[int] = None, create_tables: bool = True):
        super().__init__(max_retries=max_retries)
        self.engine = make_engine(url)
        self.SessionLocal = make_session_factory(self.engine)
        if create_tables:
            init_db(self.engine)

    # --------------------------------------------------------
    # Helpers
    # --------------------------------------------------------
    @staticmethod
    def _row_key(collection: str, store_id: str, doc_id: str) -> Tuple[str, str, str]:
        return (collection, store_id, doc_id)

    def _cas_write(self, db: Session, row: DocumentRow, new_doc: Doc) -> Doc:
        new_version = int(row.version) + 1
        new_doc["version"] = new_version
        new_doc["updated_at"] = utcnow_iso()
        res = db.execute(
            sa_update(DocumentRow)
            .where(
                DocumentRow.collection == row.collection,
                DocumentRow.store_id == row.store_id,
                DocumentRow.id == row.id,
                DocumentRow.version == row.version,
            )
            .values(data=new_doc, version=new_version)
        )
        if res.rowcount != 1:
            raise ConcurrencyConflict(f"{row.collection}/{row.id} changed concurrently")
        return new_doc

    # --------------------------------------------------------
    # Primitives
    # --------------------------------------------------------
    def get(self, collection: str, store_id: str, doc_id: str) -> Optional[Doc]:
        if not doc_id:
            return None
        db: Session = self.SessionLocal()
        try:
            row = db.get(DocumentRow, self._row_key(collection, store_id, doc_id))
            return copy.deepcopy(row.data) if row else None
        finally:
            db.close()

    def find(
        self,
        collection: str,
        store_id: str,
        filters: Filters = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Doc]:
        db: Session = self.SessionLocal()
        try:
            rows = db.execute(
                select(DocumentRow).where(DocumentRow.collection == collection, DocumentRow.store_id == store_id)
            ).scalars().all()
            docs = [copy.deepcopy(r.data) for r in rows if _matches(r.data or {}, filters)]
        finally:
            db.close()
        docs = _sorted(docs, order_by, desc)
        return docs[:limit] if limit else docs

    def _new_row(self, collection: str, store_id: str, data: Doc, doc_id: Optional[str]) -> DocumentRow:
        doc_id = doc_id or data.get("id") or str(uuid.uuid4())
        now = utcnow_iso()
        doc = copy.deepcopy(data)
        doc.update({"id": doc_id, "store_id": store_id, "version": 1, "created_at": now, "updated_at": now})
        return DocumentRow(collection=collection, store_id=store_id, id=doc_id, version=1, data=doc)

    def insert(self, collection: str, store_id: str, data: Doc, doc_id: Optional[str] = None) -> Doc:
        db: Session = self.SessionLocal()
        try:
            row = self._new_row(collection, store_id, data, doc_id)
            db.add(row)
            db.commit()
            return copy.deepcopy(row.data)
        except IntegrityError:
            db.rollback()
            raise UniqueViolation(f"{collection}/{doc_id} already exists", id=doc_id)
        finally:
            db.close()

    def insert_unique(self, collection: str, store_id: str, data: Doc, unique_field: str) -> Doc:
        value = data.get(unique_field)
        db: Session = self.SessionLocal()
        try:
            row = self._new_row(collection, store_id, data, None)
            db.add(UniqueKeyRow(collection=collection, store_id=store_id, field=unique_field, value=str(value), doc_id=row.id))
            db.add(row)
            db.commit()
            return copy.deepcopy(row.data)
        except IntegrityError:
            db.rollback()
            raise UniqueViolation(f"{unique_field}={value!r} already exists", field=unique_field)
        finally:
            db.close()

    def update(
        self,
        collection: str,
        store_id: str,
        doc_id: str,
        patch: Doc,
        expected_version: Optional[int] = None,
    ) -> Doc:
        db: Session = self.SessionLocal()
        try:
            row = db.get(DocumentRow, self._row_key(collection, store_id, doc_id))
            if row is None:
                raise NotFoundError(f"{collection}/{doc_id} not found", id=doc_id)
            if expected_version is not None and row.version != expected_version:
                raise ConcurrencyConflict(f"{collection}/{doc_id} version {row.version} != expected {expected_version}")
            doc = copy.deepcopy(row.data)
            doc.update({k: v for k, v in patch.items() if k not in ("id", "store_id", "version", "created_at")})
            out = self._cas_write(db, row, doc)
            db.commit()
            return copy.deepcopy(out)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete(self, collection: str, store_id: str, doc_id: str) -> bool:
        db: Session = self.SessionLocal()
        try:
            res = db.execute(
                sa_delete(DocumentRow).where(
                    DocumentRow.collection == collection,
                    DocumentRow.store_id == store_id,
                    DocumentRow.id == doc_id,
                )
            )
            db.execute(
                sa_delete(UniqueKeyRow).where(
                    UniqueKeyRow.collection == collection,
                    UniqueKeyRow.store_id == store_id,
                    UniqueKeyRow.doc_id == doc_id,
                )
            )
            db.commit()
            return bool(res.rowcount)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # --------------------------------------------------------
    # Transactional counters
    # --------------------------------------------------------
    def increment(self, collection, store_id, doc_id, field, delta, minimum=None, maximum=None) -> Doc:
        return self.apply_increments([Increment(collection, store_id, doc_id, field, delta, minimum, maximum)])[0]

    def apply_increments(self, ops: List[Increment]) -> List[Doc]:
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            db: Session = self.SessionLocal()
            try:
                rows: Dict[Tuple[str, str, str], DocumentRow] = {}
                staged: Dict[Tuple[str, str, str], Doc] = {}
                for op in ops:
                    key = self._row_key(op.collection, op.store_id, op.doc_id)
                    if key not in rows:
                        row = db.execute(
                            select(DocumentRow)
                            .where(
                                DocumentRow.collection == op.collection,
                                DocumentRow.store_id == op.store_id,
                                DocumentRow.id == op.doc_id,
                            )
                            .with_for_update()
                        ).scalar_one_or_none()
                        if row is None:
                            raise NotFoundError(f"{op.collection}/{op.doc_id} not found", id=op.doc_id)
                        rows[key] = row
                        staged[key] = copy.deepcopy(row.data)
                    staged[key][op.field] = op.check(staged[key])

                out = [self._cas_write(db, rows[k], staged[k]) for k in rows]
                db.commit()
                return [copy.deepcopy(d) for d in out]
            except ConcurrencyConflict:
                db.rollback()
                logger.debug(f"counter batch conflict attempt={attempt + 1}/{attempts}")
                continue
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        raise ConcurrencyConflict(f"counter batch kept conflicting; giving up after {attempts} attempts")

    def health(self):
        return {"backend": self.name, "ok": True, "url": self.engine.url.render_as_string(hide_password=True)}
