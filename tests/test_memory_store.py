# tests/test_memory_store.py
import os
import sys
from concurrent.futures import ThreadPoolExecutor

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from core.errors import ConcurrencyConflict, NotFoundError, UniqueViolation
from services.document_store import CounterOutOfRange, Increment
from services.memory_store import MemoryStore


@pytest.fixture
def mem():
    return MemoryStore()


def test_insert_sets_bookkeeping_fields(mem):
    doc = mem.insert("products", "s1", {"name": "Mug", "quantity": 2})
    assert doc["id"] and doc["store_id"] == "s1" and doc["version"] == 1
    assert doc["created_at"] == doc["updated_at"]
    # partitions are per store
    assert mem.get("products", "s2", doc["id"]) is None


def test_update_with_stale_version_conflicts(mem):
    doc = mem.insert("products", "s1", {"quantity": 2})
    mem.update("products", "s1", doc["id"], {"quantity": 3}, expected_version=1)
    with pytest.raises(ConcurrencyConflict):
        mem.update("products", "s1", doc["id"], {"quantity": 9}, expected_version=1)
    assert mem.get("products", "s1", doc["id"])["quantity"] == 3
    assert mem.get("products", "s1", doc["id"])["version"] == 2


def test_returned_docs_are_copies(mem):
    doc = mem.insert("customers", "s1", {"tags": ["new"]})
    doc["tags"].append("mutated")
    assert mem.get("customers", "s1", doc["id"])["tags"] == ["new"]


def test_insert_unique_is_per_store(mem):
    mem.insert_unique("discounts", "s1", {"code": "SAVE10"}, "code")
    with pytest.raises(UniqueViolation):
        mem.insert_unique("discounts", "s1", {"code": "SAVE10"}, "code")
    mem.insert_unique("discounts", "s2", {"code": "SAVE10"}, "code")


def test_delete_frees_unique_key(mem):
    doc = mem.insert_unique("discounts", "s1", {"code": "SAVE10"}, "code")
    assert mem.delete("discounts", "s1", doc["id"]) is True
    mem.insert_unique("discounts", "s1", {"code": "SAVE10"}, "code")


def test_apply_increments_is_all_or_nothing(mem):
    a = mem.insert("products", "s1", {"quantity": 5})
    b = mem.insert("products", "s1", {"quantity": 1})
    with pytest.raises(CounterOutOfRange):
        mem.apply_increments([
            Increment("products", "s1", a["id"], "quantity", -2, minimum=0),
            Increment("products", "s1", b["id"], "quantity", -2, minimum=0),
        ])
    assert mem.get("products", "s1", a["id"])["quantity"] == 5
    assert mem.get("products", "s1", b["id"])["quantity"] == 1


def test_apply_increments_missing_doc(mem):
    with pytest.raises(NotFoundError):
        mem.apply_increments([Increment("products", "s1", "nope", "quantity", 1)])


def test_mutate_none_patch_leaves_version(mem):
    doc = mem.insert("orders", "s1", {"status": "pending"})
    out = mem.mutate("orders", "s1", doc["id"], lambda d: None)
    assert out["version"] == 1


def test_find_filters_orders_and_limits(mem):
    for i, status in enumerate(["paid", "pending", "paid"]):
        mem.insert("orders", "s1", {"n": i, "status": status})
    rows = mem.find("orders", "s1", filters={"status": "paid"}, order_by="n", desc=True)
    assert [r["n"] for r in rows] == [2, 0]
    assert len(mem.find("orders", "s1", limit=1)) == 1


def test_next_sequence_is_unique_under_threads(mem):
    with ThreadPoolExecutor(max_workers=8) as pool:
        values = list(pool.map(lambda _: mem.next_sequence("s1", "order_number"), range(50)))
    assert sorted(values) == list(range(1, 51))


def test_base_increment_helper_compensates_on_failure():
    # exercises the DocumentStore fallback path (sequential + compensation)
    from services.document_store import DocumentStore

    class SequentialStore(MemoryStore):
        apply_increments = DocumentStore.apply_increments
        increment = DocumentStore.increment
        mutate = DocumentStore.mutate

    s = SequentialStore()
    a = s.insert("products", "s1", {"quantity": 5})
    b = s.insert("products", "s1", {"quantity": 0})
    with pytest.raises(CounterOutOfRange):
        s.apply_increments([
            Increment("products", "s1", a["id"], "quantity", -1, minimum=0),
            Increment("products", "s1", b["id"], "quantity", -1, minimum=0),
        ])
    assert s.get("products", "s1", a["id"])["quantity"] == 5
