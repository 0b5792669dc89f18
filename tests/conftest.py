# tests/conftest.py
import os
import sys

# Add parent to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest  # noqa: E402

from services import notifications  # noqa: E402
from services.memory_store import MemoryStore  # noqa: E402
from services.store import set_store  # noqa: E402


@pytest.fixture
def store():
    """Fresh in-memory backend installed as the process-wide store."""
    s = MemoryStore()
    set_store(s)
    yield s
    set_store(None)


@pytest.fixture
def sent(monkeypatch):
    """Captures dispatched notifications instead of delivering them."""
    events = []

    def _capture(event, store_id, data):
        events.append({"event": event, "store_id": store_id, "data": data})
        return f"msg-{len(events)}"

    monkeypatch.setattr(notifications, "dispatch", _capture)
    return events
