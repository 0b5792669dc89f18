import logging
import time

from services.notifications import deliver

logger = logging.getLogger("storefront.jobs")


def send_notification(message: dict) -> dict:
    """
    rq job. Lets ExternalServiceError propagate so rq's Retry schedules the
    next attempt.
    """
    t0 = time.time()
    ok = deliver(message)
    return {
        "ok": ok,
        "id": message.get("id"),
        "event": message.get("event"),
        "duration_ms": int((time.time() - t0) * 1000),
    }


def reconcile_store(store_id: str) -> dict:
    """
    Periodic audit: re-applies side effects that were left pending after a
    committed status write (see services.orders.reconcile_store).
    """
    from services.orders import reconcile_store as _reconcile

    t0 = time.time()
    try:
        out = _reconcile(store_id)
    except Exception as e:
        logger.exception(f"Reconciliation crashed store={store_id}")
        return {
            "ok": False,
            "store_id": store_id,
            "error_message": f"{type(e).__name__}: {e}"[:2000],
            "duration_ms": int((time.time() - t0) * 1000),
        }
    out["duration_ms"] = int((time.time() - t0) * 1000)
    return out
