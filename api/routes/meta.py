# api/routes/meta.py
import os
from fastapi import APIRouter

from core.settings import settings
from services.store import get_store
from services.supabase_store import check_supabase_health, SUPABASE_STRICT

router = APIRouter()

@router.get("/meta")
def meta():
    # Check Supabase health
    sb_health = check_supabase_health()

    return {
        "ok": True,
        "render_git_commit": os.getenv("RENDER_GIT_COMMIT"),
        "env": settings.ENV,
        "store": get_store().health(),
        "has_db": settings.HAS_DB,
        "has_queue": settings.HAS_QUEUE,
        "has_notify_webhook": bool(settings.NOTIFY_WEBHOOK_URL),
        "has_payment_secret": bool(settings.PAYMENT_WEBHOOK_SECRET),
        # Supabase status
        "supabase_ok": sb_health["ok"],
        "supabase_configured": sb_health["configured"],
        "supabase_strict": SUPABASE_STRICT,
    }
