# api/routes/analytics.py
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Query

from services import analytics_service

router = APIRouter(prefix="/stores/{store_id}")


@router.get("/analytics/summary")
def api_summary(store_id: str, period_days: int = Query(30, ge=1, le=3650)) -> Dict[str, Any]:
    return analytics_service.summary(store_id, period_days=period_days)


@router.get("/analytics/compare")
def api_compare(store_id: str, start: datetime, end: datetime) -> Dict[str, Any]:
    return analytics_service.compare(store_id, start, end)
