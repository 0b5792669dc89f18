# api/routes/health.py
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from services.store import get_store

router = APIRouter()

@router.get("/health")
def health_get():
    return {"ok": True, "store": get_store().name}

@router.head("/health")
def health_head():
    # HEAD no body
    return JSONResponse(status_code=200, content=None)
