# app.py
import logging
import re
import uuid
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from core.errors import CommerceError
from core.settings import settings

# Routers
from api.routes.health import router as health_router
from api.routes.meta import router as meta_router
from api.routes.products import router as products_router
from api.routes.discounts import router as discounts_router
from api.routes.orders import router as orders_router
from api.routes.customers import router as customers_router
from api.routes.analytics import router as analytics_router
from api.routes.webhooks import router as webhooks_router

from services.store import get_store

logger = logging.getLogger("storefront")


# ============================================================
# HELPERS
# ============================================================
def _normalize_origins(origins: Optional[List[str]]) -> List[str]:
    uniq: List[str] = []
    for o in (origins or []):
        s = str(o or "").strip().rstrip("/")
        if s and s not in uniq:
            uniq.append(s)
    return uniq


def _origin_allowed(origin: str) -> bool:
    origin = (origin or "").strip()
    if not origin:
        return False

    if origin in _normalize_origins(settings.CORS_ORIGINS):
        return True

    # optional regex (preview deployments)
    regex = settings.CORS_ORIGIN_REGEX
    if regex:
        try:
            return re.match(regex, origin) is not None
        except re.error:
            logger.exception("Invalid CORS_ORIGIN_REGEX in settings/env")
            return False

    return False


def _cors_headers(resp: Response, origin: str) -> Response:
    if _origin_allowed(origin):
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Access-Control-Allow-Credentials"] = "true"
        resp.headers["Vary"] = "Origin"
    return resp


# ============================================================
# CORS MIDDLEWARE
# - CORS headers on every response (200/4xx/500) for allowed origins
# - answers OPTIONS even if a router fails
# - unhandled errors become a 500 with a request_id
# ============================================================
class DynamicCORSMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        origin = (request.headers.get("origin") or "").strip()

        # Preflight
        if request.method == "OPTIONS":
            resp = Response(status_code=204)
            if _origin_allowed(origin):
                resp.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,PATCH,DELETE,OPTIONS"
                req_headers = request.headers.get("access-control-request-headers")
                resp.headers["Access-Control-Allow-Headers"] = req_headers or "Content-Type, Authorization"
            return _cors_headers(resp, origin)

        try:
            resp = await call_next(request)
        except Exception as exc:
            request_id = str(uuid.uuid4())
            logger.exception(f"Unhandled error request_id={request_id}")
            if settings.IS_PROD:
                resp = JSONResponse(status_code=500, content={"detail": "Internal Server Error", "request_id": request_id})
            else:
                resp = JSONResponse(
                    status_code=500,
                    content={"detail": f"{type(exc).__name__}: {str(exc)}", "request_id": request_id},
                )

        return _cors_headers(resp, origin)


# ============================================================
# APP
# ============================================================
app = FastAPI(title="Storefront Commerce Core", version="1.0.0")
app.add_middleware(DynamicCORSMiddleware)


@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError):
    if exc.http_status >= 500:
        logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# ============================================================
# STARTUP
# ============================================================
@app.on_event("startup")
def on_startup():
    level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    logging.basicConfig(level=level)

    store = get_store()
    logger.info(f"Document store ready: {store.name}")
    logger.info(f"Notifications: {'rq queue' if settings.HAS_QUEUE else 'inline'}")
    logger.info(f"CORS_ORIGINS={settings.CORS_ORIGINS}")
    logger.info(f"CORS_ORIGIN_REGEX={settings.CORS_ORIGIN_REGEX}")


# ============================================================
# ROUTERS
# ============================================================
app.include_router(health_router, tags=["health"])
app.include_router(meta_router, tags=["meta"])
app.include_router(products_router, tags=["products"])
app.include_router(discounts_router, tags=["discounts"])
app.include_router(orders_router, tags=["orders"])
app.include_router(customers_router, tags=["customers"])
app.include_router(analytics_router, tags=["analytics"])
app.include_router(webhooks_router)
