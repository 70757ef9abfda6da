# app/main.py
from __future__ import annotations

import uuid
from typing import Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# --- Logging & request-id ---
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response as StarletteResponse

from app.config import settings
from app.core.errors import LedgerError, to_http_exception
from app.core.logging import configure_logging, logger
from app.core.request_id import clear_request_id, set_request_id
from services.db_service import close_db_pool, init_db_pool
from services.point_values_service import get_point_value_table

from api.routers.admin_gamification import router as admin_gamification_router
from api.routers.progress import router as progress_router
from api.routers.rewards import router as rewards_router

configure_logging(service_name="ledger-api", level=settings.LOG_LEVEL)

app = FastAPI(
    title="Gamification Ledger",
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)


def _cors_headers(origin: Optional[str]) -> Dict[str, str]:
    if origin and origin in settings.CORS_ORIGINS:
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Credentials": "true",
            "Vary": "Origin",
        }
    return {}


@app.on_event("startup")
async def _startup() -> None:
    if settings.LEDGER_STORE == "postgres":
        await init_db_pool()
    await get_point_value_table().load()


@app.on_event("shutdown")
async def _shutdown_cleanup() -> None:
    await close_db_pool()


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        set_request_id(req_id)

        logger.info("request_started", method=request.method, path=str(request.url.path))
        try:
            response: StarletteResponse = await call_next(request)
        except Exception as exc:
            logger.error("request_exception", error=str(exc.__class__.__name__))
            clear_request_id()
            raise
        logger.info("request_ended", status_code=response.status_code)
        response.headers["X-Request-Id"] = req_id
        clear_request_id()
        return response


# CORS first so it ends up outermost
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
    expose_headers=["Content-Length", "Retry-After"],
)
app.add_middleware(RequestIdMiddleware)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    headers = dict(exc.headers or {})
    headers.update(_cors_headers(request.headers.get("origin")))
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    # Ledger errors that escaped a router without being mapped
    return await http_exception_handler(request, to_http_exception(exc))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    headers = _cors_headers(request.headers.get("origin"))
    logger.exception("unhandled_exception", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"}, headers=headers)


# --- Health endpoints ---
@app.get("/")
async def root():
    return {"ok": True, "app": "Gamification Ledger", "message": "Up & running"}


@app.get("/health")
async def health():
    return {"ok": True, "store": settings.LEDGER_STORE, "version": settings.APP_VERSION}


# --- API v1 router ---
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(progress_router)
api_v1_router.include_router(rewards_router)
api_v1_router.include_router(admin_gamification_router)

app.include_router(api_v1_router)

logger.info("routers_registered", routers=["api_v1(progress,rewards,admin_gamification)"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
