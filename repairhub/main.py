import os

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .db import Base, engine, get_db
from .logging import setup_logging, RequestIdMiddleware
from .auth.router import router as auth_router
from .routes.repairs import router as repairs_router
from .routes.payments import router as payments_router
from .routes.chat import router as chat_router
from .routes.location import router as location_router
from .routes.realtime import router as realtime_router
from .auth.security import get_current_user
from .models.models import User
from .services import lifecycle
from .services.errors import RepairError
from .storage.local_provider import LocalStorageProvider

logger = structlog.get_logger(__name__)


def error_body(status: int, title: str, detail, code=None) -> dict:
    err = {"status": status, "title": title, "detail": detail}
    if code:
        err["code"] = code
    return {"error": err}


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.customer_app_url, settings.technician_app_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    @app.exception_handler(RepairError)
    async def _repair_error(request: Request, exc: RepairError):
        logger.info("request_rejected", path=request.url.path, code=exc.code, status=exc.status_code)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.status_code, exc.title, exc.detail, exc.code),
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        title = {401: "Unauthorized", 403: "Forbidden", 404: "Not Found", 409: "Conflict"}.get(exc.status_code, "Error")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.status_code, title, exc.detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return JSONResponse(status_code=500, content=error_body(500, "Internal Server Error", "Unexpected error"))

    # Routers
    app.include_router(auth_router)
    app.include_router(repairs_router)
    app.include_router(payments_router)
    app.include_router(chat_router)
    app.include_router(location_router)
    app.include_router(realtime_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
        logger.info("startup_complete", environment=settings.environment)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "app": settings.app_name}

    @app.get("/files/local/{key:path}")
    def local_file(key: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
        """Serves signatures stored by the local development storage provider to the repair's parties."""
        parts = key.split("/")
        if settings.storage_provider != "local" or len(parts) < 3 or parts[0] != "signatures":
            raise HTTPException(status_code=404, detail="Not found")
        lifecycle.require_participant(lifecycle.get_repair(db, parts[1]), user)
        path = LocalStorageProvider().path_for(key)
        if not path.is_file():
            raise HTTPException(status_code=404, detail="Not found")
        return FileResponse(str(path), media_type="image/png")

    return app


app = create_app()
