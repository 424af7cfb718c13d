# backend/app/main.py
"""
FastAPI application entrypoint.

- App factory (create_app) for tests
- Bulk upload / bulk job routers and the bulk progress WebSocket
- Prometheus /metrics
- Health & readiness endpoints (DB, Redis, MinIO checks)
- Use: uvicorn backend.app.main:app --reload
"""

import importlib
import logging
import os
from contextlib import asynccontextmanager
from typing import Iterable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import text

from backend.app.config import settings
from backend.app.db import engine, init_db
from backend.app.middleware.request_logger import RequestLoggerMiddleware

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

# jobs before uploads: "/jobs/{job_id}" must win over "/{type}/..."
ROUTER_MODULES: Iterable[str] = (
    "backend.app.api.v1.bulk_jobs",
    "backend.app.api.v1.bulk_uploads",
    "backend.app.routers.ws_bulk",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()

    try:
        from backend.app.services.minio_client import ensure_bucket
        if settings.BULK_ARCHIVE_UPLOADS:
            ensure_bucket()
            logger.info("MinIO bucket ensured")
    except Exception as e:
        logger.warning("MinIO ensure skipped: %s", e)

    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title=os.getenv("APP_TITLE", "Campus Bulk Upload Service"),
        description=os.getenv("APP_DESC", "Bulk upload of students, staff, institutions and self-identified internships"),
        version=os.getenv("APP_VERSION", "1.0.0"),
        lifespan=lifespan,
    )

    # ---------------------
    # CORS
    # ---------------------
    frontend = os.getenv("FRONTEND_URL", "http://localhost:3000")
    allow_origins = [o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", frontend).split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggerMiddleware)

    # ---------------------
    # Routers
    # ---------------------
    for module_path in ROUTER_MODULES:
        mod = importlib.import_module(module_path)
        app.include_router(mod.router)
        logger.info("Included router from %s", module_path)

    # ---------------------
    # Metrics endpoint
    # ---------------------
    @app.get("/metrics")
    def metrics():
        data = generate_latest()
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    # ---------------------
    # Health & Readiness endpoints
    # ---------------------
    @app.get("/")
    async def root():
        return {"status": "ok", "service": "backend", "version": app.version}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/ready")
    def ready():
        checks = {}

        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            checks["db"] = "ok"
        except Exception as e:
            checks["db"] = f"error: {str(e)[:200]}"

        try:
            import redis
            r = redis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
            r.ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {str(e)[:200]}"

        if settings.BULK_ARCHIVE_UPLOADS:
            try:
                from backend.app.services.minio_client import client, MINIO_BUCKET
                checks["minio"] = "ok" if client().bucket_exists(MINIO_BUCKET) else "missing_bucket"
            except Exception as e:
                checks["minio"] = f"error: {str(e)[:200]}"

        ready_ok = all(v in ("ok", "missing_bucket") for v in checks.values())
        status_code = 200 if ready_ok else 503
        return JSONResponse(status_code=status_code, content={"status": "ready" if ready_ok else "not_ready", "checks": checks})

    return app


# Create global app instance for uvicorn to import
app = create_app()
