"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers all API routers.
"""
import logging
import os
import threading
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import jobs, uploads
from .core.config import settings
from .core.logging_config import configure_logging

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


def init_tables() -> None:
    from .db.records import ensure_imported_records_table
    from .domain.imports.jobs import ensure_import_jobs_table
    from .domain.imports.queue import ensure_import_tasks_table

    ensure_import_jobs_table()
    ensure_import_tasks_table()
    ensure_imported_records_table()
    logger.info("import_jobs, import_tasks and imported_records tables ready")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        return

    try:
        init_tables()
    except Exception:
        logger.exception("Failed to initialize database tables; the application cannot start")
        raise

    pool = None
    if settings.import_embedded_worker:
        from .domain.imports.worker import ImportWorkerPool

        pool = ImportWorkerPool()
        threading.Thread(target=pool.run_forever, name="import-worker-loop", daemon=True).start()

    yield  # Application runs here

    if pool is not None:
        pool.stop(wait=False)


app = FastAPI(
    title="Bulk Import Engine API",
    version="1.0.0",
    description="Resumable, chunked imports of CSV and XLSX spreadsheets with deduplication",
    lifespan=lifespan,
)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(uploads.router)
app.include_router(jobs.router)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}
