"""
Quiz Item Ingestion — FastAPI Application Layer

Endpoints:
  1. POST /items/bulk — Bulk item ingestion with duplicate detection
  2. POST /items      — Single item ingestion
  3. GET  /health     — Health check

Auth: API key header → (user id, admin flag). Batch-size limits live here,
not in the orchestrator.
"""
from __future__ import annotations
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from audit import LoggingAuditSink, RepositoryAuditSink
from config import Settings, get_settings
from ingestion_orchestrator import (
    BULK_CREATE_CANCELLED, BulkIngestionOrchestrator, IngestionConfig,
)
from logging_config import configure_logging
from models import (
    AddItemRequest, AddItemResponse, BulkIngestReport, BulkIngestRequest,
    HealthResponse, ItemStatus,
)
from repository import InMemoryRepository, ItemRepository

logger = logging.getLogger(__name__)

# ============================================================
# Application State (shared singletons)
# ============================================================

class AppState:
    """Holds all shared service instances."""
    settings: Settings
    repo: ItemRepository
    ingestion: BulkIngestionOrchestrator
    start_time: float
    request_count: int = 0

    def __init__(self):
        self.start_time = time.monotonic()
        self.request_count = 0
        self.db = None


_state = AppState()


def build_orchestrator(repo: ItemRepository, settings: Settings) -> BulkIngestionOrchestrator:
    audit = RepositoryAuditSink(repo) if settings.use_database else LoggingAuditSink()
    return BulkIngestionOrchestrator(
        repo,
        IngestionConfig(hamming_threshold=settings.duplicate_hamming_threshold),
        audit,
    )


# ============================================================
# Lifespan: Startup / Shutdown
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup, cleanup on shutdown."""
    settings = get_settings()
    configure_logging(settings)
    _state.settings = settings
    logger.info(f"Starting {settings.app_name}...")

    if settings.use_database:
        from asyncpg_repository import open_repository

        _state.db, repo = await open_repository(settings)
    else:
        repo = InMemoryRepository()
    _state.repo = repo
    _state.ingestion = build_orchestrator(repo, settings)

    logger.info(f"System ready. Environment: {settings.environment}")
    yield

    logger.info(f"Shutting down {settings.app_name}...")
    if _state.db is not None:
        await _state.db.close()
        _state.db = None


# ============================================================
# Auth & Dependencies
# ============================================================

class AuthContext(BaseModel):
    user_id: str
    is_admin: bool
    api_key: str


async def get_auth(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> AuthContext:
    """Validate API key and return auth context."""
    settings = _state.settings
    if not x_api_key:
        raise HTTPException(401, "Missing X-API-Key header")

    user = settings.api_key_map.get(x_api_key)
    if not user:
        raise HTTPException(403, "Invalid API key")

    user_id, is_admin = user
    return AuthContext(user_id=user_id, is_admin=is_admin, api_key=x_api_key)


# ============================================================
# FastAPI App
# ============================================================

app = FastAPI(
    title="Quiz Item Ingestion API",
    description="Bulk ingestion of quiz items with near-duplicate detection "
                "and race-safe category/keyword resolution.",
    version="1.0.0",
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    start = time.monotonic()
    _state.request_count += 1
    response = await call_next(request)
    elapsed = int((time.monotonic() - start) * 1000)
    response.headers["X-Response-Time-Ms"] = str(elapsed)
    return response


def _problem(status: int, code: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"title": code, "status": status, "detail": detail},
        media_type="application/problem+json",
    )


# ============================================================
# 1. POST /items/bulk — Bulk Ingestion
# ============================================================

@app.post("/items/bulk", response_model=BulkIngestReport, tags=["Items"])
async def add_items_bulk(
    request: BulkIngestRequest,
    auth: AuthContext = Depends(get_auth),
):
    """
    Create many items in one request. Each item names its own category;
    isPrivate applies to all items. Duplicates and per-item failures are
    reported, not raised.
    """
    max_items = _state.settings.max_bulk_items(auth.is_admin)
    if not request.items:
        raise HTTPException(400, "At least one item is required")
    if len(request.items) > max_items:
        raise HTTPException(400, f"Cannot create more than {max_items} items at once")

    outcome = await _state.ingestion.ingest(auth.user_id, auth.is_admin, request)
    if outcome.failure is not None:
        status = 503 if outcome.failure.code == BULK_CREATE_CANCELLED else 500
        return _problem(status, outcome.failure.code, outcome.failure.message)

    report = outcome.report
    logger.info(
        f"[items/bulk] user={auth.user_id} created={report.created_count} "
        f"duplicates={report.duplicate_count} failed={report.failed_count}")
    return report


# ============================================================
# 2. POST /items — Single Item
# ============================================================

@app.post("/items", response_model=AddItemResponse, tags=["Items"])
async def add_item(
    request: AddItemRequest,
    auth: AuthContext = Depends(get_auth),
):
    """Create one item. A duplicate returns 409, a rejected item 400."""
    item_outcome, failure = await _state.ingestion.ingest_one(
        auth.user_id, auth.is_admin, request)
    if failure is not None:
        status = 503 if failure.code == BULK_CREATE_CANCELLED else 500
        return _problem(status, failure.code, failure.message)

    if item_outcome.status is ItemStatus.DUPLICATE:
        return JSONResponse(
            status_code=409,
            content=AddItemResponse(
                status=ItemStatus.DUPLICATE,
                item_id=item_outcome.duplicate_of.matched_item_id,
                message=f"Duplicate of: {item_outcome.duplicate_of.matched_question}",
            ).model_dump(mode="json", by_alias=True),
        )
    if item_outcome.status is ItemStatus.FAILED:
        raise HTTPException(400, item_outcome.message)

    return AddItemResponse(status=ItemStatus.CREATED, item_id=item_outcome.item.id)


# ============================================================
# 3. GET /health — Health Check
# ============================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """System health check."""
    uptime = int(time.monotonic() - _state.start_time)
    repo_health = await _state.repo.health_check()
    status = "healthy" if repo_health.get("status") == "healthy" else "degraded"

    return HealthResponse(
        status=status,
        components={
            "repository": repo_health,
            "ingestion": {"status": "healthy", "requests": _state.request_count},
        },
        version=_state.settings.version,
        uptime_seconds=uptime,
    )


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
