from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from repo_scanner.config import settings
from repo_scanner.api.routes import reports, scans
from repo_scanner.core.error_handling.exceptions import ScannerBaseException
from repo_scanner.core.logging.structured_logger import get_logger, logger_manager, EventType
from repo_scanner.core.resilience.token_scheduler import get_token_scheduler, init_token_scheduler
from repo_scanner.core.scanner.jobs import scan_job_manager
from repo_scanner.database import init_db, session_scope

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger_manager.set_default_level(settings.log_level)
    init_db()
    init_token_scheduler()
    logger.info("Repository scanner API started", event_type=EventType.SYSTEM_EVENT)
    yield
    await scan_job_manager.shutdown()
    logger.info("Repository scanner API stopped", event_type=EventType.SYSTEM_EVENT)


app = FastAPI(
    title="Repository Security Scanner",
    description="Rate-limited, resumable security analysis of repository files",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.backend_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(scans.router, tags=["scans"])
app.include_router(reports.router, tags=["reports"])


@app.get("/")
async def root():
    return {"message": "Repository Security Scanner API", "status": "running"}


@app.get("/health")
async def health_check():
    """Database reachability plus scan job and token budget state"""
    database_status = "healthy"
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))
    except ScannerBaseException as e:
        logger.warning(f"Database health check failed: {e}", event_type=EventType.SYSTEM_EVENT)
        database_status = "unhealthy"

    scheduler = get_token_scheduler()
    return {
        "status": "healthy" if database_status == "healthy" else "degraded",
        "version": "1.0.0",
        "database": database_status,
        "running_scans": len(scan_job_manager.running_reports()),
        "tokens_used": scheduler.tokens_used,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/health/scheduler")
async def scheduler_metrics():
    """Token budget scheduler configuration and counters"""
    return {
        **get_token_scheduler().get_metrics(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.exception_handler(ScannerBaseException)
async def scanner_exception_handler(request: Request, exc: ScannerBaseException):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}", error=exc, event_type=EventType.ERROR_OCCURRED)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error occurred"}
    )


__all__ = ['app']
