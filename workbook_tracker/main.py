import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from workbook_tracker.core import session_cache
from workbook_tracker.core.config import settings
from workbook_tracker.core.errors import TrackerError
from workbook_tracker.core.security import get_store
from workbook_tracker.db.store import PROFILES, RecordStore
from workbook_tracker.modules.chapters.router import router as chapters_router
from workbook_tracker.modules.sessions.router import router as sessions_router
from workbook_tracker.modules.sheets.router import router as sheets_router
from workbook_tracker.modules.workbooks.router import router as workbooks_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Cancel every autosave timer still armed when the process stops
    for session in session_cache.clear():
        await session.close()


app = FastAPI(
    title="Workbook Tracker",
    description="Problem-set templates, per-student marks, chapters and distribution",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for development
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    t0 = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - t0) * 1000
    logger.info("%s %s status=%d time=%.1fms", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "error": exc.code})


# Root route (test)
@app.get("/")
def root():
    return {"message": "Workbook Tracker"}


# Health check route
@app.get("/health")
async def health_check(store: RecordStore = Depends(get_store)):
    """Check if the service and record store are healthy"""
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        await store.select(PROFILES, limit=1)
        return {"status": "healthy", "database": "connected", "timestamp": timestamp}
    except TrackerError as e:
        return {"status": "unhealthy", "database": f"error: {e.detail}", "timestamp": timestamp}


# Include routers
app.include_router(workbooks_router, prefix="/workbooks", tags=["Workbooks"])
app.include_router(sheets_router, prefix="/sheets", tags=["Grade Sheets"])
app.include_router(chapters_router, prefix="/chapters", tags=["Chapters"])
app.include_router(sessions_router, prefix="/sessions", tags=["Editor Sessions"])
