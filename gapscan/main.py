"""
Main FastAPI application for the GapScan backend.
Handles CORS, request logging middleware, lifespan events, and router registration.
"""
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gapscan.config import settings
from gapscan.database import close_db, init_db
from gapscan.routers import gaps, health

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Startup / shutdown helpers
# ---------------------------------------------------------------------------

async def _check_database() -> bool:
    """Initialise DB tables and verify the connection.  Returns True on success."""
    try:
        await init_db()
        logger.info("✓ Database connection OK")
        return True
    except Exception as exc:
        logger.error("✗ Database connection failed: %s", exc)
        raise


async def _check_embedding_store() -> bool:
    """Log whether the embedding index exists.  Never raises."""
    analyzer = gaps.get_gap_analyzer()
    try:
        available = await analyzer.embedding_store.is_available()
    except Exception as exc:
        logger.error("✗ Embedding store check failed: %s", exc)
        return False
    if not available:
        logger.warning(
            "⚠ No embedding index in %s; analysis requests will fail until it is generated",
            os.path.abspath(settings.EMBEDDINGS_DIR),
        )
        return False
    count = await analyzer.embedding_store.get_embedding_count()
    logger.info("✓ Embedding index: %d notes in %s", count, os.path.abspath(settings.EMBEDDINGS_DIR))
    return True


def _log_suggestion_provider() -> None:
    analyzer = gaps.get_gap_analyzer()
    if analyzer.suggestions is None:
        logger.info("  LLM suggestions disabled (LLM_ENABLED=%s, provider=%s)",
                    settings.LLM_ENABLED, settings.LLM_PROVIDER)
    else:
        logger.info("✓ LLM suggestions via %s", settings.LLM_PROVIDER)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown event handler."""
    logger.info("=" * 60)
    logger.info("  Starting GapScan backend …")
    logger.info("=" * 60)

    # 1 - Database (required; raises on failure)
    await _check_database()

    # 2 - Embedding index and vault (optional; logs warnings but continues)
    await _check_embedding_store()
    logger.info("  Vault directory: %s", os.path.abspath(settings.VAULT_DIR))

    # 3 - Suggestion provider
    _log_suggestion_provider()

    logger.info("=" * 60)
    logger.info("  GapScan backend ready on http://%s:%d", settings.HOST, settings.PORT)
    logger.info("  Swagger UI : http://%s:%d/docs", settings.HOST, settings.PORT)
    logger.info("  Health     : http://%s:%d/api/health", settings.HOST, settings.PORT)
    logger.info("=" * 60)

    yield  # ← server is running

    logger.info("Shutting down GapScan backend …")
    await close_db()
    logger.info("✓ Shutdown complete.")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="GapScan API",
    description=(
        "**GapScan** finds knowledge gaps in a note vault.\n\n"
        "Clusters precomputed note embeddings to locate sparse regions and "
        "scans wiki-links for concepts that are referenced but never written "
        "up, then merges both into a prioritised gap report.\n\n"
        "Key endpoints:\n"
        "- `POST /api/gaps/analyze` start a background analysis\n"
        "- `GET  /api/gaps/status` poll its progress\n"
        "- `GET  /api/gaps/report` latest gap report\n"
        "- `GET  /api/gaps/report/compare` what changed since the previous run\n"
    ),
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / response logging middleware
# ---------------------------------------------------------------------------

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Log every request with method, path, status code, and elapsed time.
    Attaches an ``X-Process-Time`` header (milliseconds) to every response.
    """
    t0 = time.monotonic()
    response = await call_next(request)
    elapsed_ms = round((time.monotonic() - t0) * 1000, 2)

    # Skip noisy status polling
    if request.url.path not in ("/api/health/", "/api/gaps/status", "/"):
        logger.info(
            "%s %s → %d  (%.2f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )

    response.headers["X-Process-Time"] = f"{elapsed_ms}ms"
    return response


# ---------------------------------------------------------------------------
# Global exception handler
# ---------------------------------------------------------------------------

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a structured JSON error for any unhandled exception."""
    logger.error(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "path": str(request.url.path),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(health.router, prefix="/api/health", tags=["Health"])
app.include_router(gaps.router,   prefix="/api/gaps",   tags=["Gaps"])


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

@app.get("/", tags=["Root"], include_in_schema=False)
async def root():
    """API root: returns basic service info."""
    return {
        "name": "GapScan API",
        "version": VERSION,
        "description": "Knowledge gap detection for note vaults",
        "docs": "/docs",
        "health": "/api/health",
        "endpoints": {
            "analyze": "/api/gaps/analyze",
            "status": "/api/gaps/status",
            "report": "/api/gaps/report",
            "summary": "/api/gaps/report/summary",
            "compare": "/api/gaps/report/compare",
        },
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gapscan.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=True,
        log_level="info",
    )
