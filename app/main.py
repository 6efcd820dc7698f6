"""
Main FastAPI application for the LitGap backend.
Handles CORS, request logging middleware, lifespan events, and router registration.
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import close_db, init_db
from app.dependencies.services import build_container
from app.routers import health, progress, projects

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Startup / shutdown helpers
# ---------------------------------------------------------------------------

def _model_available(model: str, available: list) -> bool:
    # Partial match so "nomic-embed-text:latest" still matches
    return any(m == model or m.startswith(model.split(":")[0]) for m in available)


async def _check_ollama() -> bool:
    """
    Report whether Ollama and the configured models are available.
    Never raises: the analysis services fall back to rule-based output.
    """
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(f"{settings.OLLAMA_BASE_URL}/api/tags")
    except httpx.HTTPError as exc:
        logger.warning("✗ Ollama unreachable (%s); analyses will use fallback paths", exc)
        return False

    if resp.status_code != 200:
        logger.warning("⚠ Ollama responded with status %d", resp.status_code)
        return False

    try:
        available = [m.get("name", "") for m in resp.json().get("models", [])]
    except ValueError:
        logger.warning("⚠ Ollama returned an unreadable model list")
        return False
    logger.info("✓ Ollama reachable, available models: %s", available)
    for label, model in (("Embedding", settings.OLLAMA_EMBED_MODEL), ("Completion", settings.OLLAMA_LLM_MODEL)):
        if _model_available(model, available):
            logger.info("  ✓ %s model '%s' is available", label, model)
        else:
            logger.warning("  ⚠ %s model '%s' not found, run: ollama pull %s", label, model, model)
    return True


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown event handler."""
    logger.info("Starting LitGap backend ...")

    # Database is required; init_db raises on failure
    await init_db()
    logger.info("✓ Database connection OK")

    await _check_ollama()

    if getattr(app.state, "services", None) is None:
        app.state.services = build_container()

    logger.info("LitGap backend ready on http://%s:%d (docs at /docs)", settings.HOST, settings.PORT)

    yield

    logger.info("Shutting down LitGap backend ...")
    await app.state.services.store.wait_idle()
    await close_db()
    logger.info("✓ Shutdown complete.")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="LitGap API",
    description=(
        "**LitGap**: literature synthesis and research-gap discovery.\n\n"
        "Key endpoints:\n"
        "- `POST /api/projects/{id}/gap-analysis`: ranked research gaps\n"
        "- `POST /api/projects/{id}/organization`: themes, methodologies, timeline\n"
        "- `POST /api/projects/{id}/organization/reorganize`: manual changes\n"
        "- `POST /api/projects/organization/search`: filter organized sources\n"
        "- `POST /api/progress/question`: research question maturity\n"
    ),
    version="0.1.0",
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

    # Skip health-check polling
    if not request.url.path.startswith("/api/health") and request.url.path != "/":
        logger.info(
            "%s %s -> %d  (%.2f ms)",
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

app.include_router(health.router,   prefix="/api/health",   tags=["Health"])
app.include_router(projects.router, prefix="/api/projects", tags=["Projects"])
app.include_router(progress.router, prefix="/api/progress", tags=["Progress"])


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

@app.get("/", tags=["Root"], include_in_schema=False)
async def root():
    """API root: basic service info."""
    return {
        "name": "LitGap API",
        "version": "0.1.0",
        "description": "Literature synthesis and gap-opportunity engine",
        "docs": "/docs",
        "health": "/api/health",
        "endpoints": {
            "projects": "/api/projects",
            "progress": "/api/progress",
        },
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=True,
        log_level="info",
    )
