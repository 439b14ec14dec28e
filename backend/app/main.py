"""FastAPI application entry point.

    uvicorn app.main:app --app-dir backend
"""

import logging
import sys
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.errors import InvariantViolation

from app.config import settings
from app.routes import healing, health

# ── Logging configuration ────────────────────────────────────────────

def _configure_logging() -> None:
    """Root logger: console at LOG_LEVEL, file at DEBUG when APP_DEBUG is on."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    log_path = Path(settings.LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(log_level)
    console.setFormatter(fmt)

    # Append mode so session history survives restarts
    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG if settings.APP_DEBUG else log_level)
    file_handler.setFormatter(fmt)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()  # uvicorn --reload re-imports this module
    root.addHandler(console)
    root.addHandler(file_handler)

    for noisy in ("httpcore", "httpx", "urllib3", "asyncio", "watchfiles", "docker", "langgraph"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


_configure_logging()
_logger = logging.getLogger(__name__)

# ── FastAPI application ──────────────────────────────────────────────

app = FastAPI(
    title="Test Remediation Service",
    description="Extracts test failures from logs, generates and verifies patches, and heals sandboxed projects.",
    version="0.1.0",
    debug=settings.APP_DEBUG,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    _logger.error("Report invariant broken on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": f"Internal report error: {exc}"})


# ── Routes ───────────────────────────────────────────────────────────
app.include_router(health.router, tags=["health"])

# POST /heal, /heal/sessions…, /sandboxes/{id}/commit|rollback
app.include_router(healing.router, tags=["healing"])


@app.on_event("startup")
async def startup_event():
    _logger.info(
        "Starting Test Remediation Service | env=%s | model=%s | max_iterations=%d | log_file=%s",
        settings.APP_ENV, settings.GEMINI_MODEL, settings.HEAL_MAX_ITERATIONS, settings.LOG_FILE,
    )
    if not settings.GEMINI_API_KEY:
        _logger.warning("GEMINI_API_KEY is not set — extraction will fall back to the log scanner")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.BACKEND_HOST, port=settings.BACKEND_PORT)
