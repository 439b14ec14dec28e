"""Health check and log viewer endpoints."""

from pathlib import Path

from fastapi import APIRouter, Query
from fastapi.responses import PlainTextResponse

from app.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "test-remediation-service"}


@router.get("/logs", response_class=PlainTextResponse)
async def get_logs(
    tail: int = Query(200, ge=1, le=5000, description="Number of lines from the end"),
):
    """Return the last *tail* lines from the application log file."""
    log_path = Path(settings.LOG_FILE)
    if not log_path.exists():
        return "No log file found yet. Start a healing session first."

    lines = log_path.read_text(encoding="utf-8", errors="replace").splitlines()
    return "\n".join(lines[-tail:])
