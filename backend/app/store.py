"""In-memory session store for tracking healing loop executions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SessionState:
    """Tracks the live state of a single healing session."""

    session_id: str
    container_id: str
    work_dir: str
    test_command: str
    max_iterations: int
    status: str = "queued"  # queued | running | completed | failed
    current_stage: str = ""
    latest_message: str = ""
    progress: list[dict[str, Any]] = field(default_factory=list)
    result: dict[str, Any] | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    # Observed by the healing loop at the start of every iteration
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def push_progress(self, stage: str, status: str, message: str = "") -> None:
        self.current_stage = stage
        self.status = "running"
        if message:
            self.latest_message = message
        self.updated_at = _utcnow_iso()
        self.progress.append(
            {
                "stage": stage,
                "status": status,
                "message": message,
                "timestamp": self.updated_at,
            }
        )

    def request_cancel(self) -> None:
        self.cancel_event.set()
        self.updated_at = _utcnow_iso()

    def complete(self, result: dict[str, Any]) -> None:
        self.status = "completed"
        self.result = result
        self.updated_at = _utcnow_iso()

    def fail(self, error: str) -> None:
        self.status = "failed"
        self.updated_at = _utcnow_iso()
        self.progress.append(
            {"stage": self.current_stage, "status": "error", "message": error, "timestamp": self.updated_at}
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "container_id": self.container_id,
            "work_dir": self.work_dir,
            "test_command": self.test_command,
            "max_iterations": self.max_iterations,
            "status": self.status,
            "cancel_requested": self.cancel_event.is_set(),
            "current_stage": self.current_stage,
            "latest_message": self.latest_message,
            "progress": self.progress,
            "result": self.result,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ── Global in-memory store ──────────────────────────────────────────
_sessions: dict[str, SessionState] = {}


def create_session(
    session_id: str,
    container_id: str,
    work_dir: str,
    test_command: str,
    max_iterations: int,
) -> SessionState:
    state = SessionState(
        session_id=session_id,
        container_id=container_id,
        work_dir=work_dir,
        test_command=test_command,
        max_iterations=max_iterations,
    )
    _sessions[session_id] = state
    return state


def get_session(session_id: str) -> SessionState | None:
    return _sessions.get(session_id)


def all_sessions() -> list[dict[str, Any]]:
    return [s.to_dict() for s in _sessions.values()]
