"""Healing endpoints.

POST /heal                            – one pipeline pass over raw logs
POST /heal/sessions                   – start a healing loop, returns session_id immediately
GET  /heal/sessions                   – list all sessions
GET  /heal/sessions/{session_id}      – JSON snapshot of a session
POST /heal/sessions/{session_id}/cancel
POST /sandboxes/{container_id}/commit
POST /sandboxes/{container_id}/rollback
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from remediation.healing_loop import HealingLoopController, SandboxLeases
from remediation.patch_engine import PatchApplicationEngine
from remediation.pipeline import RemediationPipeline
from sandbox.validation import validate_shell_value
from shared.errors import (
    CollaboratorUnavailableError,
    InputValidationError,
    InvariantViolation,
    RemediationError,
    SandboxBusyError,
)
from shared.reporting import render_report

from app.config import settings
from app.orchestrator import build_engine, build_pipeline, execute_session, get_leases
from app.store import SessionState, all_sessions, create_session, get_session

router = APIRouter()
logger = logging.getLogger(__name__)

# Keep strong references so background tasks aren't garbage-collected.
_background_tasks: dict[str, asyncio.Task] = {}


def _handle_task_done(task: asyncio.Task, session_id: str, state: SessionState) -> None:
    """Callback invoked when a session task finishes (success or crash)."""
    _background_tasks.pop(session_id, None)
    if task.cancelled():
        state.fail("Session task was cancelled")
    elif exc := task.exception():
        logger.exception("Session %s crashed: %s", session_id, exc)
        state.fail(f"Unhandled error: {exc}")


def _http_error(exc: RemediationError) -> HTTPException:
    if isinstance(exc, InputValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, SandboxBusyError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, CollaboratorUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


# ── Request / Response schemas ───────────────────────────────────────

class HealRequest(BaseModel):
    logs: str
    format: Literal["json", "markdown", "summary"] = "json"


class SessionRequest(BaseModel):
    logs: str
    container_id: str
    work_dir: str = "/app"
    test_command: str | None = None
    max_iterations: int | None = Field(default=None, ge=1)
    commit_message: str | None = None


class SessionResponse(BaseModel):
    session_id: str
    status: str
    message: str


class CommitRequest(BaseModel):
    work_dir: str = "/app"
    message: str


class RollbackRequest(BaseModel):
    work_dir: str = "/app"


# ── POST /heal ───────────────────────────────────────────────────────

@router.post("/heal")
async def heal(
    request: HealRequest,
    pipeline: RemediationPipeline = Depends(build_pipeline),
):
    """Run Extract → Classify → Patch → Verify once and return the report."""
    try:
        report, stats = await pipeline.run_with_statistics(request.logs)
    except InvariantViolation:
        raise
    except RemediationError as exc:
        raise _http_error(exc) from exc

    return {
        "statistics": stats,
        "format": request.format,
        "report": render_report(report, request.format),
    }


# ── Sessions ─────────────────────────────────────────────────────────

@router.post("/heal/sessions", response_model=SessionResponse)
async def start_session(
    request: SessionRequest,
    pipeline: RemediationPipeline = Depends(build_pipeline),
    engine: PatchApplicationEngine = Depends(build_engine),
    leases: SandboxLeases = Depends(get_leases),
):
    """Validate, create a session, launch the loop in the background and
    return the session_id immediately."""
    try:
        container_id = validate_shell_value(request.container_id, "container id")
        work_dir = validate_shell_value(request.work_dir, "work dir")
        if not request.logs.strip():
            raise InputValidationError("No test logs provided")
        if leases.is_held(container_id):
            raise SandboxBusyError(container_id)
        test_command = request.test_command or await engine.detect_test_command(container_id, work_dir)
    except RemediationError as exc:
        raise _http_error(exc) from exc

    session_id = uuid.uuid4().hex[:12]
    state = create_session(
        session_id=session_id,
        container_id=container_id,
        work_dir=work_dir,
        test_command=test_command,
        max_iterations=request.max_iterations or settings.HEAL_MAX_ITERATIONS,
    )

    controller = HealingLoopController(pipeline, engine, leases)
    task = asyncio.create_task(
        execute_session(state, controller, request.logs, request.commit_message),
        name=f"session-{session_id}",
    )
    _background_tasks[session_id] = task
    task.add_done_callback(lambda t: _handle_task_done(t, session_id, state))

    return SessionResponse(
        session_id=session_id,
        status="queued",
        message=f"Healing queued for container {container_id} ({test_command})",
    )


@router.get("/heal/sessions")
async def list_sessions():
    return all_sessions()


@router.get("/heal/sessions/{session_id}")
async def get_session_status(session_id: str):
    state = get_session(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return state.to_dict()


@router.post("/heal/sessions/{session_id}/cancel")
async def cancel_session(session_id: str):
    """Ask the loop to stop; it exits at the next iteration boundary."""
    state = get_session(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    state.request_cancel()
    return {"session_id": session_id, "cancel_requested": True, "status": state.status}


# ── Sandbox version control ──────────────────────────────────────────

@router.post("/sandboxes/{container_id}/commit")
async def commit_sandbox(
    container_id: str,
    request: CommitRequest,
    engine: PatchApplicationEngine = Depends(build_engine),
    leases: SandboxLeases = Depends(get_leases),
):
    try:
        container_id = validate_shell_value(container_id, "container id")
        with leases.hold(container_id):
            result = await engine.commit(container_id, request.work_dir, request.message)
    except RemediationError as exc:
        raise _http_error(exc) from exc
    return {"container_id": container_id, "committed": result.success, "result": result.to_dict()}


@router.post("/sandboxes/{container_id}/rollback")
async def rollback_sandbox(
    container_id: str,
    request: RollbackRequest,
    engine: PatchApplicationEngine = Depends(build_engine),
    leases: SandboxLeases = Depends(get_leases),
):
    try:
        container_id = validate_shell_value(container_id, "container id")
        with leases.hold(container_id):
            result = await engine.rollback(container_id, request.work_dir)
    except RemediationError as exc:
        raise _http_error(exc) from exc
    return {"container_id": container_id, "rolled_back": result.success, "result": result.to_dict()}
