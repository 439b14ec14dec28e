"""Background orchestrator – wires components from settings and drives sessions.

Workflow for one healing session:
  1. Build the pipeline (4 stages sharing one inference client)
  2. Build the patch engine against the Docker sandbox
  3. Run the healing loop, mirroring progress into the session store
"""

from __future__ import annotations

import logging
import sys
import time
from pathlib import Path

_MONOREPO_ROOT = Path(__file__).resolve().parents[2]
if str(_MONOREPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_MONOREPO_ROOT))

from remediation.healing_loop import HealingLoopController, SandboxLeases
from remediation.inference import GeminiClient
from remediation.patch_engine import PatchApplicationEngine
from remediation.pipeline import RemediationPipeline
from sandbox.executor import DockerSandbox
from shared.errors import RemediationError

from app.config import settings
from app.store import SessionState

logger = logging.getLogger(__name__)

# One lease table for the whole process: at most one cycle per sandbox.
_leases = SandboxLeases()


def get_leases() -> SandboxLeases:
    return _leases


def build_pipeline() -> RemediationPipeline:
    inference = GeminiClient(
        api_key=settings.GEMINI_API_KEY,
        model=settings.GEMINI_MODEL,
        api_base=settings.GEMINI_API_BASE,
        timeout=settings.INFERENCE_TIMEOUT,
    )
    return RemediationPipeline.from_inference(
        inference,
        timeout=settings.INFERENCE_TIMEOUT,
        max_concurrency=settings.STAGE_MAX_CONCURRENCY or None,
    )


def build_engine() -> PatchApplicationEngine:
    return PatchApplicationEngine(
        DockerSandbox(timeout=settings.SANDBOX_COMMAND_TIMEOUT),
        command_timeout=settings.SANDBOX_COMMAND_TIMEOUT,
        test_timeout=settings.SANDBOX_TEST_TIMEOUT,
    )


async def execute_session(
    state: SessionState,
    controller: HealingLoopController,
    initial_logs: str,
    commit_message: str | None = None,
) -> None:
    """Run one healing session, updating *state* as we go."""
    started = time.monotonic()
    state.push_progress("heal_loop", "started", f"Healing {state.container_id}…")

    try:
        session = await controller.run(
            initial_logs,
            state.container_id,
            state.work_dir,
            state.test_command,
            max_iterations=state.max_iterations,
            cancel_event=state.cancel_event,
            on_progress=state.push_progress,
            commit_message=commit_message,
            session_id=state.session_id,
        )
    except RemediationError as exc:
        logger.error("Session %s rejected: %s", state.session_id, exc)
        state.fail(str(exc))
        return

    result = session.to_dict()
    result["runtime_seconds"] = round(time.monotonic() - started, 2)
    state.complete(result)
    logger.info(
        "Session %s %s in %.1fs", state.session_id, session.outcome.value, result["runtime_seconds"],
    )
