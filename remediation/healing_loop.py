"""Healing Loop – repeats pipeline → apply → re-test on one sandbox.

Each iteration:

    1. run the remediation pipeline on the current logs
    2. no approved fixes          → NO_FIXES_AVAILABLE (nothing applied)
    3. apply fixes, re-run tests, record the commit/rollback recommendation
    4. tests pass                 → SUCCESS
    5. budget spent               → EXHAUSTED
    6. otherwise adopt the new test output as the logs and go again

Cancellation is only observed between iterations, so a sandbox mutation
is never interrupted halfway.  Any error inside an iteration ends the
session as ERROR with the iterations recorded so far.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator

from remediation.patch_engine import PatchApplicationEngine
from remediation.pipeline import RemediationPipeline
from sandbox.validation import validate_shell_value
from shared.errors import InputValidationError, RemediationError, SandboxBusyError
from shared.schemas import HealingIteration, HealingSession, SessionOutcome

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 5

# Type for optional progress callback: (stage, status, message)
ProgressCallback = Callable[[str, str, str], None] | None


class SandboxLeases:
    """At most one healing cycle per container at a time."""

    def __init__(self) -> None:
        self._held: set[str] = set()

    def is_held(self, container_id: str) -> bool:
        return container_id in self._held

    @contextmanager
    def hold(self, container_id: str) -> Iterator[None]:
        if container_id in self._held:
            raise SandboxBusyError(container_id)
        self._held.add(container_id)
        try:
            yield
        finally:
            self._held.discard(container_id)


class HealingLoopController:
    """Drives bounded healing iterations against a single sandbox."""

    def __init__(
        self,
        pipeline: RemediationPipeline,
        engine: PatchApplicationEngine,
        leases: SandboxLeases | None = None,
    ):
        self.pipeline = pipeline
        self.engine = engine
        self.leases = leases or SandboxLeases()

    async def run(
        self,
        initial_logs: str,
        container_id: str,
        work_dir: str,
        test_command: str,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressCallback = None,
        commit_message: str | None = None,
        session_id: str | None = None,
    ) -> HealingSession:
        """Run the loop until success, exhaustion, no fixes, error or cancel.

        Args:
            initial_logs:    Test output that starts the first iteration.
            container_id:    Sandbox container to heal.
            work_dir:        Project directory inside the container.
            test_command:    Command whose exit code decides success.
            max_iterations:  Iteration budget (>= 1).
            cancel_event:    Checked at the start of every iteration.
            on_progress:     Optional callback(stage, status, message).
            commit_message:  When set, commit the working tree on success.
            session_id:      Identifier to report; generated when omitted.

        Raises:
            InputValidationError: for unsafe or missing inputs.
            SandboxBusyError: if the container already has a session.
        """
        container_id = validate_shell_value(container_id, "container id")
        work_dir = validate_shell_value(work_dir, "work dir")
        if not isinstance(initial_logs, str) or not initial_logs.strip():
            raise InputValidationError("No test logs provided")
        if not test_command or not test_command.strip():
            raise InputValidationError("Test command is required")
        if max_iterations < 1:
            raise InputValidationError("max_iterations must be at least 1")

        session_id = session_id or uuid.uuid4().hex[:12]

        with self.leases.hold(container_id):
            iterations, outcome, error = await self._iterate(
                initial_logs, container_id, work_dir, test_command,
                max_iterations, cancel_event, on_progress,
            )

            committed = False
            if outcome is SessionOutcome.SUCCESS and commit_message:
                try:
                    committed = (await self.engine.commit(container_id, work_dir, commit_message)).success
                except Exception as exc:
                    logger.warning("[HealLoop] Commit after success failed: %s", exc)

        session = HealingSession(
            session_id=session_id,
            container_id=container_id,
            max_iterations=max_iterations,
            outcome=outcome,
            iterations=tuple(iterations),
            error=error,
            committed=committed,
        )
        logger.info(
            "[HealLoop] Session %s finished: %s after %d/%d iteration(s)",
            session_id, outcome.value, session.iterations_used, max_iterations,
        )
        _emit(
            on_progress, "heal_loop", "completed",
            f"Healing {outcome.value}: {session.iterations_used} iteration(s) used.",
        )
        return session

    async def _iterate(
        self,
        logs: str,
        container_id: str,
        work_dir: str,
        test_command: str,
        max_iterations: int,
        cancel_event: asyncio.Event | None,
        on_progress: ProgressCallback,
    ) -> tuple[list[HealingIteration], SessionOutcome, str]:
        iterations: list[HealingIteration] = []

        for number in range(1, max_iterations + 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("[HealLoop] Cancelled before iteration %d", number)
                return iterations, SessionOutcome.CANCELLED, ""

            logger.info("═══ Healing Loop — iteration %d/%d ═══", number, max_iterations)
            _emit(on_progress, "heal_loop", "running", f"Starting iteration {number}/{max_iterations}")

            try:
                _emit(on_progress, "pipeline", "started", f"[iter {number}] Analysing logs…")
                report = await self.pipeline.run(logs)
                _emit(
                    on_progress, "pipeline", "completed",
                    f"[iter {number}] {len(report.failures)} failure(s), "
                    f"{len(report.final_fixes)} approved fix(es)",
                )

                if not report.final_fixes:
                    logger.info("[HealLoop] No approved fixes — stopping.")
                    iterations.append(HealingIteration(number=number, report=report))
                    return iterations, SessionOutcome.NO_FIXES_AVAILABLE, ""

                _emit(on_progress, "patch_engine", "started", f"[iter {number}] Applying fixes…")
                applied = await self.engine.apply_and_verify(
                    container_id, work_dir, report.final_fixes, logs, test_command,
                )
                test_outcome = applied.test_outcome
                _emit(
                    on_progress, "patch_engine", "completed",
                    f"[iter {number}] {applied.apply_result.applied_count}/{applied.apply_result.total_count} "
                    f"applied, tests {'passed' if test_outcome.success else 'failed'}; {applied.message}",
                )
            except RemediationError as exc:
                logger.error("[HealLoop] Iteration %d failed: %s", number, exc)
                return iterations, SessionOutcome.ERROR, str(exc)
            except Exception as exc:
                logger.exception("[HealLoop] Iteration %d crashed", number)
                return iterations, SessionOutcome.ERROR, f"Unexpected error: {exc}"

            iterations.append(HealingIteration(
                number=number,
                report=report,
                apply_result=applied.apply_result,
                test_outcome=test_outcome,
                comparison=applied.comparison,
                recommendation=applied.recommendation,
            ))

            if test_outcome.success:
                logger.info("[HealLoop] Tests pass after iteration %d — healed!", number)
                return iterations, SessionOutcome.SUCCESS, ""

            # A silent failing run leaves nothing to analyse; keep the last logs.
            if test_outcome.output.strip():
                logs = test_outcome.output

        return iterations, SessionOutcome.EXHAUSTED, ""


def _emit(
    callback: ProgressCallback,
    stage: str,
    status: str,
    message: str,
) -> None:
    """Fire the progress callback if set."""
    if callback is not None:
        try:
            callback(stage, status, message)
        except Exception:
            logger.warning("[HealLoop] Progress callback failed", exc_info=True)
