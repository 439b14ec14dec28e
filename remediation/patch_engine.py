"""Patch Application Engine – applies approved fixes inside the sandbox.

Applies patches one at a time, in generation order (two patches may
touch the same file), re-runs the test command, and compares the
before/after failure signal:

  • Substitution  → global find/replace in the failure's source file
  • ShellCommand  → literal command in the sandbox working directory
  • ManualReview  → never applied

A patch that cannot be applied is recorded and the batch continues.
Commit and rollback are explicit operations; nothing is rolled back
automatically.
"""

from __future__ import annotations

import json
import logging
import posixpath
import re
import shlex
from dataclasses import dataclass
from typing import Any, Sequence

from sandbox.executor import CommandResult, SandboxClient
from sandbox.validation import validate_shell_value
from shared.errors import InputValidationError, PatchApplicationError
from shared.schemas import (
    ApplyResult,
    Comparison,
    ManualReview,
    PatchOutcome,
    PatchStatus,
    Recommendation,
    ShellCommand,
    Substitution,
    TestOutcome,
    VerifiedPatch,
)

logger = logging.getLogger(__name__)

# Heuristic failure signal.  Counts raw tokens, so a passing test named
# "should not error" still scores; a misread only costs one extra loop
# iteration.
FAILURE_SIGNAL = re.compile(r"failed|error", re.IGNORECASE)

DEFAULT_TEST_COMMAND = "npm test"
PYTHON_TEST_COMMAND = "python -m pytest"
_PYTHON_PROJECT_FILES = ("pyproject.toml", "setup.py", "setup.cfg", "pytest.ini", "requirements.txt")


def count_failure_signals(output: str) -> int:
    return len(FAILURE_SIGNAL.findall(output or ""))


def compare_outputs(before_output: str, after_output: str) -> Comparison:
    """Before/after comparison; improved iff the after-count is strictly lower."""
    before = count_failure_signals(before_output)
    after = count_failure_signals(after_output)
    return Comparison(
        before_failure_count=before,
        after_failure_count=after,
        improved=after < before,
        delta=before - after,
    )


def resolve_target(work_dir: str, source_file: str) -> str:
    """Absolute, validated path of *source_file* that stays inside *work_dir*."""
    if not source_file or not source_file.strip():
        raise InputValidationError("Patch has no target file")
    candidate = source_file.strip()
    if not posixpath.isabs(candidate):
        candidate = posixpath.join(work_dir, candidate)
    candidate = posixpath.normpath(candidate)
    root = posixpath.normpath(work_dir)
    if candidate != root and not candidate.startswith(root.rstrip("/") + "/"):
        raise InputValidationError(f"Target {source_file!r} is outside {work_dir}")
    return validate_shell_value(candidate, "file path")


@dataclass(frozen=True)
class ApplicationReport:
    """Outcome of apply → re-test → compare."""

    apply_result: ApplyResult
    test_outcome: TestOutcome
    comparison: Comparison
    recommendation: Recommendation
    committed: bool = False

    @property
    def message(self) -> str:
        return self.recommendation.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "apply_result": self.apply_result.to_dict(),
            "test_outcome": self.test_outcome.to_dict(),
            "comparison": self.comparison.to_dict(),
            "recommendation": self.recommendation.value,
            "message": self.message,
            "committed": self.committed,
        }


class PatchApplicationEngine:
    """Applies approved patches to one sandbox and measures the effect."""

    def __init__(
        self,
        sandbox: SandboxClient,
        command_timeout: float | None = 30.0,
        test_timeout: float | None = 300.0,
    ):
        self.sandbox = sandbox
        self.command_timeout = command_timeout
        self.test_timeout = test_timeout

    # ── Apply ────────────────────────────────────────────────────────

    async def apply_patches(
        self,
        container_id: str,
        work_dir: str,
        patches: Sequence[VerifiedPatch],
    ) -> ApplyResult:
        container_id = validate_shell_value(container_id, "container id")
        work_dir = validate_shell_value(work_dir, "work dir")

        logger.info("[PatchEngine] Applying %d fix(es) to container %s…", len(patches), container_id)
        outcomes: list[PatchOutcome] = []
        for patch in patches:
            outcome = await self._apply_one(container_id, work_dir, patch)
            outcomes.append(outcome)
            logger.info(
                "[PatchEngine] %s %s: %s", patch.id, outcome.status.value, outcome.detail,
            )

        applied = sum(1 for o in outcomes if o.status is PatchStatus.APPLIED)
        logger.info("[PatchEngine] Applied %d/%d fixes", applied, len(patches))
        return ApplyResult(applied_count=applied, total_count=len(patches), outcomes=tuple(outcomes))

    async def _apply_one(self, container_id: str, work_dir: str, patch: VerifiedPatch) -> PatchOutcome:
        if not patch.approved:
            return PatchOutcome(patch.id, PatchStatus.FAILED, f"not approved ({patch.status.value})")

        instruction = patch.patch.instruction
        try:
            if isinstance(instruction, Substitution):
                detail = await self._apply_substitution(container_id, work_dir, patch, instruction)
            elif isinstance(instruction, ShellCommand):
                detail = await self._apply_command(container_id, work_dir, instruction)
            elif isinstance(instruction, ManualReview):
                raise PatchApplicationError("patch requires manual review")
            else:
                raise PatchApplicationError(f"unsupported instruction {instruction!r}")
        except Exception as exc:
            return PatchOutcome(patch.id, PatchStatus.FAILED, str(exc))
        return PatchOutcome(patch.id, PatchStatus.APPLIED, detail)

    async def _apply_substitution(
        self,
        container_id: str,
        work_dir: str,
        patch: VerifiedPatch,
        instruction: Substitution,
    ) -> str:
        path = resolve_target(work_dir, patch.failure.source_file)
        original = await self.sandbox.read_file(container_id, path)

        occurrences = original.count(instruction.old)
        if occurrences == 0:
            raise PatchApplicationError(f"text to replace not found in {path}")

        updated = original.replace(instruction.old, instruction.new)
        if updated == original:
            return f"no changes needed in {path}"

        await self.sandbox.write_file(container_id, path, updated)
        return f"replaced {occurrences} occurrence(s) in {path}"

    async def _apply_command(self, container_id: str, work_dir: str, instruction: ShellCommand) -> str:
        result = await self.sandbox.execute_command(
            container_id, instruction.text, work_dir, timeout=self.command_timeout,
        )
        if not result.success:
            reason = "timed out" if result.timed_out else f"exit {result.exit_code}"
            raise PatchApplicationError(
                f"command failed ({reason}): {(result.stderr or result.stdout).strip()[:500]}"
            )
        return (result.stdout or result.stderr).strip()[:500] or "command executed"

    # ── Test & compare ───────────────────────────────────────────────

    async def run_tests(self, container_id: str, work_dir: str, test_command: str) -> TestOutcome:
        container_id = validate_shell_value(container_id, "container id")
        work_dir = validate_shell_value(work_dir, "work dir")
        if not test_command or not test_command.strip():
            raise InputValidationError("Test command is required")

        logger.info("[PatchEngine] Re-running tests in %s: %s", container_id, test_command)
        result = await self.sandbox.execute_command(
            container_id, test_command, work_dir, timeout=self.test_timeout,
        )
        logger.info(
            "[PatchEngine] Tests %s (exit %d)", "passed" if result.success else "failed", result.exit_code,
        )
        return TestOutcome(
            success=result.success,
            output=result.combined_output,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
        )

    async def detect_test_command(self, container_id: str, work_dir: str) -> str:
        """Guess the test command: package.json script, else pytest, else npm test."""
        container_id = validate_shell_value(container_id, "container id")
        work_dir = validate_shell_value(work_dir, "work dir")

        try:
            package = json.loads(
                await self.sandbox.read_file(container_id, posixpath.join(work_dir, "package.json"))
            )
            if isinstance(package, dict) and (package.get("scripts") or {}).get("test"):
                return DEFAULT_TEST_COMMAND
        except (FileNotFoundError, ValueError) as exc:
            logger.debug("[PatchEngine] No usable package.json: %s", exc)

        entries = await self.sandbox.list_files(container_id, work_dir, max_depth=1)
        names = {posixpath.basename(e.rstrip("/")) for e in entries}
        if names.intersection(_PYTHON_PROJECT_FILES):
            return PYTHON_TEST_COMMAND
        return DEFAULT_TEST_COMMAND

    @staticmethod
    def compare(before_output: str, after_output: str) -> Comparison:
        comparison = compare_outputs(before_output, after_output)
        logger.info(
            "[PatchEngine] Before: %d errors | After: %d errors | improved=%s",
            comparison.before_failure_count, comparison.after_failure_count, comparison.improved,
        )
        return comparison

    async def apply_and_verify(
        self,
        container_id: str,
        work_dir: str,
        patches: Sequence[VerifiedPatch],
        before_output: str,
        test_command: str,
        commit_message: str | None = None,
    ) -> ApplicationReport:
        """Apply, re-test, compare; commit only when improved and asked to."""
        apply_result = await self.apply_patches(container_id, work_dir, patches)
        test_outcome = await self.run_tests(container_id, work_dir, test_command)
        comparison = self.compare(before_output, test_outcome.output)

        recommendation = Recommendation.COMMIT if comparison.improved else Recommendation.ROLLBACK
        committed = False
        if comparison.improved and commit_message:
            committed = (await self.commit(container_id, work_dir, commit_message)).success

        return ApplicationReport(
            apply_result=apply_result,
            test_outcome=test_outcome,
            comparison=comparison,
            recommendation=recommendation,
            committed=committed,
        )

    # ── Version control ──────────────────────────────────────────────

    async def commit(self, container_id: str, work_dir: str, message: str) -> CommandResult:
        container_id = validate_shell_value(container_id, "container id")
        work_dir = validate_shell_value(work_dir, "work dir")
        if not message or not message.strip():
            raise InputValidationError("Commit message is required")

        logger.info("[PatchEngine] Committing fixes: %r", message)
        result = await self.sandbox.execute_command(
            container_id,
            f"git add -A && git commit -m {shlex.quote(message.strip())}",
            work_dir,
            timeout=self.command_timeout,
        )
        if not result.success:
            logger.warning("[PatchEngine] Commit failed: %s", (result.stderr or result.stdout).strip())
        return result

    async def rollback(self, container_id: str, work_dir: str) -> CommandResult:
        """Discard uncommitted changes in the working tree."""
        container_id = validate_shell_value(container_id, "container id")
        work_dir = validate_shell_value(work_dir, "work dir")

        logger.info("[PatchEngine] Rolling back uncommitted changes in %s", container_id)
        result = await self.sandbox.execute_command(
            container_id, "git checkout -- .", work_dir, timeout=self.command_timeout,
        )
        if not result.success:
            logger.warning("[PatchEngine] Rollback failed: %s", (result.stderr or result.stdout).strip())
        return result
