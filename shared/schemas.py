"""Shared schemas used across the remediation pipeline, sandbox and backend.

Every record is frozen: each stage wraps the record it received in a new
one instead of editing it, so a VerifiedPatch can always be traced back
to the Failure that produced it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from shared.errors import InvariantViolation

MANUAL_REVIEW_TEXT = "manual review needed"
SUBSTITUTION_ARROW = "→"


# ── Enumerations ─────────────────────────────────────────────────────

class BugCategory(str, Enum):
    LINTING = "LINTING"
    SYNTAX = "SYNTAX"
    LOGIC = "LOGIC"
    TYPE_ERROR = "TYPE_ERROR"
    IMPORT = "IMPORT"
    INDENTATION = "INDENTATION"
    RUNTIME = "RUNTIME"
    CONFIG = "CONFIG"
    UNKNOWN = "UNKNOWN"


class VerificationStatus(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PENDING_REVIEW = "PENDING_REVIEW"


class PatchStatus(str, Enum):
    APPLIED = "APPLIED"
    FAILED = "FAILED"


class Recommendation(str, Enum):
    COMMIT = "commit"
    ROLLBACK = "rollback"

    @property
    def message(self) -> str:
        return _RECOMMENDATION_MESSAGES[self]


_RECOMMENDATION_MESSAGES = {
    Recommendation.COMMIT: "Fixes are working! Consider committing these changes.",
    Recommendation.ROLLBACK: "Fixes did not improve test results. May need manual review or a rollback.",
}


class SessionOutcome(str, Enum):
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    NO_FIXES_AVAILABLE = "no_fixes_available"
    ERROR = "error"
    CANCELLED = "cancelled"


# ── Extraction / classification records ─────────────────────────────

@dataclass(frozen=True)
class Failure:
    """A single test failure pulled out of raw log text."""

    id: str
    source_file: str
    source_line: int = 0     # 0 = unknown
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file": self.source_file,
            "line": self.source_line,
            "message": self.message,
        }


@dataclass(frozen=True)
class ClassifiedFailure:
    failure: Failure
    category: BugCategory

    @property
    def id(self) -> str:
        return self.failure.id

    @property
    def source_file(self) -> str:
        return self.failure.source_file

    @property
    def source_line(self) -> int:
        return self.failure.source_line

    @property
    def message(self) -> str:
        return self.failure.message

    def to_dict(self) -> dict[str, Any]:
        return {**self.failure.to_dict(), "category": self.category.value}


# ── Patch instructions (tagged variant) ──────────────────────────────

@dataclass(frozen=True)
class Substitution:
    """Global find/replace of *old* with *new* in the failure's source file."""

    old: str
    new: str
    kind: str = field(default="substitution", init=False)

    def render(self) -> str:
        return f"{self.old} {SUBSTITUTION_ARROW} {self.new}"


@dataclass(frozen=True)
class ShellCommand:
    """Literal command run in the sandbox working directory."""

    text: str
    kind: str = field(default="command", init=False)

    def render(self) -> str:
        return self.text


@dataclass(frozen=True)
class ManualReview:
    """Sentinel emitted when no usable patch could be generated."""

    kind: str = field(default="manual_review", init=False)

    def render(self) -> str:
        return MANUAL_REVIEW_TEXT


PatchInstruction = Union[Substitution, ShellCommand, ManualReview]


def parse_instruction(text: str) -> PatchInstruction:
    """Turn free-text patch instructions into a tagged instruction.

    ``"<old> → <new>"`` (exactly one arrow, non-empty old side) becomes a
    Substitution; the sentinel text or an empty string becomes ManualReview;
    anything else is a ShellCommand.
    """
    stripped = (text or "").strip()
    if not stripped or stripped.lower() == MANUAL_REVIEW_TEXT:
        return ManualReview()
    if stripped.count(SUBSTITUTION_ARROW) == 1:
        old, new = (part.strip() for part in stripped.split(SUBSTITUTION_ARROW))
        if old:
            return Substitution(old=old, new=new)
    return ShellCommand(text=stripped)


def instruction_to_dict(instruction: PatchInstruction) -> dict[str, Any]:
    data: dict[str, Any] = {"kind": instruction.kind, "text": instruction.render()}
    if isinstance(instruction, Substitution):
        data.update(old=instruction.old, new=instruction.new)
    return data


# ── Patch records ────────────────────────────────────────────────────

@dataclass(frozen=True)
class Patch:
    classified: ClassifiedFailure
    instruction: PatchInstruction
    expected_observable: str = ""

    @property
    def id(self) -> str:
        return self.classified.id

    @property
    def failure(self) -> Failure:
        return self.classified.failure

    @property
    def category(self) -> BugCategory:
        return self.classified.category

    @property
    def instructions(self) -> str:
        return self.instruction.render()

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.classified.to_dict(),
            "instructions": self.instructions,
            "instruction": instruction_to_dict(self.instruction),
            "expected_output": self.expected_observable,
        }


@dataclass(frozen=True)
class VerifiedPatch:
    patch: Patch
    status: VerificationStatus

    @property
    def id(self) -> str:
        return self.patch.id

    @property
    def failure(self) -> Failure:
        return self.patch.failure

    @property
    def approved(self) -> bool:
        return self.status is VerificationStatus.APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {**self.patch.to_dict(), "verification_status": self.status.value}


# ── Pipeline report ──────────────────────────────────────────────────

@dataclass(frozen=True)
class Report:
    """Aggregated output of one Extract → Classify → Patch → Verify run."""

    failures: tuple[Failure, ...] = ()
    classified_failures: tuple[ClassifiedFailure, ...] = ()
    generated_patches: tuple[Patch, ...] = ()
    verified_patches: tuple[VerifiedPatch, ...] = ()
    final_fixes: tuple[VerifiedPatch, ...] = ()

    def check_invariants(self) -> None:
        """Raise InvariantViolation unless every stage stayed index-aligned."""
        counts = (
            len(self.failures),
            len(self.classified_failures),
            len(self.generated_patches),
            len(self.verified_patches),
        )
        if len(set(counts)) != 1:
            raise InvariantViolation(f"Stage output lengths diverged: {counts}")

        for failure, classified, patch, verified in zip(
            self.failures,
            self.classified_failures,
            self.generated_patches,
            self.verified_patches,
        ):
            if not (failure.id == classified.id == patch.id == verified.id):
                raise InvariantViolation(f"Stage alignment broken at failure {failure.id}")

        expected = tuple(v for v in self.verified_patches if v.approved)
        if self.final_fixes != expected:
            raise InvariantViolation("final_fixes must be exactly the approved verified patches")

    def to_dict(self) -> dict[str, Any]:
        return {
            "failures": [f.to_dict() for f in self.failures],
            "classified_failures": [c.to_dict() for c in self.classified_failures],
            "generated_patches": [p.to_dict() for p in self.generated_patches],
            "verified_patches": [v.to_dict() for v in self.verified_patches],
            "final_fixes": [v.to_dict() for v in self.final_fixes],
        }


# ── Application records ──────────────────────────────────────────────

@dataclass(frozen=True)
class PatchOutcome:
    patch_id: str
    status: PatchStatus
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"patch_id": self.patch_id, "status": self.status.value, "detail": self.detail}


@dataclass(frozen=True)
class ApplyResult:
    applied_count: int
    total_count: int
    outcomes: tuple[PatchOutcome, ...] = ()

    @property
    def success(self) -> bool:
        return self.applied_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied_count": self.applied_count,
            "total_count": self.total_count,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass(frozen=True)
class TestOutcome:
    """Result of one test-command run inside the sandbox."""

    __test__ = False  # not a pytest class

    success: bool
    output: str
    exit_code: int
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
        }


@dataclass(frozen=True)
class Comparison:
    before_failure_count: int
    after_failure_count: int
    improved: bool
    delta: int

    @property
    def success_rate(self) -> str:
        if self.before_failure_count <= 0:
            return "N/A"
        return f"{self.delta / self.before_failure_count * 100:.2f}%"

    def to_dict(self) -> dict[str, Any]:
        return {
            "before": self.before_failure_count,
            "after": self.after_failure_count,
            "improved": self.improved,
            "delta": self.delta,
            "success_rate": self.success_rate,
        }


# ── Healing loop records ─────────────────────────────────────────────

@dataclass(frozen=True)
class HealingIteration:
    """Snapshot of one pipeline → apply → re-test cycle."""

    number: int
    report: Report
    apply_result: ApplyResult | None = None
    test_outcome: TestOutcome | None = None
    comparison: Comparison | None = None
    recommendation: Recommendation | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "report": self.report.to_dict(),
            "apply_result": self.apply_result.to_dict() if self.apply_result else None,
            "test_outcome": self.test_outcome.to_dict() if self.test_outcome else None,
            "comparison": self.comparison.to_dict() if self.comparison else None,
            "recommendation": self.recommendation.value if self.recommendation else None,
            "message": self.recommendation.message if self.recommendation else None,
        }


@dataclass(frozen=True)
class HealingSession:
    """All iterations of one healing run plus its terminal outcome."""

    session_id: str
    container_id: str
    max_iterations: int
    outcome: SessionOutcome
    iterations: tuple[HealingIteration, ...] = ()
    error: str = ""
    committed: bool = False

    @property
    def iterations_used(self) -> int:
        return len(self.iterations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "container_id": self.container_id,
            "max_iterations": self.max_iterations,
            "iterations_used": self.iterations_used,
            "outcome": self.outcome.value,
            "error": self.error,
            "committed": self.committed,
            "iterations": [it.to_dict() for it in self.iterations],
        }
