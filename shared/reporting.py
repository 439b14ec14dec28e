"""Report projections – pure transforms of one pipeline ``Report``.

Three views, all derived from the same record so every count agrees:

  • ``to_structured``  – nested dicts (JSON responses)
  • ``to_narrative``   – sectioned Markdown for humans
  • ``to_condensed``   – totals + category histogram + approval rate

Usage::

    from shared.reporting import compute_statistics, render_report

    stats = compute_statistics(report)
    markdown = render_report(report, "markdown")
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any

from shared.schemas import BugCategory, Report, VerificationStatus

_PRIORITIES: dict[BugCategory, str] = {
    BugCategory.SYNTAX: "CRITICAL",
    BugCategory.RUNTIME: "CRITICAL",
    BugCategory.TYPE_ERROR: "HIGH",
    BugCategory.IMPORT: "HIGH",
    BugCategory.LOGIC: "HIGH",
    BugCategory.CONFIG: "MEDIUM",
    BugCategory.INDENTATION: "LOW",
    BugCategory.LINTING: "LOW",
}


def calculate_priority(category: BugCategory) -> str:
    return _PRIORITIES.get(category, "MEDIUM")


def approval_rate(approved: int, patched: int) -> str:
    """``"NN.NN%"`` of approved/patched, or ``"N/A"`` when nothing was patched."""
    if patched <= 0:
        return "N/A"
    return f"{approved / patched * 100:.2f}%"


def compute_statistics(report: Report) -> dict[str, Any]:
    patched = len(report.generated_patches)
    approved = len(report.final_fixes)
    return {
        "total_failures": len(report.failures),
        "classified": len(report.classified_failures),
        "patched": patched,
        "verified": len(report.verified_patches),
        "approved": approved,
        "approval_rate": approval_rate(approved, patched),
    }


# ── Structured ───────────────────────────────────────────────────────

def to_structured(report: Report) -> dict[str, Any]:
    return {
        "extracted": [
            {"id": f.id, "file": f.source_file, "line": f.source_line, "error": f.message}
            for f in report.failures
        ],
        "classified": [
            {"id": c.id, "file": c.source_file, "line": c.source_line,
             "type": c.category.value, "error": c.message}
            for c in report.classified_failures
        ],
        "patched": [
            {"id": p.id, "file": p.failure.source_file, "line": p.failure.source_line,
             "type": p.category.value, "kind": p.instruction.kind,
             "fix": p.instructions, "expected_output": p.expected_observable}
            for p in report.generated_patches
        ],
        "verified": [
            {"id": v.id, "file": v.failure.source_file, "line": v.failure.source_line,
             "status": v.status.value, "fix": v.patch.instructions}
            for v in report.verified_patches
        ],
        "approved": [
            {"id": a.id, "file": a.failure.source_file, "line": a.failure.source_line,
             "type": a.patch.category.value, "fix": a.patch.instructions,
             "priority": calculate_priority(a.patch.category)}
            for a in report.final_fixes
        ],
    }


# ── Narrative ────────────────────────────────────────────────────────

def to_narrative(report: Report, generated_at: datetime | None = None) -> str:
    stats = compute_statistics(report)
    when = (generated_at or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M:%S UTC")

    parts = [
        "# Test Error Healing Report\n",
        f"**Report Generated**: {when}\n",
        "## Summary",
        f"- **Total Failures**: {stats['total_failures']}",
        f"- **Classified**: {stats['classified']}",
        f"- **Patches Generated**: {stats['patched']}",
        f"- **Patches Verified**: {stats['verified']}",
        f"- **Approved Fixes**: {stats['approved']}",
        f"- **Approval Rate**: {stats['approval_rate']}\n",
    ]

    if report.final_fixes:
        parts.append("## Approved Fixes\n")
        for idx, fix in enumerate(report.final_fixes, start=1):
            failure = fix.failure
            parts += [
                f"### {idx}. {failure.source_file}:{failure.source_line}",
                f"**Type**: `{fix.patch.category.value}`\n",
                f"**Error**:\n```\n{failure.message}\n```\n",
                f"**Fix**:\n```\n{fix.patch.instructions}\n```\n",
                f"**Expected Output**:\n```\n{fix.patch.expected_observable}\n```\n",
                "---\n",
            ]

    rejected = [v for v in report.verified_patches if v.status is VerificationStatus.REJECTED]
    if rejected:
        parts.append("## Rejected Patches\n")
        for idx, patch in enumerate(rejected, start=1):
            failure = patch.failure
            parts.append(f"{idx}. **{failure.source_file}:{failure.source_line}** - {failure.message}")

    return "\n".join(parts).rstrip() + "\n"


# ── Condensed ────────────────────────────────────────────────────────

def to_condensed(report: Report) -> dict[str, Any]:
    stats = compute_statistics(report)
    by_category = Counter(c.category.value for c in report.classified_failures)
    return {
        "totals": {
            "extracted": stats["total_failures"],
            "classified": stats["classified"],
            "patched": stats["patched"],
            "verified": stats["verified"],
            "approved": stats["approved"],
        },
        "failures_by_category": dict(sorted(by_category.items())),
        "approval_rate": stats["approval_rate"],
        "approved_fixes": [
            {"file": f.failure.source_file, "line": f.failure.source_line,
             "type": f.patch.category.value}
            for f in report.final_fixes
        ],
    }


def render_report(report: Report, fmt: str = "json") -> dict[str, Any] | str:
    """Dispatch on ``json`` | ``markdown`` | ``summary`` (unknown → json)."""
    if fmt == "markdown":
        return to_narrative(report)
    if fmt == "summary":
        return to_condensed(report)
    return to_structured(report)
