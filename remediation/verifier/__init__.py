"""Verifier stage — Patch → VerifiedPatch, fail-closed.

A patch is APPROVED only when the reply opens with the literal approval
token and carries no negation.  An explicit rejection or any other text
is REJECTED; an empty reply, a failed call or a timeout is
PENDING_REVIEW.  Nothing ever defaults to APPROVED.
"""

from __future__ import annotations

import logging
import re

from remediation.base import FanOutStage
from remediation.parsing import strip_code_fences
from shared.errors import MalformedResponseError
from shared.schemas import ManualReview, Patch, VerificationStatus, VerifiedPatch

logger = logging.getLogger(__name__)

APPROVAL_TOKEN = "APPROVED"

_NEGATIONS = re.compile(r"\b(?:NOT|REJECT\w*|DISAPPROVED?|UNAPPROVED)\b")
_WORD = re.compile(r"[A-Z_]+")

_PROMPT = """You are a Patch Verification Agent.

Verify this fix is:
1. Minimal (only fixes the identified issue)
2. Correct (actually solves the problem)
3. Safe (doesn't introduce new issues)

File: {file}:{line}
Error: {message}
Patch ({kind}): {patch}

Return only: APPROVED or REJECTED"""


def build_prompt(patch: Patch) -> str:
    return _PROMPT.format(
        file=patch.failure.source_file,
        line=patch.failure.source_line,
        message=patch.failure.message,
        kind=patch.instruction.kind,
        patch=patch.instructions,
    )


def parse_verdict(text: str) -> VerificationStatus:
    """Map a verifier reply to a status.

    Raises:
        MalformedResponseError: for an empty reply.
    """
    cleaned = strip_code_fences(text or "").upper()
    first = _WORD.search(cleaned)
    if first is None:
        raise MalformedResponseError("Empty verification response")
    if first.group(0) == APPROVAL_TOKEN and not _NEGATIONS.search(cleaned):
        return VerificationStatus.APPROVED
    return VerificationStatus.REJECTED


class VerifierStage(FanOutStage[Patch, VerifiedPatch]):
    """Approves, rejects or defers each generated patch."""

    name = "verifier"

    async def process(self, item: Patch) -> VerifiedPatch:
        if isinstance(item.instruction, ManualReview):
            return VerifiedPatch(patch=item, status=VerificationStatus.PENDING_REVIEW)
        reply = await self.inference.complete(build_prompt(item))
        return VerifiedPatch(patch=item, status=parse_verdict(reply))

    def fallback(self, item: Patch, error: BaseException) -> VerifiedPatch:
        return VerifiedPatch(patch=item, status=VerificationStatus.PENDING_REVIEW)
