"""Classifier stage — Failure → ClassifiedFailure, one inference call each.

A reply counts only when, after normalisation, it is exactly one of the
known category names; anything else (or a failed call) yields UNKNOWN.
"""

from __future__ import annotations

import logging

from remediation.base import FanOutStage
from remediation.parsing import normalize_token
from shared.errors import MalformedResponseError
from shared.schemas import BugCategory, ClassifiedFailure, Failure

logger = logging.getLogger(__name__)

_CATEGORY_DESCRIPTIONS: dict[BugCategory, str] = {
    BugCategory.LINTING: "code style, formatting",
    BugCategory.SYNTAX: "parsing, invalid code structure",
    BugCategory.LOGIC: "incorrect algorithm, wrong implementation",
    BugCategory.TYPE_ERROR: "type mismatch, undefined variable",
    BugCategory.IMPORT: "missing module, wrong import path",
    BugCategory.INDENTATION: "whitespace, tab issues",
    BugCategory.RUNTIME: "execution error",
    BugCategory.CONFIG: "configuration, environment issue",
}

_VALID = {c.value for c in _CATEGORY_DESCRIPTIONS}


def build_prompt(failure: Failure) -> str:
    categories = "\n".join(f"- {c.value} ({desc})" for c, desc in _CATEGORY_DESCRIPTIONS.items())
    return (
        "Classify this error into ONE category only:\n"
        f"{categories}\n\n"
        f"Error Message:\n{failure.message}\n\n"
        f"File: {failure.source_file}\n"
        f"Line: {failure.source_line}\n\n"
        "Return ONLY the category name, nothing else."
    )


def parse_category(text: str) -> BugCategory:
    token = normalize_token(text)
    if token not in _VALID:
        raise MalformedResponseError(f"Unrecognised category: {text!r}")
    return BugCategory(token)


class ClassifierStage(FanOutStage[Failure, ClassifiedFailure]):
    """Categorises each failure by error type."""

    name = "classifier"

    async def process(self, item: Failure) -> ClassifiedFailure:
        reply = await self.inference.complete(build_prompt(item))
        return ClassifiedFailure(failure=item, category=parse_category(reply))

    def fallback(self, item: Failure, error: BaseException) -> ClassifiedFailure:
        return ClassifiedFailure(failure=item, category=BugCategory.UNKNOWN)
