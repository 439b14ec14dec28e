"""Patch Generator stage — ClassifiedFailure → Patch.

The instruction dialect is decided here, once: the reply is turned into
a ``Substitution`` (precise code edit) or a ``ShellCommand`` (environment
action such as installing a dependency).  The Application Engine never
has to guess from free text.  A failed or unusable reply becomes the
``ManualReview`` sentinel.
"""

from __future__ import annotations

import logging
from typing import Any

from remediation.base import FanOutStage
from remediation.parsing import parse_json
from shared.errors import MalformedResponseError
from shared.schemas import (
    ClassifiedFailure,
    ManualReview,
    Patch,
    PatchInstruction,
    ShellCommand,
    Substitution,
    parse_instruction,
)

logger = logging.getLogger(__name__)

MANUAL_REVIEW_OBSERVABLE = "Manual review needed"

_PROMPT = """You are an autonomous DevOps Patch Generation Agent.

Generate a MINIMAL, DIRECT fix for this error.

File: {file}
Line: {line}
Error: {message}
Bug Type: {category}

Return a JSON object in ONE of these two forms:
{{"kind": "substitution", "old": "<exact text currently in the file>", "new": "<replacement text>", "expected_output": "<expected test output after the fix>"}}
{{"kind": "command", "command": "<exact shell command to run>", "expected_output": "<expected test output after the fix>"}}

Rules:
- Fix ONLY what's broken, nothing else
- Use "substitution" for code edits; "old" must appear verbatim in {file}
- Use "command" only for environment actions (e.g. installing a dependency)
- Return ONLY valid JSON"""


def build_prompt(item: ClassifiedFailure) -> str:
    return _PROMPT.format(
        file=item.source_file,
        line=item.source_line,
        message=item.message,
        category=item.category.value,
    )


def _required_text(data: dict[str, Any], key: str, allow_empty: bool = False) -> str:
    value = data.get(key)
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise MalformedResponseError(f"Patch response missing '{key}'")
    return value


def parse_patch_response(text: str) -> tuple[PatchInstruction, str]:
    """Decode a patch reply into (instruction, expected observable)."""
    data = parse_json(text)
    if not isinstance(data, dict):
        raise MalformedResponseError("Patch response is not a JSON object")

    expected = data.get("expected_output", data.get("required_dashboard_output", ""))
    if not isinstance(expected, str):
        raise MalformedResponseError("expected_output must be text")

    kind = data.get("kind")
    if kind == "substitution":
        old = _required_text(data, "old")
        new = _required_text(data, "new", allow_empty=True)
        return Substitution(old=old, new=new), expected
    if kind == "command":
        return ShellCommand(text=_required_text(data, "command").strip()), expected
    if kind is None and "patch_instructions" in data:
        instruction = parse_instruction(_required_text(data, "patch_instructions"))
        if isinstance(instruction, ManualReview):
            raise MalformedResponseError("Patch response asked for manual review")
        return instruction, expected
    raise MalformedResponseError(f"Unknown patch kind: {kind!r}")


class PatchGeneratorStage(FanOutStage[ClassifiedFailure, Patch]):
    """Creates one patch per classified failure."""

    name = "patch_generator"

    async def process(self, item: ClassifiedFailure) -> Patch:
        reply = await self.inference.complete(build_prompt(item))
        instruction, expected = parse_patch_response(reply)
        return Patch(classified=item, instruction=instruction, expected_observable=expected)

    def fallback(self, item: ClassifiedFailure, error: BaseException) -> Patch:
        return Patch(
            classified=item,
            instruction=ManualReview(),
            expected_observable=MANUAL_REVIEW_OBSERVABLE,
        )
