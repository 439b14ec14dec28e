"""Failure Extractor — first stage of the remediation pipeline.

Turns merged stdout/stderr text into an ordered list of ``Failure``
records.  The inference collaborator does the reading; this module owns
the strict validation of what comes back:

  • the response must be a JSON array of objects
  • each object needs a non-empty ``file`` and ``error_message``
  • a missing line number becomes 0

Any structural violation discards the whole response (empty list).  When
the collaborator itself is unreachable, the deterministic ``LogScanner``
takes over so a degraded run still sees the obvious failures.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from remediation.extractor.log_scanner import LogScanner, ScanHit
from remediation.inference import InferenceClient
from remediation.parsing import parse_json
from shared.errors import (
    CollaboratorUnavailableError,
    InputValidationError,
    MalformedResponseError,
)
from shared.schemas import Failure

logger = logging.getLogger(__name__)

MAX_PROMPT_LOG_CHARS = 30_000

_PROMPT = """You are a DevOps Error Extraction Agent.

Extract structured test failures from the provided logs.

Return a JSON array with this exact format:
[
  {{
    "file": "path/to/file.js",
    "line": 42,
    "error_message": "exact error message"
  }}
]

Rules:
- Extract EVERY error you find, in the order they appear
- Use exact file paths from logs
- Include line numbers if available
- Keep error messages concise but complete
- If no line number, use 0
- Return ONLY valid JSON, no markdown or explanation

Test Logs:
{logs}"""


def failure_id(index: int) -> str:
    return f"F-{index + 1:03d}"


def build_prompt(logs: str) -> str:
    return _PROMPT.format(logs=logs[:MAX_PROMPT_LOG_CHARS])


def _coerce_line(value: Any) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise MalformedResponseError(f"Invalid line number: {value!r}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 0:
        raise MalformedResponseError(f"Invalid line number: {value!r}")
    return value


def validate_failures(payload: Any) -> list[Failure]:
    """Validate a decoded extractor response and build Failure records.

    Raises:
        MalformedResponseError: if *payload* or any item is structurally invalid.
    """
    if not isinstance(payload, list):
        raise MalformedResponseError(f"Expected a JSON array, got {type(payload).__name__}")

    failures: list[Failure] = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise MalformedResponseError(f"Item {index} is not an object")

        file = item.get("file")
        if not isinstance(file, str) or not file.strip():
            raise MalformedResponseError(f"Item {index} has no file")

        message = item.get("error_message", item.get("message"))
        if not isinstance(message, str) or not message.strip():
            raise MalformedResponseError(f"Item {index} has no error message")

        failures.append(Failure(
            id=failure_id(index),
            source_file=file.strip(),
            source_line=_coerce_line(item.get("line")),
            message=message.strip(),
        ))
    return failures


def failures_from_hits(hits: list[ScanHit]) -> list[Failure]:
    return [
        Failure(id=failure_id(i), source_file=h.file, source_line=h.line, message=h.message)
        for i, h in enumerate(hits)
    ]


class FailureExtractor:
    """Raw log text → ordered ``Failure`` list."""

    name = "extractor"

    def __init__(
        self,
        inference: InferenceClient,
        scanner: LogScanner | None = None,
        timeout: float | None = 90.0,
        fallback_scanner: bool = True,
    ):
        self.inference = inference
        self.scanner = scanner or LogScanner()
        self.timeout = timeout
        self.fallback_scanner = fallback_scanner

    async def extract(self, logs: str) -> list[Failure]:
        """Extract failures from *logs*.

        Raises:
            InputValidationError: if *logs* is empty.
            CollaboratorUnavailableError: if inference is unreachable and
                the scanner fallback is disabled.
        """
        if not isinstance(logs, str) or not logs.strip():
            raise InputValidationError("No test logs provided")

        logger.info("[Extractor] Processing %d chars of logs…", len(logs))

        try:
            raw = await asyncio.wait_for(self.inference.complete(build_prompt(logs)), self.timeout)
        except asyncio.CancelledError:
            raise
        except MalformedResponseError as exc:
            logger.warning("[Extractor] Malformed inference response discarded: %s", exc)
            return []
        except Exception as exc:
            return self._unavailable(logs, exc)

        try:
            failures = validate_failures(parse_json(raw))
        except MalformedResponseError as exc:
            logger.warning("[Extractor] Response failed validation, discarding: %s", exc)
            return []

        logger.info("[Extractor] Extracted %d failure(s)", len(failures))
        return failures

    def _unavailable(self, logs: str, exc: Exception) -> list[Failure]:
        if not self.fallback_scanner:
            if isinstance(exc, CollaboratorUnavailableError):
                raise exc
            raise CollaboratorUnavailableError(f"Extraction failed: {exc}") from exc

        failures = failures_from_hits(self.scanner.scan(logs))
        logger.warning(
            "[Extractor] Inference unavailable (%s: %s) — log scanner found %d failure(s)",
            type(exc).__name__, exc, len(failures),
        )
        return failures


__all__ = [
    "FailureExtractor",
    "LogScanner",
    "build_prompt",
    "failure_id",
    "validate_failures",
]
