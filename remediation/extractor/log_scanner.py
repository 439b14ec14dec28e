"""Log scanner – deterministic regex pass over raw test output.

Used by the Failure Extractor when the inference collaborator cannot be
reached.  A bank of compiled patterns matches the most common Python /
JS / TS failure shapes and pulls out *file*, *line* and *message* in one
shot.  Hits are returned in order of first appearance; overlapping
matches are dropped so a single error line is never reported twice,
but genuinely repeated errors are all kept.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class ScanHit:
    file: str
    line: int
    message: str
    position: int


# Each pattern must define the groups "file", "line" and "detail".
_RULES: list[re.Pattern] = []


def _r(pattern: str) -> None:
    """Register a scanner rule."""
    _RULES.append(re.compile(pattern, re.MULTILINE))


# ── Python tracebacks ────────────────────────────────────────────────
#
# Bridge up to 5 lines (code line, caret) between the innermost
# `File "...", line N` and the exception line, never crossing another
# `File "` frame.
_r(
    r'File "(?P<file>[^"]+)", line (?P<line>\d+)[^\n]*\n'
    r'(?:(?![ \t]*File ")[^\n]*\n){0,5}?'
    r'[ \t]*(?P<detail>[A-Za-z_][\w.]*(?:Error|Exception)\b:?[^\n]*)'
)

# pytest short form:  path.py:12: AssertionError …
_r(r'^(?P<file>[^\s:"]+\.py):(?P<line>\d+): (?P<detail>[A-Za-z_][\w.]*(?:Error|Exception)\b[^\n]*)$')

# ── JS / TS ──────────────────────────────────────────────────────────

# Inline:  TypeError: x is not defined at a.js:10
_r(
    r'(?P<detail>\b[A-Za-z_]*Error\b:[^\n]*?)[ \t]+at[ \t]+\(?'
    r'(?P<file>[^\s():]+\.(?:[cm]?jsx?|tsx?)):(?P<line>\d+)'
)

# Node stack:  TypeError: …\n    at fn (/app/a.js:10:5)
_r(
    r'^[ \t]*(?P<detail>[A-Za-z_]*Error\b:[^\n]+)\n'
    r'[ \t]+at[ \t]+(?:[^\n(]*\()?(?P<file>[^\s():]+):(?P<line>\d+)'
)

# TypeScript:  src/a.ts(3,7): error TS2322: …
_r(r'(?P<file>[^\s(]+\.tsx?)\((?P<line>\d+),\d+\):\s*error\s+(?P<detail>TS\d+:[^\n]+)')

# tsc pretty:  src/a.ts:3:7 - error TS2322: …
_r(r'(?P<file>[^\s:]+\.tsx?):(?P<line>\d+):\d+\s*-\s*error\s+(?P<detail>TS\d+:[^\n]+)')

# ── Linters (flake8 / ruff) ─────────────────────────────────────────
_r(r'^(?P<file>[^\s:]+):(?P<line>\d+):\d+:\s*(?P<detail>[EWFC]\d+\s+[^\n]+)$')


class LogScanner:
    """Regex-only failure finder over merged stdout/stderr text."""

    def __init__(self, rules: list[re.Pattern] | None = None):
        self.rules = rules if rules is not None else _RULES

    def scan(self, log: str) -> list[ScanHit]:
        if not log:
            return []

        hits: list[ScanHit] = []
        claimed: list[tuple[int, int]] = []

        for rule in self.rules:
            for match in rule.finditer(log):
                start, end = match.span()
                if any(start < c_end and c_start < end for c_start, c_end in claimed):
                    continue
                claimed.append((start, end))
                hits.append(ScanHit(
                    file=match.group("file").strip(),
                    line=int(match.group("line")),
                    message=match.group("detail").strip(),
                    position=start,
                ))

        hits.sort(key=lambda h: h.position)
        return hits
