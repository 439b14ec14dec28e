"""Allow-list validation for values that end up in a shell invocation.

Container ids, work directories and file paths are attacker-influenceable
(they come from request bodies and from parsed log text), so every one of
them is checked here before the sandbox is touched.
"""

from __future__ import annotations

import re

from shared.errors import UnsafeInputError

# Letters, digits, underscore, hyphen, dot, slash, colon, brackets, space.
_SAFE_VALUE = re.compile(r"^[A-Za-z0-9_\-./:\[\] ]+$")


def validate_shell_value(value: object, field: str = "value") -> str:
    """Return *value* stripped if it only uses allow-listed characters.

    Raises:
        UnsafeInputError: for non-strings, empty values, or any character
            outside ``[A-Za-z0-9_-./:[] ]``.
    """
    if not isinstance(value, str):
        raise UnsafeInputError(field, value)
    if not value.strip() or not _SAFE_VALUE.fullmatch(value):
        raise UnsafeInputError(field, value)
    return value.strip()
