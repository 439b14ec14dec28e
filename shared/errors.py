"""Error hierarchy shared by the pipeline, the sandbox layer and the API.

Only ``InputValidationError`` and extract-level ``CollaboratorUnavailableError``
are expected to reach callers; everything raised inside a fan-out stage is
converted to a sentinel before the stage returns.
"""

from __future__ import annotations


class RemediationError(Exception):
    """Base class for every error raised by this project."""


class InputValidationError(RemediationError, ValueError):
    """A required input is empty or unsafe.  Raised before any side effect."""


class UnsafeInputError(InputValidationError):
    """A value bound for a shell context contains disallowed characters."""

    def __init__(self, field: str, value: object) -> None:
        self.field = field
        self.value = value
        super().__init__(f"Unsafe {field} rejected: {value!r}")


class CollaboratorUnavailableError(RemediationError):
    """Transport-level failure talking to the sandbox or the inference service."""


class MalformedResponseError(RemediationError):
    """Collaborator output failed structural validation."""


class PatchApplicationError(RemediationError):
    """An approved patch could not be mechanically applied."""


class SandboxBusyError(RemediationError):
    """Another healing cycle already holds the sandbox."""

    def __init__(self, container_id: str) -> None:
        self.container_id = container_id
        super().__init__(f"Sandbox {container_id} already has a healing cycle in flight")


class InvariantViolation(RemediationError):
    """A Report broke the stage-alignment or approval-subset invariant."""
