"""Docker Sandbox – command execution inside an existing container."""

from sandbox.executor import CommandResult, DockerSandbox, SandboxClient
from sandbox.validation import validate_shell_value

__all__ = [
    "CommandResult",
    "DockerSandbox",
    "SandboxClient",
    "validate_shell_value",
]
