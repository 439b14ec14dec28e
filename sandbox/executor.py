"""Sandbox executor – runs commands inside an existing Docker container.

Container lifecycle (creation, cloning, dependency installation, teardown)
belongs to whoever provisioned the sandbox.  This module only needs a
container id and exposes the narrow surface the remediation engine uses:

  • execute_command(container_id, command, work_dir)
  • read_file(container_id, path)
  • write_file(container_id, path, content)
  • list_files(container_id, path, max_depth)

Every container id, work directory and path is run through
``validate_shell_value`` before Docker is contacted.  Daemon and
transport failures surface as ``CollaboratorUnavailableError``.

Requires:  docker (pip install docker)  +  Docker daemon running.
"""

from __future__ import annotations

import asyncio
import io
import logging
import math
import os
import posixpath
import tarfile
import time
from dataclasses import dataclass
from typing import Any, Protocol

import docker
from docker.errors import DockerException, NotFound
from docker.models.containers import Container

from sandbox.validation import validate_shell_value
from shared.errors import CollaboratorUnavailableError

logger = logging.getLogger(__name__)

_EXCLUDED_DIRS = ("node_modules", ".git", "__pycache__")

# Exit status of ``timeout`` (coreutils and busybox) when the limit is hit.
TIMEOUT_EXIT_CODE = 124

# How long past the in-container limit to wait for the daemon to answer.
_DAEMON_GRACE_S = 10.0


def _docker_call(action: str, fn, *args, **kwargs):
    """Call the Docker SDK, mapping daemon and transport failures."""
    try:
        return fn(*args, **kwargs)
    except (DockerException, OSError) as exc:
        detail = getattr(exc, "explanation", None) or exc
        raise CollaboratorUnavailableError(f"{action} failed: {detail}") from exc


# ── Result dataclass ─────────────────────────────────────────────────

@dataclass
class CommandResult:
    """Structured output from one command run in the sandbox."""

    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_s: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def combined_output(self) -> str:
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout

    def to_dict(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "timed_out": self.timed_out,
            "duration_s": round(self.duration_s, 2),
            "success": self.success,
        }


# ── Sandbox protocol ─────────────────────────────────────────────────

class SandboxClient(Protocol):
    """What the Patch Application Engine needs from a sandbox."""

    async def execute_command(
        self,
        container_id: str,
        command: str,
        work_dir: str,
        timeout: float | None = None,
    ) -> CommandResult: ...

    async def read_file(self, container_id: str, path: str) -> str: ...

    async def write_file(self, container_id: str, path: str, content: str) -> None: ...

    async def list_files(self, container_id: str, path: str, max_depth: int = 4) -> list[str]: ...


# ── Docker implementation ────────────────────────────────────────────

class DockerSandbox:
    """Executes commands in an already-running Docker container.

    The time limit is enforced inside the container with ``timeout``, so a
    command that runs too long is killed there rather than left behind.

    Usage::

        sandbox = DockerSandbox()
        result = await sandbox.execute_command("heal-abc123", "npm test", "/app")
        print(result.combined_output)
    """

    def __init__(
        self,
        timeout: float | None = None,
        client: docker.DockerClient | None = None,
    ):
        self.timeout = timeout or float(os.getenv("SANDBOX_COMMAND_TIMEOUT", "120"))
        self._client = client

    # -- Docker client (lazy) ------------------------------------------

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as exc:
                raise CollaboratorUnavailableError(f"Docker daemon unreachable: {exc}") from exc
        return self._client

    def _container(self, container_id: str) -> Container:
        try:
            return self.client.containers.get(container_id)
        except NotFound as exc:
            raise CollaboratorUnavailableError(f"Container {container_id} not found") from exc
        except (DockerException, OSError) as exc:
            detail = getattr(exc, "explanation", None) or exc
            raise CollaboratorUnavailableError(f"Docker API error: {detail}") from exc

    # -- Public API ----------------------------------------------------

    async def execute_command(
        self,
        container_id: str,
        command: str,
        work_dir: str,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run *command* through ``sh -c`` in *work_dir* of *container_id*."""
        container_id = validate_shell_value(container_id, "container id")
        work_dir = validate_shell_value(work_dir, "work dir")
        seconds = max(1, math.ceil(timeout or self.timeout))
        t0 = time.monotonic()

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._exec_sync, container_id, command, work_dir, seconds, t0),
                timeout=seconds + _DAEMON_GRACE_S,
            )
        except asyncio.TimeoutError:
            logger.warning("Docker did not answer within %ds in %s: %s", seconds, container_id, command)
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout="",
                stderr=f"Command timed out after {seconds}s",
                timed_out=True,
                duration_s=time.monotonic() - t0,
            )

        if result.timed_out:
            logger.warning("Command timed out after %ds in %s: %s", seconds, container_id, command)
        return result

    async def read_file(self, container_id: str, path: str) -> str:
        container_id = validate_shell_value(container_id, "container id")
        path = validate_shell_value(path, "file path")
        return await asyncio.to_thread(self._read_sync, container_id, path)

    async def write_file(self, container_id: str, path: str, content: str) -> None:
        container_id = validate_shell_value(container_id, "container id")
        path = validate_shell_value(path, "file path")
        await asyncio.to_thread(self._write_sync, container_id, path, content)

    async def list_files(self, container_id: str, path: str, max_depth: int = 4) -> list[str]:
        container_id = validate_shell_value(container_id, "container id")
        path = validate_shell_value(path, "directory path")
        return await asyncio.to_thread(self._list_sync, container_id, path, int(max_depth))

    # -- Blocking helpers (run in worker threads) -----------------------

    def _exec_sync(
        self, container_id: str, command: str, work_dir: str, seconds: int, t0: float,
    ) -> CommandResult:
        container = self._container(container_id)
        exec_result = _docker_call(
            "Docker exec",
            container.exec_run,
            cmd=["timeout", str(seconds), "sh", "-c", command],
            workdir=work_dir,
            demux=True,                 # separate stdout / stderr
        )

        exit_code = exec_result.exit_code if exec_result.exit_code is not None else 1
        raw_stdout, raw_stderr = exec_result.output or (None, None)
        stderr = (raw_stderr or b"").decode("utf-8", errors="replace")
        timed_out = exit_code == TIMEOUT_EXIT_CODE
        if timed_out:
            stderr = f"{stderr}\nCommand timed out after {seconds}s".lstrip("\n")
        return CommandResult(
            exit_code=exit_code,
            stdout=(raw_stdout or b"").decode("utf-8", errors="replace"),
            stderr=stderr,
            timed_out=timed_out,
            duration_s=time.monotonic() - t0,
        )

    def _read_sync(self, container_id: str, path: str) -> str:
        container = self._container(container_id)
        exec_result = _docker_call(f"Reading {path}", container.exec_run, cmd=["cat", "--", path], demux=True)
        stdout, stderr = exec_result.output or (None, None)
        if exec_result.exit_code != 0:
            message = (stderr or b"").decode("utf-8", errors="replace").strip()
            raise FileNotFoundError(f"Failed to read {path}: {message or 'exit ' + str(exec_result.exit_code)}")
        return (stdout or b"").decode("utf-8", errors="replace")

    def _write_sync(self, container_id: str, path: str, content: str) -> None:
        container = self._container(container_id)
        data = content.encode("utf-8")

        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            info = tarfile.TarInfo(name=posixpath.basename(path))
            info.size = len(data)
            info.mtime = int(time.time())
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))

        directory = posixpath.dirname(path) or "/"
        ok = _docker_call(f"Writing {path}", container.put_archive, directory, buf.getvalue())
        if not ok:
            raise CollaboratorUnavailableError(f"Failed to write {path}")

    def _list_sync(self, container_id: str, path: str, max_depth: int) -> list[str]:
        container = self._container(container_id)
        cmd = ["find", path, "-maxdepth", str(max_depth)]
        for name in _EXCLUDED_DIRS:
            cmd += ["-not", "-path", f"*/{name}/*"]
        exec_result = _docker_call(f"Listing {path}", container.exec_run, cmd=cmd, demux=True)
        stdout, _ = exec_result.output or (None, None)
        return [ln for ln in (stdout or b"").decode("utf-8", errors="replace").splitlines() if ln.strip()]
