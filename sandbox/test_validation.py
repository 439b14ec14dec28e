"""Tests for shell-value validation and the Docker sandbox adapter.

The Docker client is a MagicMock, so no daemon is required.

Run:
    python -m pytest sandbox/test_validation.py -v
"""

from __future__ import annotations

import asyncio
import io
import tarfile
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from sandbox.executor import TIMEOUT_EXIT_CODE, CommandResult, DockerSandbox
from sandbox.validation import validate_shell_value
from shared.errors import CollaboratorUnavailableError, InputValidationError, UnsafeInputError


# ── Helpers ──────────────────────────────────────────────────────────

def _sandbox(exit_code: int = 0, stdout: bytes = b"", stderr: bytes = b""):
    container = MagicMock()
    container.exec_run.return_value = SimpleNamespace(exit_code=exit_code, output=(stdout, stderr))
    container.put_archive.return_value = True
    client = MagicMock()
    client.containers.get.return_value = container
    return DockerSandbox(timeout=5, client=client), client, container


# ── Validation ───────────────────────────────────────────────────────

class TestValidation:

    @pytest.mark.parametrize("value", [
        "heal-abc123",
        "/app/src/components/Button.tsx",
        "my_container:latest",
        "tests/test_[param].py",
        "/app/My Documents/a.js",
    ])
    def test_allowed_values(self, value):
        assert validate_shell_value(value) == value

    @pytest.mark.parametrize("value", [
        "ls; rm -rf /",
        "a && b",
        "$(whoami)",
        "`id`",
        "a|b",
        "x\ny",
        "heal-1\n",
        "quote'd",
        "",
        "   ",
        None,
        42,
    ])
    def test_rejected_values(self, value):
        with pytest.raises(UnsafeInputError):
            validate_shell_value(value, "container id")

    def test_unsafe_input_is_an_input_validation_error(self):
        with pytest.raises(InputValidationError) as info:
            validate_shell_value("ls; rm -rf /", "container id")
        assert info.value.field == "container id"
        assert "container id" in str(info.value)


# ── DockerSandbox ────────────────────────────────────────────────────

class TestDockerSandbox:

    def test_malicious_container_name_rejected_before_docker_is_touched(self):
        sandbox, client, container = _sandbox()

        with pytest.raises(UnsafeInputError):
            asyncio.run(sandbox.execute_command("ls; rm -rf /", "npm test", "/app"))

        client.containers.get.assert_not_called()
        container.exec_run.assert_not_called()

    def test_unsafe_work_dir_and_path_rejected(self):
        sandbox, client, _ = _sandbox()

        with pytest.raises(UnsafeInputError):
            asyncio.run(sandbox.execute_command("heal-1", "npm test", "/app && reboot"))
        with pytest.raises(UnsafeInputError):
            asyncio.run(sandbox.read_file("heal-1", "/app/$(id)"))
        client.containers.get.assert_not_called()

    def test_execute_command_runs_under_timeout_in_work_dir(self):
        sandbox, client, container = _sandbox(exit_code=1, stdout=b"1 failed", stderr=b"oops")

        result = asyncio.run(sandbox.execute_command("heal-1", "npm test", "/app"))

        client.containers.get.assert_called_once_with("heal-1")
        container.exec_run.assert_called_once_with(
            cmd=["timeout", "5", "sh", "-c", "npm test"], workdir="/app", demux=True,
        )
        assert result.exit_code == 1
        assert result.success is False
        assert result.timed_out is False
        assert result.combined_output == "1 failed\noops"

    def test_per_call_limit_is_enforced_inside_the_container(self):
        sandbox, _, container = _sandbox()

        asyncio.run(sandbox.execute_command("heal-1", "npm test", "/app", timeout=0.2))

        cmd = container.exec_run.call_args.kwargs["cmd"]
        assert cmd[:2] == ["timeout", "1"]

    def test_timeout_exit_status_marks_result_timed_out(self):
        sandbox, _, _ = _sandbox(exit_code=TIMEOUT_EXIT_CODE, stdout=b"partial")

        result = asyncio.run(sandbox.execute_command("heal-1", "npm test", "/app"))

        assert result.timed_out is True
        assert result.success is False
        assert result.stdout == "partial"
        assert "timed out after 5s" in result.stderr

    def test_read_file_returns_contents(self):
        sandbox, _, container = _sandbox(stdout=b"print('hi')\n")

        content = asyncio.run(sandbox.read_file("heal-1", "/app/main.py"))

        assert content == "print('hi')\n"
        container.exec_run.assert_called_once_with(cmd=["cat", "--", "/app/main.py"], demux=True)

    def test_read_missing_file_raises(self):
        sandbox, _, _ = _sandbox(exit_code=1, stderr=b"No such file or directory")

        with pytest.raises(FileNotFoundError):
            asyncio.run(sandbox.read_file("heal-1", "/app/missing.py"))

    def test_write_file_uploads_a_tar_archive(self):
        sandbox, _, container = _sandbox()

        asyncio.run(sandbox.write_file("heal-1", "/app/src/a.js", "let x = 1;\n"))

        directory, data = container.put_archive.call_args.args
        assert directory == "/app/src"
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            member = tar.getmember("a.js")
            assert tar.extractfile(member).read() == b"let x = 1;\n"

    def test_list_files_excludes_vendor_dirs(self):
        sandbox, _, container = _sandbox(stdout=b"/app\n/app/a.js\n\n/app/src\n")

        entries = asyncio.run(sandbox.list_files("heal-1", "/app", max_depth=2))

        assert entries == ["/app", "/app/a.js", "/app/src"]
        cmd = container.exec_run.call_args.kwargs["cmd"]
        assert cmd[:4] == ["find", "/app", "-maxdepth", "2"]
        assert "*/node_modules/*" in cmd
        assert "*/.git/*" in cmd

    def test_missing_container_is_collaborator_unavailable(self):
        sandbox, client, _ = _sandbox()
        client.containers.get.side_effect = NotFound("no such container")

        with pytest.raises(CollaboratorUnavailableError):
            asyncio.run(sandbox.execute_command("heal-1", "npm test", "/app"))

    @pytest.mark.parametrize("error", [
        APIError("exec failed"),
        ConnectionError("docker daemon connection reset"),
        OSError("broken pipe"),
    ])
    def test_transport_failures_are_collaborator_unavailable(self, error):
        sandbox, _, container = _sandbox()
        container.exec_run.side_effect = error
        container.put_archive.side_effect = error

        with pytest.raises(CollaboratorUnavailableError):
            asyncio.run(sandbox.execute_command("heal-1", "npm test", "/app"))
        with pytest.raises(CollaboratorUnavailableError):
            asyncio.run(sandbox.read_file("heal-1", "/app/a.js"))
        with pytest.raises(CollaboratorUnavailableError):
            asyncio.run(sandbox.list_files("heal-1", "/app"))
        with pytest.raises(CollaboratorUnavailableError):
            asyncio.run(sandbox.write_file("heal-1", "/app/a.js", "x"))


class TestCommandResult:

    def test_timed_out_is_never_success(self):
        result = CommandResult(exit_code=0, stdout="", stderr="", timed_out=True)
        assert result.success is False

    def test_combined_output_without_stderr(self):
        assert CommandResult(exit_code=0, stdout="ok", stderr="").combined_output == "ok"
