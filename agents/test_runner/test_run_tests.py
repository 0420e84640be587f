"""Tests for dependency install and test execution.

Shell calls are mocked except where a real interpreter is cheap to run.

Run:
    python -m pytest agents/test_runner/test_run_tests.py -v
"""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import patch

_ROOT = Path(__file__).resolve().parent.parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from agents.test_runner import install_dependencies, run_tests
from agents.test_runner.discovery import TestCommand
from sandbox.executor import ShellResult, ShellTimeout
from shared.schemas import BugCategory


def _cmd(command: str, install: str | None = None) -> TestCommand:
    return TestCommand(command=command, install_command=install, framework="custom")


def _ok(stdout: str = "") -> ShellResult:
    return ShellResult(exit_code=0, stdout=stdout, stderr="")


def _fail(stderr: str = "boom", code: int = 1) -> ShellResult:
    return ShellResult(exit_code=code, stdout="", stderr=stderr)


class TestInstallDependencies:

    def test_lockfile_upgrades_to_npm_ci(self, tmp_path):
        (tmp_path / "package-lock.json").write_text("{}")
        with patch("agents.test_runner.run_shell", return_value=_ok()) as shell:
            assert install_dependencies(tmp_path, "npm install")
        assert shell.call_args_list[0].args[0] == "npm ci"

    def test_npm_ci_falls_back_to_install(self, tmp_path):
        (tmp_path / "package-lock.json").write_text("{}")
        with patch("agents.test_runner.run_shell", side_effect=[_fail(), _ok()]) as shell:
            assert install_dependencies(tmp_path, "npm install")
        assert [c.args[0] for c in shell.call_args_list] == ["npm ci", "npm install"]

    def test_failure_is_swallowed(self, tmp_path):
        with patch("agents.test_runner.run_shell", return_value=_fail()):
            assert install_dependencies(tmp_path, "pip install -r requirements.txt") is False

    def test_timeout_is_swallowed(self, tmp_path):
        with patch("agents.test_runner.run_shell", side_effect=ShellTimeout("npm install", 180)):
            assert install_dependencies(tmp_path, "npm install") is False


class TestRunTests:

    def test_passing_suite(self, tmp_path):
        with patch("agents.test_runner.run_shell", return_value=_ok("3 passed")):
            result = run_tests(tmp_path, skip_install=True, test_command=_cmd("pytest"))
        assert result.passed
        assert result.exit_code == 0
        assert result.errors == []
        assert "3 passed" in result.full_output

    def test_failures_are_parsed(self, tmp_path):
        (tmp_path / "app.py").write_text("def greet(name)\n    return name\n")
        output = (
            f'  File "{tmp_path / "app.py"}", line 1\n'
            "    def greet(name)\n"
            "                   ^\n"
            "SyntaxError: expected ':'\n"
        )
        with patch("agents.test_runner.run_shell", return_value=_fail(output)):
            result = run_tests(tmp_path, skip_install=True, test_command=_cmd("pytest"))
        assert not result.passed
        assert result.errors[0].file_path == "app.py"
        assert result.errors[0].line == 1
        assert result.errors[0].type is BugCategory.SYNTAX

    def test_timeout_becomes_failed_result(self, tmp_path):
        timeout = ShellTimeout("npm test", 120, stdout="partial", stderr="")
        with patch("agents.test_runner.run_shell", side_effect=timeout):
            result = run_tests(tmp_path, skip_install=True, test_command=_cmd("npm test"))
        assert not result.passed
        assert result.timed_out
        assert result.exit_code == 124
        assert "timed out" in result.full_output

    def test_launch_failure_becomes_failed_result(self, tmp_path):
        with patch("agents.test_runner.run_shell", side_effect=FileNotFoundError("npm")):
            result = run_tests(tmp_path, skip_install=True, test_command=_cmd("npm test"))
        assert not result.passed
        assert result.exit_code == 127

    def test_install_runs_unless_skipped(self, tmp_path):
        with patch("agents.test_runner.run_shell", return_value=_ok()) as shell:
            run_tests(tmp_path, test_command=_cmd("pytest", install="pip install -e ."))
        assert [c.args[0] for c in shell.call_args_list] == ["pip install -e .", "pytest"]

    def test_real_command_in_repo_dir(self, tmp_path):
        command = f'"{sys.executable}" -c "import sys; sys.exit(0)"'
        result = run_tests(tmp_path, skip_install=True, test_command=_cmd(command))
        assert result.passed
        assert result.duration_ms >= 0
