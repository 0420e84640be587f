"""Tests for sandbox directories and time-boxed shell execution.

Run:
    python -m pytest sandbox/test_executor.py -v
"""

from __future__ import annotations

import os
import stat
import sys
import time
import warnings
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from sandbox.executor import (
    ShellTimeout,
    cleanup_sandbox,
    get_sandbox_dir,
    run_shell,
    sandbox_root,
)

_PY = sys.executable


class TestSandboxDirs:

    def test_dir_is_derived_from_session_id(self, tmp_path):
        assert get_sandbox_dir("abc-123", tmp_path) == tmp_path / "abc-123"

    def test_id_cannot_escape_root(self, tmp_path):
        target = get_sandbox_dir("../../etc/passwd", tmp_path)
        assert target.parent == tmp_path
        assert ".." not in target.name

    def test_empty_id_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            get_sandbox_dir("///", tmp_path)

    def test_root_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SANDBOX_ROOT", str(tmp_path / "boxes"))
        assert sandbox_root() == tmp_path / "boxes"

    def test_cleanup_removes_tree_and_is_idempotent(self, tmp_path):
        target = get_sandbox_dir("s1", tmp_path)
        (target / "nested" / ".git").mkdir(parents=True)
        (target / "nested" / "file.txt").write_text("x")

        cleanup_sandbox("s1", tmp_path)
        assert not target.exists()

        cleanup_sandbox("s1", tmp_path)  # second call is a no-op

    def test_cleanup_handles_read_only_objects_without_deprecation(self, tmp_path):
        target = get_sandbox_dir("s2", tmp_path)
        objects = target / ".git" / "objects" / "ab"
        objects.mkdir(parents=True)
        packed = objects / "cdef"
        packed.write_text("blob")
        os.chmod(packed, stat.S_IREAD)

        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            cleanup_sandbox("s2", tmp_path)

        assert not target.exists()


class TestRunShell:

    def test_captures_stdout_and_exit_code(self, tmp_path):
        result = run_shell([_PY, "-c", "print('hello')"], cwd=tmp_path, timeout_s=30)
        assert result.success
        assert result.stdout.strip() == "hello"

    def test_non_zero_exit_is_not_an_exception(self, tmp_path):
        result = run_shell(
            [_PY, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"],
            cwd=tmp_path, timeout_s=30,
        )
        assert result.exit_code == 3
        assert not result.success
        assert "bad" in result.output

    def test_runs_in_cwd(self, tmp_path):
        (tmp_path / "marker.txt").write_text("here")
        result = run_shell(
            [_PY, "-c", "print(open('marker.txt').read())"], cwd=tmp_path, timeout_s=30,
        )
        assert "here" in result.stdout

    def test_env_is_merged(self, tmp_path):
        result = run_shell(
            [_PY, "-c", "import os; print(os.environ['HEAL_FLAG'])"],
            cwd=tmp_path, timeout_s=30, env={"HEAL_FLAG": "on"},
        )
        assert result.stdout.strip() == "on"

    def test_timeout_kills_and_raises(self, tmp_path):
        t0 = time.monotonic()
        with pytest.raises(ShellTimeout) as info:
            run_shell([_PY, "-c", "import time; time.sleep(30)"], cwd=tmp_path, timeout_s=1)
        assert time.monotonic() - t0 < 15
        assert info.value.timeout_s == 1

    def test_missing_executable_raises_oserror(self, tmp_path):
        with pytest.raises(OSError):
            run_shell(["definitely-not-a-real-binary-xyz"], cwd=tmp_path, timeout_s=5)
