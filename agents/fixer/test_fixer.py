"""Tests for the fix engineer agent.

Run:
    python -m pytest agents/fixer/test_fixer.py -v
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import httpx
import pytest

_ROOT = Path(__file__).resolve().parent.parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from agents.fixer import FixEngineer, is_test_file
from shared.schemas import Bug, BugCategory

_BUGGY = "def add(a, b):\n    return a - b\n"
_FIXED = "def add(a, b):\n    return a + b"


def _completion(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def _fixer(handler) -> FixEngineer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FixEngineer(api_key="test-key", api_base="https://llm.test/v1", client=client)


def _bug(path: str = "calc.py", line: int = 2, bug_id: str = "bug-1") -> Bug:
    return Bug(id=bug_id, category=BugCategory.LOGIC, file_path=path, line=line,
               message="Subtracts instead of adds")


class TestIsTestFile:

    @pytest.mark.parametrize("path", [
        "test_app.py", "tests/test_api.py", "pkg/util_test.py", "server_test.go",
        "src/app.test.ts", "web/button.spec.jsx", "src/__tests__/x.js",
        "conftest.py", "src/test/java/AppTest.java", "tests\\test_win.py",
    ])
    def test_detects_test_files(self, path):
        assert is_test_file(path)

    @pytest.mark.parametrize("path", ["app.py", "src/testing_utils.py", "lib/contest.js"])
    def test_source_files_pass(self, path):
        assert not is_test_file(path)


class TestFixEngineer:

    def test_applies_fix_and_keeps_trailing_newline(self, tmp_path):
        (tmp_path / "calc.py").write_text(_BUGGY)
        applied = []

        report = asyncio.run(_fixer(lambda r: _completion(_FIXED)).fix_all(
            tmp_path, [_bug()], "AssertionError", on_fix_applied=applied.append,
        ))

        assert (tmp_path / "calc.py").read_text() == _FIXED + "\n"
        assert report.bugs_fixed == 1
        assert report.files_changed == 1
        assert applied[0].description.startswith("Fixed LOGIC at line 2")

    def test_one_call_per_file(self, tmp_path):
        (tmp_path / "calc.py").write_text(_BUGGY)
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return _completion(_FIXED)

        bugs = [_bug(line=1, bug_id="bug-1"), _bug(line=2, bug_id="bug-2")]
        report = asyncio.run(_fixer(handler).fix_all(tmp_path, bugs, ""))
        assert calls["n"] == 1
        assert report.bugs_fixed == 2

    def test_refuses_test_files(self, tmp_path):
        (tmp_path / "test_calc.py").write_text("def test_x():\n    assert False\n")
        report = asyncio.run(_fixer(lambda r: _completion("pass\n")).fix_all(
            tmp_path, [_bug(path="test_calc.py")], "",
        ))
        assert report.bugs_fixed == 0
        assert "test file" in report.results[0].error
        assert "assert False" in (tmp_path / "test_calc.py").read_text()

    def test_refuses_paths_outside_repo(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        (tmp_path / "outside.py").write_text(_BUGGY)
        report = asyncio.run(_fixer(lambda r: _completion(_FIXED)).fix_all(
            repo, [_bug(path="../outside.py")], "",
        ))
        assert report.bugs_fixed == 0
        assert (tmp_path / "outside.py").read_text() == _BUGGY

    def test_unchanged_answer_is_rejected(self, tmp_path):
        (tmp_path / "calc.py").write_text(_BUGGY)
        report = asyncio.run(_fixer(lambda r: _completion(_BUGGY)).fix_all(tmp_path, [_bug()], ""))
        assert report.bugs_fixed == 0
        assert "unchanged" in report.results[0].error

    def test_empty_answer_is_rejected(self, tmp_path):
        (tmp_path / "calc.py").write_text(_BUGGY)
        report = asyncio.run(_fixer(lambda r: _completion("  ")).fix_all(tmp_path, [_bug()], ""))
        assert report.bugs_fixed == 0
        assert (tmp_path / "calc.py").read_text() == _BUGGY

    def test_model_failure_leaves_file_alone(self, tmp_path):
        (tmp_path / "calc.py").write_text(_BUGGY)
        fixer = _fixer(lambda r: httpx.Response(503, text="unavailable"))
        report = asyncio.run(fixer.fix_all(tmp_path, [_bug()], ""))
        assert report.bugs_fixed == 0
        assert (tmp_path / "calc.py").read_text() == _BUGGY

    def test_missing_file(self, tmp_path):
        report = asyncio.run(_fixer(lambda r: _completion(_FIXED)).fix_all(tmp_path, [_bug()], ""))
        assert report.results[0].error == "source file not found"
