"""Fix Engineer Agent – rewrites buggy source files with the model.

One model call per file: the prompt carries the full file, every bug
located in it and the failing test output; the answer is the complete
corrected file.

Safety rules:
  • Never modify test files
  • Never write outside the repository sandbox
  • Reject empty or unchanged answers
  • Preserve the file's trailing newline
"""

from __future__ import annotations

import logging
import re
import textwrap
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from agents.base import BaseAgent, LLMError, strip_fences
from shared.schemas import Bug

logger = logging.getLogger(__name__)

# Patterns that identify test files; fixes targeting these are REJECTED
_TEST_FILE_PATTERNS = [
    re.compile(r"(^|/)test_[^/]+\.py$"),
    re.compile(r"(^|/)[^/]+_test\.(py|go)$"),
    re.compile(r"(^|/)[^/]+\.(test|spec)\.(js|ts|jsx|tsx|mjs|cjs)$"),
    re.compile(r"(^|/)__tests__/"),
    re.compile(r"(^|/)tests?/test_"),
    re.compile(r"(^|/)conftest\.py$"),
    re.compile(r"(^|/)src/test/"),
]

MAX_OUTPUT_CONTEXT = 4_000


def is_test_file(filepath: str) -> bool:
    """Return True if *filepath* looks like a test file."""
    return any(p.search(filepath.replace("\\", "/")) for p in _TEST_FILE_PATTERNS)


# ── Result dataclasses ───────────────────────────────────────────────

@dataclass
class FixOutcome:
    """Per-bug outcome of a fix pass."""

    bug_id: str
    file_path: str
    applied: bool
    description: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "bug_id": self.bug_id,
            "file_path": self.file_path,
            "applied": self.applied,
            "description": self.description,
            "error": self.error,
        }


@dataclass
class FixReport:
    results: list[FixOutcome] = field(default_factory=list)

    @property
    def bugs_fixed(self) -> int:
        return sum(1 for r in self.results if r.applied)

    @property
    def files_changed(self) -> int:
        return len({r.file_path for r in self.results if r.applied})

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "bugs_fixed": self.bugs_fixed,
            "files_changed": self.files_changed,
        }


_SYSTEM_PROMPT = (
    "You are a precise code fixer. You receive one complete source file and "
    "the bugs found in it. Return the COMPLETE corrected file and nothing "
    "else. No markdown. No explanations. No line numbers. Preserve the "
    "original style exactly (indentation, quotes, names) and change only "
    "what the listed bugs require."
)

FixCallback = Callable[[FixOutcome], None]
LogCallback = Callable[[str], None]


class FixEngineer(BaseAgent):
    """Applies model-generated fixes, one file at a time."""

    name = "fix_engineer"
    request_timeout_s = 120.0

    async def fix_all(
        self,
        repo_dir: str | Path,
        bugs: list[Bug],
        test_output: str,
        on_fix_applied: FixCallback | None = None,
        on_log: LogCallback | None = None,
    ) -> FixReport:
        root = Path(repo_dir).resolve()
        log = on_log or (lambda _msg: None)
        report = FixReport()

        by_file: OrderedDict[str, list[Bug]] = OrderedDict()
        for bug in bugs:
            by_file.setdefault(bug.file_path, []).append(bug)

        for rel_path, file_bugs in by_file.items():
            outcomes = await self._fix_file(root, rel_path, file_bugs, test_output, log)
            report.results.extend(outcomes)
            for outcome in outcomes:
                if outcome.applied and on_fix_applied is not None:
                    on_fix_applied(outcome)

        logger.info(
            "Applied %d/%d fix(es) across %d file(s)",
            report.bugs_fixed, len(bugs), report.files_changed,
        )
        return report

    # ── Single-file fixer ────────────────────────────────────────────

    async def _fix_file(
        self,
        root: Path,
        rel_path: str,
        bugs: list[Bug],
        test_output: str,
        log: LogCallback,
    ) -> list[FixOutcome]:
        def failed(reason: str) -> list[FixOutcome]:
            logger.info("Not fixing %s: %s", rel_path, reason)
            log(f"Skipped {rel_path}: {reason}")
            return [FixOutcome(b.id, rel_path, applied=False, error=reason) for b in bugs]

        # ── Safety: never touch test files ───────────────────────────
        if is_test_file(rel_path):
            return failed("test file protection: will not modify test files")

        abs_path = (root / rel_path).resolve()
        try:
            abs_path.relative_to(root)
        except ValueError:
            return failed("path escapes the repository sandbox")
        if not abs_path.is_file():
            return failed("source file not found")

        try:
            original = abs_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return failed(f"read error: {exc}")

        bug_list = "\n".join(
            f"- line {b.line} [{b.category.value}, {b.severity}]: {b.message}" for b in bugs
        )
        prompt = textwrap.dedent("""\
            File: {path}

            Bugs to fix:
            {bugs}

            Failing test output (truncated):
            {output}

            Current file content:
            {source}
            """).format(
            path=rel_path,
            bugs=bug_list,
            output=test_output[-MAX_OUTPUT_CONTEXT:] or "(none)",
            source=original,
        )

        try:
            content = await self._complete(_SYSTEM_PROMPT, prompt)
        except LLMError as exc:
            logger.warning("LLM fix failed for %s: %s", rel_path, exc)
            return failed(str(exc))

        fixed = strip_fences(content)
        if not fixed.strip():
            return failed("model returned an empty file")
        if original.endswith("\n") and not fixed.endswith("\n"):
            fixed += "\n"
        if fixed == original:
            return failed("model returned the file unchanged")

        try:
            abs_path.write_text(fixed, encoding="utf-8")
        except OSError as exc:
            return failed(f"write error: {exc}")

        logger.info("Patch applied: %s (%d bug(s))", rel_path, len(bugs))
        log(f"Fixed {len(bugs)} bug(s) in {rel_path}")
        return [
            FixOutcome(
                bug_id=b.id,
                file_path=rel_path,
                applied=True,
                description=f"Fixed {b.category.value} at line {b.line}: {b.message[:120]}",
            )
            for b in bugs
        ]
