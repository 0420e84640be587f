"""Bug Scanner Agent – asks the model to pinpoint bugs behind failing tests.

Failures are grouped by file.  Each file's numbered source (up to
``MAX_FILE_BYTES``) is sent together with its failure context, and the model
answers with a JSON array of bugs.  Answers are validated: unknown
categories are coerced, out-of-range lines and files that do not exist in
the repository are dropped.

Without an API key the scanner returns ``[]``.  A model or transport failure
stops the scan and returns the bugs found in earlier files.  When the result
is empty the caller falls back to bugs synthesised from the parsed test errors.
"""

from __future__ import annotations

import asyncio
import json
import logging
import textwrap
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable

from agents.base import BaseAgent, LLMError, strip_fences
from agents.fixer import is_test_file
from agents.run_memory import new_bug_id
from shared.schemas import Bug, BugCategory, ParsedError

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 60_000
MAX_FILES_PER_SCAN = 10
MAX_OUTPUT_CONTEXT = 4_000

_SOURCE_SUFFIXES = {
    ".py", ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs",
    ".go", ".rs", ".java", ".rb", ".kt",
}
_SKIP_DIRS = {
    "node_modules", "__pycache__", ".git", ".venv", "venv", "env",
    ".tox", "dist", "build", ".next", "coverage", "target",
}
_VALID_SEVERITIES = {"high", "medium", "low"}

_SYSTEM_PROMPT = """\
You are a senior engineer diagnosing a failing test suite.
You receive one source file with line numbers and the test failures that
point at it.  Identify the bugs IN THIS FILE that cause the failures.

Return a JSON array.  Each element:
{
  "line": <1-based line number in this file>,
  "category": "<one of: SYNTAX, LINTING, RUNTIME, LOGIC, IMPORT, TYPE, DEPENDENCY>",
  "severity": "<high | medium | low>",
  "message": "<one concise sentence describing the bug>"
}

Rules:
- Report each bug once, at the line that must change.
- Never report bugs in test files; tests define the expected behaviour.
- If the file has no bug related to the failures return [].
Do NOT wrap the array in markdown fences.
"""

BugCallback = Callable[[Bug], None]
LogCallback = Callable[[str], None]


class BugScanner(BaseAgent):
    """Locates bugs in source files from failing-test context."""

    name = "bug_scanner"

    async def scan(
        self,
        repo_dir: str | Path,
        failures: list[ParsedError],
        test_output: str = "",
        on_bug_found: BugCallback | None = None,
        on_log: LogCallback | None = None,
    ) -> list[Bug]:
        root = Path(repo_dir)
        log = on_log or (lambda _msg: None)

        if not self.enabled:
            logger.info("No GEMINI_API_KEY – skipping AI scan")
            log("AI scan unavailable (no API key); using parsed test errors")
            return []

        groups = await asyncio.to_thread(self._group_failures, root, failures)
        if not groups:
            log("No failure locations parsed; scanning source files directly")
            candidates = await asyncio.to_thread(self._candidate_files, root)
            groups = OrderedDict((rel, []) for rel in candidates)

        found: list[Bug] = []
        for rel_path, file_failures in list(groups.items())[:MAX_FILES_PER_SCAN]:
            log(f"Scanning {rel_path} ({len(file_failures)} failure(s))")
            try:
                bugs = await self._scan_file(root, rel_path, file_failures, test_output)
            except LLMError as exc:
                logger.warning("Bug scan aborted at %s: %s", rel_path, exc)
                log(f"AI scan failed: {exc}")
                break

            for bug in bugs:
                found.append(bug)
                if on_bug_found is not None:
                    on_bug_found(bug)

        logger.info("Scan found %d bug(s) across %d file(s)", len(found), len(groups))
        return found

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _group_failures(
        root: Path, failures: list[ParsedError]
    ) -> "OrderedDict[str, list[ParsedError]]":
        groups: OrderedDict[str, list[ParsedError]] = OrderedDict()
        for failure in failures:
            if not (root / failure.file_path).is_file():
                continue
            groups.setdefault(failure.file_path, []).append(failure)
        return groups

    @staticmethod
    def _candidate_files(root: Path) -> list[str]:
        candidates: list[str] = []
        for path in sorted(root.rglob("*")):
            if any(part in _SKIP_DIRS or part.startswith(".") for part in path.relative_to(root).parts[:-1]):
                continue
            if not path.is_file() or path.suffix not in _SOURCE_SUFFIXES:
                continue
            rel = path.relative_to(root).as_posix()
            if is_test_file(rel):
                continue
            candidates.append(rel)
            if len(candidates) >= MAX_FILES_PER_SCAN:
                break
        return candidates

    async def _scan_file(
        self,
        root: Path,
        rel_path: str,
        failures: list[ParsedError],
        test_output: str,
    ) -> list[Bug]:
        source = await asyncio.to_thread((root / rel_path).read_text, encoding="utf-8", errors="replace")
        source = source[:MAX_FILE_BYTES]
        lines = source.splitlines()
        numbered = "\n".join(f"{i + 1:4d} | {ln}" for i, ln in enumerate(lines))

        if failures:
            context = "\n".join(
                f"- line {f.line} [{f.type.value}]: {f.message}" for f in failures
            )
        else:
            context = "(no parsed locations; see the raw output below)"

        prompt = textwrap.dedent("""\
            File: {path}

            Failures pointing at this file:
            {context}

            Raw test output (truncated):
            {output}

            Source:
            {source}
            """).format(
            path=rel_path,
            context=context,
            output=test_output[-MAX_OUTPUT_CONTEXT:] or "(none)",
            source=numbered,
        )

        content = await self._complete(_SYSTEM_PROMPT, prompt)
        return self._parse_bugs(strip_fences(content), rel_path, len(lines))

    @staticmethod
    def _parse_bugs(content: str, rel_path: str, line_count: int) -> list[Bug]:
        try:
            items: Any = json.loads(content)
        except ValueError as exc:
            raise LLMError(f"scanner returned invalid JSON for {rel_path}") from exc
        if isinstance(items, dict):
            items = [items]
        if not isinstance(items, list):
            raise LLMError(f"scanner returned {type(items).__name__} for {rel_path}")

        bugs: list[Bug] = []
        seen_lines: set[int] = set()
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                line = int(item.get("line", 0))
            except (TypeError, ValueError):
                continue
            if line < 1 or line > max(line_count, 1) or line in seen_lines:
                continue
            seen_lines.add(line)

            severity = str(item.get("severity", "medium")).lower()
            bugs.append(Bug(
                id=new_bug_id(),
                category=BugCategory.coerce(item.get("category")),
                file_path=rel_path,
                line=line,
                message=str(item.get("message", "")).strip() or "Unspecified bug",
                severity=severity if severity in _VALID_SEVERITIES else "medium",
            ))
        return bugs
