"""Error Classifier – turns raw test output into structured failure locations.

Strategy
────────
Line-oriented regex pass.  Each output line is tried against four shapes,
first match wins:

1.  **Python traceback frame** – ``File "<path>", line <n>``.  The message is
    the traceback's exception line (``ValueError: ...``) when one follows,
    otherwise the frame line itself.  Frames inside ``site-packages`` or
    outside the repository are library noise and are skipped.
2.  **TypeScript compiler** – ``path(line,col): error TS...`` → TYPE.
3.  **Linter** – ``path:line:col: error|warning ...`` or a flake8/ruff code
    (``path:line:col: F401 ...``) → LINTING.
4.  **Generic** – ``path.<ext>:line ... Error|Exception``.

Paths are made repository-relative and results are de-duplicated by
``(file, line, message)``.

Usage::

    from agents.bug_classifier.error_classifier import parse_errors

    errors = parse_errors(test_output, repo_dir)
"""

from __future__ import annotations

import logging
import re
from pathlib import Path, PurePosixPath

from shared.schemas import BugCategory, ParsedError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
#  CATEGORY LOOKUP
# ═══════════════════════════════════════════════════════════════════════

# Ordered (keywords, category); first table row with a hit wins.
_CATEGORY_RULES: list[tuple[tuple[str, ...], BugCategory]] = [
    (("syntaxerror", "syntax error", "unexpected token"), BugCategory.SYNTAX),
    (("importerror", "modulenotfounderror", "cannot find module"), BugCategory.IMPORT),
    (("typeerror", "type error", "ts2"), BugCategory.TYPE),
    (("lint", "eslint", "pylint"), BugCategory.LINTING),
    (("nameerror", "referenceerror", "undefined"), BugCategory.RUNTIME),
    (("dependency", "package", "install"), BugCategory.DEPENDENCY),
    (("assertionerror", "expect", "assert"), BugCategory.LOGIC),
]


def classify_error(text: str) -> BugCategory:
    """Map an error line to a :class:`BugCategory` (RUNTIME when nothing matches)."""
    lower = text.lower()
    for keywords, category in _CATEGORY_RULES:
        if any(k in lower for k in keywords):
            return category
    return BugCategory.RUNTIME


# ═══════════════════════════════════════════════════════════════════════
#  REGEX PASS
# ═══════════════════════════════════════════════════════════════════════

_PY_FRAME = re.compile(r'File "(?P<file>[^"]+)", line (?P<line>\d+)')

# "ValueError: bad", "E   AssertionError", "requests.exceptions.HTTPError: 500"
_PY_EXCEPTION_LINE = re.compile(
    r"^(?:E\s+)?(?P<exc>[A-Za-z_][\w.]*(?:Error|Exception|Exit|Interrupt|Warning))\b(?::.*)?$"
)

_TS_ERROR = re.compile(r"(?P<file>[^(\s]+)\((?P<line>\d+),\d+\):\s*error")

_LINT_ERROR = re.compile(
    r"(?P<file>[^:\s]+):(?P<line>\d+):\d+:\s*(?:error|warning|[EWFCB]\d+\b)",
    re.IGNORECASE,
)

_GENERIC_ERROR = re.compile(
    r"(?P<file>[^:\s]+\.(?:py|js|ts|jsx|tsx|rb|go|rs|java)):(?P<line>\d+)(?:[:\s].*)?(?:Error|Exception)",
    re.IGNORECASE,
)

# Stop looking for a traceback's exception line after this many lines.
_EXCEPTION_LOOKAHEAD = 40

_LIBRARY_MARKERS = ("site-packages", "dist-packages", "node_modules")


def _relativize(raw_path: str, repo_dir: Path) -> str | None:
    """Return *raw_path* relative to the repo, or None when it lies outside it."""
    path = raw_path.strip().replace("\\", "/")
    if any(marker in path for marker in _LIBRARY_MARKERS):
        return None

    repo_posix = repo_dir.as_posix().rstrip("/")
    if path.startswith(repo_posix + "/"):
        return path[len(repo_posix) + 1:]

    pure = PurePosixPath(path)
    if pure.is_absolute() or re.match(r"^[A-Za-z]:/", path):
        # Try the resolved form too (/tmp vs /private/tmp and friends).
        try:
            return Path(path).resolve().relative_to(repo_dir.resolve()).as_posix()
        except (ValueError, OSError):
            return None

    if path.startswith("./"):
        path = path[2:]
    if path.startswith("<"):   # <frozen importlib._bootstrap>, <string>
        return None
    return path


def _find_exception_line(lines: list[str], start: int) -> str | None:
    end = min(len(lines), start + _EXCEPTION_LOOKAHEAD)
    for candidate in lines[start:end]:
        stripped = candidate.strip()
        if _PY_EXCEPTION_LINE.match(stripped):
            return re.sub(r"^E\s+", "", stripped)
    return None


def _parse_line(lines: list[str], idx: int, repo_dir: Path) -> ParsedError | None:
    line = lines[idx]

    m = _PY_FRAME.search(line)
    if m:
        rel = _relativize(m.group("file"), repo_dir)
        if rel is None:
            return None
        message = _find_exception_line(lines, idx + 1) or line.strip()
        return ParsedError(
            file_path=rel,
            line=int(m.group("line")),
            message=message,
            type=classify_error(message),
        )

    m = _TS_ERROR.search(line)
    if m:
        rel = _relativize(m.group("file"), repo_dir)
        if rel is None:
            return None
        return ParsedError(rel, int(m.group("line")), line.strip(), BugCategory.TYPE)

    m = _LINT_ERROR.search(line)
    if m:
        rel = _relativize(m.group("file"), repo_dir)
        if rel is None:
            return None
        return ParsedError(rel, int(m.group("line")), line.strip(), BugCategory.LINTING)

    m = _GENERIC_ERROR.search(line)
    if m:
        rel = _relativize(m.group("file"), repo_dir)
        if rel is None:
            return None
        return ParsedError(rel, int(m.group("line")), line.strip(), classify_error(line))

    return None


# ═══════════════════════════════════════════════════════════════════════
#  PUBLIC API
# ═══════════════════════════════════════════════════════════════════════

def parse_errors(output: str, repo_dir: str | Path) -> list[ParsedError]:
    """Extract failure locations from *output*, in order of first appearance."""
    root = Path(repo_dir)
    lines = output.splitlines()

    errors: list[ParsedError] = []
    seen: set[tuple[str, int, str]] = set()
    for idx in range(len(lines)):
        parsed = _parse_line(lines, idx, root)
        if parsed is None:
            continue
        key = (parsed.file_path, parsed.line, parsed.message)
        if key in seen:
            continue
        seen.add(key)
        errors.append(parsed)

    logger.debug("Parsed %d error location(s) from %d line(s)", len(errors), len(lines))
    return errors
