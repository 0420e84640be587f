"""Test Runner – installs dependencies and runs a repository's test suite
inside its sandbox, returning a structured :class:`TestResult`."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agents.bug_classifier.error_classifier import parse_errors
from agents.test_runner.discovery import TestCommand, detect_test_command
from sandbox.executor import ShellTimeout, run_shell
from shared.schemas import ParsedError

logger = logging.getLogger(__name__)

INSTALL_TIMEOUT_S = 180
TEST_TIMEOUT_S = 120

# Plain, non-interactive output from every common runner.
TEST_ENV = {
    "CI": "true",
    "NODE_ENV": "test",
    "FORCE_COLOR": "0",
    "NO_COLOR": "1",
    "PY_COLORS": "0",
}


# ── Result dataclass ─────────────────────────────────────────────────

@dataclass
class TestResult:
    """Outcome of one test-suite run."""

    __test__ = False  # not a pytest class

    passed: bool
    exit_code: int
    stdout: str
    stderr: str
    full_output: str
    framework: str
    duration_ms: int
    errors: list[ParsedError] = field(default_factory=list)
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "exit_code": self.exit_code,
            "framework": self.framework,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
            "errors": [e.to_dict() for e in self.errors],
            "full_output": self.full_output,
        }


# ── Dependency install ───────────────────────────────────────────────

def install_dependencies(repo_dir: str | Path, install_command: str) -> bool:
    """Install the repository's dependencies.  Returns True on success.

    ``npm install`` is upgraded to ``npm ci`` when a lockfile exists, and
    falls back to ``npm install`` once if ``npm ci`` fails.  Failures are
    logged and swallowed: test runs often still work after install warnings.
    """
    root = Path(repo_dir)
    command = install_command
    if install_command == "npm install" and (root / "package-lock.json").is_file():
        command = "npm ci"

    logger.info("Installing dependencies: %s", command)
    if _try_install(root, command):
        return True

    if command == "npm ci":
        logger.warning("npm ci failed, falling back to npm install")
        if _try_install(root, "npm install"):
            return True

    return False


def _try_install(root: Path, command: str) -> bool:
    try:
        result = run_shell(command, cwd=root, timeout_s=INSTALL_TIMEOUT_S, env={"CI": "true"})
    except ShellTimeout:
        logger.warning("Install warning: %s timed out after %ss", command, INSTALL_TIMEOUT_S)
        return False
    except OSError as exc:
        logger.warning("Install warning: could not launch %s: %s", command, exc)
        return False

    if not result.success:
        logger.warning(
            "Install warning (exit %d): %s", result.exit_code, result.stderr.strip()[:200],
        )
        return False

    logger.info("Dependencies installed")
    return True


# ── Test execution ───────────────────────────────────────────────────

def run_tests(
    repo_dir: str | Path,
    skip_install: bool = False,
    test_command: TestCommand | None = None,
) -> TestResult:
    """Run the repository's tests and parse any failures.

    Timeouts and launch failures do not raise; they come back as failed
    results whose output is parsed like any other failure.
    """
    root = Path(repo_dir)
    cmd = test_command or detect_test_command(root)
    logger.info("Detected framework: %s", cmd.framework)

    if not skip_install and cmd.install_command:
        install_dependencies(root, cmd.install_command)

    logger.info("Running: %s", cmd.command)
    t0 = time.monotonic()
    timed_out = False
    try:
        shell = run_shell(cmd.command, cwd=root, timeout_s=TEST_TIMEOUT_S, env=TEST_ENV)
        exit_code, stdout, stderr = shell.exit_code, shell.stdout, shell.stderr
    except ShellTimeout as exc:
        timed_out = True
        exit_code = 124
        stdout = exc.stdout
        stderr = f"{exc.stderr}\nTest run timed out after {TEST_TIMEOUT_S}s".strip()
    except OSError as exc:
        exit_code = 127
        stdout = ""
        stderr = f"Could not launch test command {cmd.command!r}: {exc}"
    duration_ms = int((time.monotonic() - t0) * 1000)

    full_output = f"{stdout}\n{stderr}".strip()

    if exit_code == 0:
        logger.info("Tests PASSED in %dms", duration_ms)
        return TestResult(
            passed=True,
            exit_code=0,
            stdout=stdout,
            stderr=stderr,
            full_output=full_output,
            framework=cmd.framework,
            duration_ms=duration_ms,
        )

    errors = parse_errors(full_output, root)
    logger.info(
        "Tests FAILED (exit code %d%s) in %dms, %d error location(s)",
        exit_code, ", timed out" if timed_out else "", duration_ms, len(errors),
    )
    return TestResult(
        passed=False,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        full_output=full_output,
        framework=cmd.framework,
        duration_ms=duration_ms,
        errors=errors,
        timed_out=timed_out,
    )


__all__ = [
    "TestCommand",
    "TestResult",
    "detect_test_command",
    "install_dependencies",
    "run_tests",
]
