"""Sandbox executor – session-scoped working directories and shell commands.

Lifecycle:
  1. ``get_sandbox_dir(session_id)`` derives the directory from the session id
  2. git / installers / test runners execute inside it via ``run_shell``
  3. ``cleanup_sandbox(session_id)`` removes it (always, even on failure)

Every command runs with a hard timeout.  On expiry the whole process group is
killed and ``ShellTimeout`` is raised, which callers can tell apart from a
non-zero exit code.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import stat
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

from shared.errors import HealingError

logger = logging.getLogger(__name__)

_IS_WINDOWS = sys.platform.startswith("win")


# ── Result dataclass ─────────────────────────────────────────────────

@dataclass
class ShellResult:
    """Structured output from one shell command."""

    exit_code: int
    stdout: str
    stderr: str
    duration_s: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout + stderr, trimmed."""
        return f"{self.stdout}\n{self.stderr}".strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_s": round(self.duration_s, 2),
            "success": self.success,
        }


class ShellTimeout(HealingError):
    """The command exceeded its timeout and was force-terminated."""

    def __init__(self, command: str, timeout_s: float, stdout: str = "", stderr: str = ""):
        self.command = command
        self.timeout_s = timeout_s
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Command timed out after {timeout_s:g}s: {command}")


# ── Sandbox directories ──────────────────────────────────────────────

def sandbox_root(base: str | Path | None = None) -> Path:
    """Return the directory under which every session sandbox lives."""
    if base is not None:
        return Path(base)
    configured = os.getenv("SANDBOX_ROOT", "")
    if configured:
        return Path(configured)
    return Path(tempfile.gettempdir()) / "self-healing"


def get_sandbox_dir(session_id: str, base: str | Path | None = None) -> Path:
    """Deterministic sandbox path for *session_id*.

    The id is reduced to ``[A-Za-z0-9_-]`` so it can never escape the root.
    """
    safe = re.sub(r"[^A-Za-z0-9_-]", "_", session_id).strip("_")
    if not safe:
        raise ValueError(f"Unusable session id for a sandbox: {session_id!r}")
    return sandbox_root(base) / safe


def cleanup_sandbox(session_id: str, base: str | Path | None = None) -> None:
    """Recursively remove the session's sandbox.  Idempotent, never raises."""
    target = get_sandbox_dir(session_id, base)
    if not target.exists():
        return
    logger.info("Cleaning up sandbox: %s", target)
    if sys.version_info >= (3, 12):
        shutil.rmtree(target, onexc=_force_remove)
    else:
        shutil.rmtree(target, onerror=_force_remove)
    if target.exists():
        logger.warning("Sandbox %s could not be fully removed", target)


def _force_remove(func, path, _exc) -> None:
    """rmtree error hook: clear read-only bits (git objects on Windows) and retry."""
    try:
        os.chmod(path, stat.S_IWRITE)
        func(path)
    except OSError as exc:
        logger.debug("Could not remove %s: %s", path, exc)


# ── Shell execution ──────────────────────────────────────────────────

def run_shell(
    command: str | Sequence[str],
    cwd: str | Path,
    timeout_s: float,
    env: Mapping[str, str] | None = None,
) -> ShellResult:
    """Run *command* in *cwd* and capture its output.

    A string is executed through the platform shell; a sequence is executed
    directly.  *env* is merged over the current environment.

    Raises:
        ShellTimeout: the command ran longer than *timeout_s*.
        OSError: the executable could not be launched.
    """
    use_shell = isinstance(command, str)
    display = command if use_shell else " ".join(command)
    merged_env = {**os.environ, **(env or {})}

    popen_kwargs: dict[str, Any] = {}
    if _IS_WINDOWS:
        popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        popen_kwargs["start_new_session"] = True

    logger.debug("$ %s  (cwd=%s, timeout=%ss)", display, cwd, timeout_s)
    t0 = time.monotonic()
    proc = subprocess.Popen(
        command if use_shell else list(command),
        cwd=str(cwd),
        shell=use_shell,
        env=merged_env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        **popen_kwargs,
    )
    try:
        raw_out, raw_err = proc.communicate(timeout=timeout_s)
    except subprocess.TimeoutExpired:
        _kill_tree(proc)
        raw_out, raw_err = proc.communicate()
        logger.warning("Timed out after %ss: %s", timeout_s, display)
        raise ShellTimeout(display, timeout_s, _decode(raw_out), _decode(raw_err))

    return ShellResult(
        exit_code=proc.returncode,
        stdout=_decode(raw_out),
        stderr=_decode(raw_err),
        duration_s=time.monotonic() - t0,
    )


def _kill_tree(proc: subprocess.Popen) -> None:
    """Force-terminate *proc* and everything it spawned."""
    try:
        if _IS_WINDOWS:
            subprocess.run(
                ["taskkill", "/F", "/T", "/PID", str(proc.pid)],
                capture_output=True,
            )
        else:
            os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, OSError):
        pass  # already gone
    try:
        proc.kill()
    except OSError:
        pass


def _decode(raw: bytes | None) -> str:
    return (raw or b"").decode("utf-8", errors="replace")
