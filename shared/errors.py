"""Error taxonomy for the self-healing pipeline.

Only URL parsing, forking (when a fork is required) and cloning abort a
session.  Everything else is caught and logged at the phase that raised it.
"""

from __future__ import annotations


class HealingError(Exception):
    """Base class for all errors raised by the healing pipeline."""


class InvalidRepoUrl(HealingError):
    """The repository URL is not an https://github.com/<owner>/<repo> URL."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Invalid GitHub URL: {url}")


class ForkFailed(HealingError):
    """Forking failed while the fork-required policy is active."""


class CloneFailed(HealingError):
    """``git clone`` exited non-zero.  ``stderr`` is already redacted."""

    def __init__(self, target: str, stderr: str):
        self.target = target
        self.stderr = stderr
        super().__init__(f"Failed to clone {target}: {stderr}")


class PushFailed(HealingError):
    """``git push`` was rejected (auth, protected branch, network)."""


class GitCommandError(HealingError):
    """Raised when a git subprocess exits with a non-zero code."""

    def __init__(self, cmd: list[str], code: int, stderr: str):
        self.cmd = cmd
        self.code = code
        self.stderr = stderr
        super().__init__(f"git {' '.join(cmd[1:])} failed (exit {code}): {stderr}")


class GitHubAPIError(HealingError):
    """Non-2xx response from the GitHub REST API."""

    def __init__(self, status_code: int, message: str, payload: dict | None = None):
        self.status_code = status_code
        self.message = message
        self.payload = payload or {}
        super().__init__(f"GitHub API error {status_code}: {message}")

    @property
    def transient(self) -> bool:
        return self.status_code >= 500 or self.status_code == 429
