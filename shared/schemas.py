"""Shared schemas used across agents and backend.

Every record round-trips through ``to_dict()`` / ``from_dict()`` so the
session store can persist nested bugs, attempts and the score without loss.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Enums ────────────────────────────────────────────────────────────

class BugCategory(str, Enum):
    SYNTAX = "SYNTAX"
    LINTING = "LINTING"
    RUNTIME = "RUNTIME"
    LOGIC = "LOGIC"
    IMPORT = "IMPORT"
    TYPE = "TYPE"
    DEPENDENCY = "DEPENDENCY"

    @classmethod
    def coerce(cls, raw: Any, default: "BugCategory | None" = None) -> "BugCategory":
        """Map loose model output ("type_error", "Import") onto a category."""
        text = str(raw or "").strip().upper()
        if text == "TYPE_ERROR":
            text = "TYPE"
        try:
            return cls(text)
        except ValueError:
            return default or cls.RUNTIME


class SessionStatus(str, Enum):
    CLONING = "cloning"
    SCANNING = "scanning"
    TESTING = "testing"
    FIXING = "fixing"
    PUSHING = "pushing"
    COMPLETED = "completed"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionStatus.COMPLETED,
            SessionStatus.PARTIAL_SUCCESS,
            SessionStatus.FAILED,
        )


class AttemptStatus(str, Enum):
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


# ── Records ──────────────────────────────────────────────────────────

@dataclass
class ParsedError:
    """One failure location extracted from test output."""

    file_path: str
    line: int
    message: str
    type: BugCategory

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "line": self.line,
            "message": self.message,
            "type": self.type.value,
        }


@dataclass
class Bug:
    """A detected defect.  Unique per session by ``(file_path, line)``."""

    id: str
    category: BugCategory
    file_path: str
    line: int
    message: str
    severity: str = "medium"    # high | medium | low
    fixed: bool = False
    fixed_at_attempt: int | None = None

    @property
    def location(self) -> tuple[str, int]:
        return (self.file_path, self.line)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Bug":
        return cls(
            id=data["id"],
            category=BugCategory.coerce(data.get("category")),
            file_path=data.get("file_path", ""),
            line=int(data.get("line", 0)),
            message=data.get("message", ""),
            severity=data.get("severity", "medium"),
            fixed=bool(data.get("fixed", False)),
            fixed_at_attempt=data.get("fixed_at_attempt"),
        )


@dataclass(frozen=True)
class Attempt:
    """One iteration of the healing loop.  Immutable once recorded."""

    attempt: int
    status: AttemptStatus
    test_output: str
    bugs_found: int
    bugs_fixed: int
    duration_ms: int
    commit_sha: str | None = None
    commit_message: str | None = None
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "status": self.status.value,
            "test_output": self.test_output,
            "bugs_found": self.bugs_found,
            "bugs_fixed": self.bugs_fixed,
            "commit_sha": self.commit_sha,
            "commit_message": self.commit_message,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attempt":
        return cls(
            attempt=int(data["attempt"]),
            status=AttemptStatus(data["status"]),
            test_output=data.get("test_output", ""),
            bugs_found=int(data.get("bugs_found", 0)),
            bugs_fixed=int(data.get("bugs_fixed", 0)),
            duration_ms=int(data.get("duration_ms", 0)),
            commit_sha=data.get("commit_sha"),
            commit_message=data.get("commit_message"),
            timestamp=data.get("timestamp") or utcnow_iso(),
        )


@dataclass(frozen=True)
class Score:
    total_bugs: int
    bugs_fixed: int
    tests_passed: bool
    attempts: int
    total_commits: int
    time_seconds: int
    speed_bonus: int
    commit_penalty: int
    final_score: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Score":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__})


@dataclass
class Session:
    """One healing run, as persisted in the session store."""

    id: str
    user_id: str
    repo_url: str
    team_name: str = ""
    leader_name: str = ""
    repo_owner: str = ""
    repo_name: str = ""
    status: SessionStatus = SessionStatus.CLONING
    current_attempt: int = 0
    max_attempts: int = 5
    branch_name: str = ""
    fork_owner: str | None = None
    fork_url: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    bugs: list[Bug] = field(default_factory=list)
    attempts: list[Attempt] = field(default_factory=list)
    score: Score | None = None
    error: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None
    updated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "repo_url": self.repo_url,
            "team_name": self.team_name,
            "leader_name": self.leader_name,
            "repo_owner": self.repo_owner,
            "repo_name": self.repo_name,
            "status": self.status.value,
            "current_attempt": self.current_attempt,
            "max_attempts": self.max_attempts,
            "branch_name": self.branch_name,
            "fork_owner": self.fork_owner,
            "fork_url": self.fork_url,
            "pr_url": self.pr_url,
            "pr_number": self.pr_number,
            "bugs": [b.to_dict() for b in self.bugs],
            "attempts": [a.to_dict() for a in self.attempts],
            "score": self.score.to_dict() if self.score else None,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        score = data.get("score")
        return cls(
            id=data["id"],
            user_id=data.get("user_id", ""),
            repo_url=data.get("repo_url", ""),
            team_name=data.get("team_name", ""),
            leader_name=data.get("leader_name", ""),
            repo_owner=data.get("repo_owner", ""),
            repo_name=data.get("repo_name", ""),
            status=SessionStatus(data.get("status", SessionStatus.CLONING.value)),
            current_attempt=int(data.get("current_attempt", 0)),
            max_attempts=int(data.get("max_attempts", 5)),
            branch_name=data.get("branch_name", ""),
            fork_owner=data.get("fork_owner"),
            fork_url=data.get("fork_url"),
            pr_url=data.get("pr_url"),
            pr_number=data.get("pr_number"),
            bugs=[Bug.from_dict(b) for b in data.get("bugs", [])],
            attempts=[Attempt.from_dict(a) for a in data.get("attempts", [])],
            score=Score.from_dict(score) if score else None,
            error=data.get("error"),
            created_at=data.get("created_at") or utcnow_iso(),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            updated_at=data.get("updated_at") or utcnow_iso(),
        )
