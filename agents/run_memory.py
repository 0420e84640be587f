"""Bug ledger – session-wide, location-keyed memory of detected bugs.

Accumulates every bug seen across healing attempts.  A bug is identified by
its ``(file_path, line)`` location, so re-detections in later attempts map
back onto the original record instead of inflating the totals.  Attempt
records are append-only; previous entries are never overwritten.

The aggregated state is exported via ``to_dict()``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable

from shared.schemas import Attempt, Bug, BugCategory, ParsedError

logger = logging.getLogger(__name__)

_HIGH_SEVERITY = {BugCategory.SYNTAX, BugCategory.IMPORT}


def new_bug_id() -> str:
    return f"bug-{uuid.uuid4().hex[:8]}"


class BugLedger:
    """Location-keyed bug list plus the append-only attempt history.

    Rules:
      • a location is registered once; later sightings reuse the record
      • a fixed location stays resolved unless the current test run reports
        a *different* error at exactly that location (reintroduction)
      • ``append_attempt`` only adds
    """

    def __init__(self, bugs: Iterable[Bug] = ()) -> None:
        self._bugs: list[Bug] = []
        self._by_location: dict[tuple[str, int], Bug] = {}
        self._attempts: list[Attempt] = []
        for bug in bugs:
            if bug.location not in self._by_location:
                self._bugs.append(bug)
                self._by_location[bug.location] = bug

    # ── Read-only properties ─────────────────────────────────────────

    @property
    def bugs(self) -> list[Bug]:
        return list(self._bugs)

    @property
    def attempts(self) -> list[Attempt]:
        return list(self._attempts)

    @property
    def total(self) -> int:
        return len(self._bugs)

    @property
    def fixed_count(self) -> int:
        return sum(1 for b in self._bugs if b.fixed)

    def unresolved(self) -> list[Bug]:
        return [b for b in self._bugs if not b.fixed]

    def get(self, bug_id: str) -> Bug | None:
        return next((b for b in self._bugs if b.id == bug_id), None)

    # ── Registration ─────────────────────────────────────────────────

    def register(
        self,
        bugs: Iterable[Bug],
        parsed_errors: Iterable[ParsedError] = (),
    ) -> list[Bug]:
        """Merge *bugs* into the ledger and return the ones to fix this attempt.

        Args:
            bugs:          Candidates from the scanner (or synthesised).
            parsed_errors: The current test run's parsed errors, consulted
                           only to decide whether a fixed location regressed.
        """
        current_errors: dict[tuple[str, int], list[str]] = {}
        for err in parsed_errors:
            current_errors.setdefault((err.file_path, err.line), []).append(err.message)

        active: list[Bug] = []
        active_locations: set[tuple[str, int]] = set()

        for candidate in bugs:
            loc = candidate.location
            if loc in active_locations:
                continue

            known = self._by_location.get(loc)
            if known is None:
                self._bugs.append(candidate)
                self._by_location[loc] = candidate
                active.append(candidate)
                active_locations.add(loc)
                continue

            if not known.fixed:
                active.append(known)
                active_locations.add(loc)
                continue

            new_messages = [m for m in current_errors.get(loc, []) if m != known.message]
            if new_messages:
                logger.info(
                    "Reopening %s at %s:%d (fixed in attempt %s): %s",
                    known.id, known.file_path, known.line, known.fixed_at_attempt, new_messages[0],
                )
                known.fixed = False
                known.fixed_at_attempt = None
                known.message = new_messages[0]
                active.append(known)
                active_locations.add(loc)
            else:
                logger.debug("Skipping already-fixed location %s:%d", *loc)

        return active

    @staticmethod
    def synthesize(parsed_errors: Iterable[ParsedError]) -> list[Bug]:
        """Build bug records straight from parsed test errors."""
        bugs: list[Bug] = []
        seen: set[tuple[str, int]] = set()
        for err in parsed_errors:
            loc = (err.file_path, err.line)
            if loc in seen:
                continue
            seen.add(loc)
            bugs.append(Bug(
                id=new_bug_id(),
                category=err.type,
                file_path=err.file_path,
                line=err.line,
                message=err.message,
                severity="high" if err.type in _HIGH_SEVERITY else "medium",
            ))
        return bugs

    # ── Mutation ─────────────────────────────────────────────────────

    def mark_fixed(self, bug_id: str, attempt: int) -> bool:
        """Mark *bug_id* fixed in *attempt*.  Returns False for unknown ids."""
        bug = self.get(bug_id)
        if bug is None:
            logger.warning("mark_fixed: unknown bug id %s", bug_id)
            return False
        bug.fixed = True
        bug.fixed_at_attempt = attempt
        return True

    def append_attempt(self, attempt: Attempt) -> None:
        self._attempts.append(attempt)

    # ── Export ────────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "bugs": [b.to_dict() for b in self._bugs],
            "attempts": [a.to_dict() for a in self._attempts],
            "summary": {
                "total_bugs": self.total,
                "bugs_fixed": self.fixed_count,
                "unresolved": len(self.unresolved()),
                "total_attempts": len(self._attempts),
                "unique_files": len({b.file_path for b in self._bugs}),
            },
        }
