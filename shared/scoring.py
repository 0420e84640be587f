"""Session scoring.

Weights are fixed policy: 60 for the fraction of bugs fixed, 20 for a green
test suite, 10/5 for finishing in few attempts, 10 for finishing under five
minutes, minus one point per commit beyond twenty.
"""

from __future__ import annotations

from shared.schemas import Score

SPEED_BONUS_THRESHOLD_S = 300
COMMIT_PENALTY_THRESHOLD = 20


def calculate_score(
    total_bugs: int,
    bugs_fixed: int,
    tests_passed: bool,
    attempts: int,
    total_commits: int,
    elapsed_seconds: float,
) -> Score:
    """Pure function of the session outcome; the result is clamped to [0, 100]."""
    base = round(bugs_fixed / total_bugs * 60) if total_bugs > 0 else 0

    if tests_passed:
        base += 20

    if attempts <= 2:
        base += 10
    elif attempts <= 3:
        base += 5

    speed_bonus = 10 if elapsed_seconds < SPEED_BONUS_THRESHOLD_S else 0
    commit_penalty = max(0, total_commits - COMMIT_PENALTY_THRESHOLD)

    final = max(0, min(100, base + speed_bonus - commit_penalty))

    return Score(
        total_bugs=total_bugs,
        bugs_fixed=bugs_fixed,
        tests_passed=tests_passed,
        attempts=attempts,
        total_commits=total_commits,
        time_seconds=round(elapsed_seconds),
        speed_bonus=speed_bonus,
        commit_penalty=commit_penalty,
        final_score=final,
    )
