"""Background orchestrator – drives the self-healing loop for one session.

Workflow:
  1. Parse the repository URL (failure → ``failed``, no sandbox)
  2. Fork under the bot account (policy: fall back to the original repo,
     or abort when ``fork_required``)
  3. Clone into the session sandbox, check out the healing branch
  4. Install dependencies once
  5. Up to ``max_attempts`` times: test → scan → fix → commit/push
  6. Final verification, score, pull request
  7. Clean up the sandbox (always) and retire the progress channel
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from agents.bug_scanner import BugScanner
from agents.fixer import FixEngineer, FixOutcome, is_test_file
from agents.run_memory import BugLedger
from agents.test_runner import TestResult, detect_test_command, install_dependencies, run_tests
from sandbox.executor import cleanup_sandbox, get_sandbox_dir
from shared.errors import ForkFailed, InvalidRepoUrl, PushFailed
from shared.schemas import Attempt, AttemptStatus, ParsedError, Score, Session, SessionStatus, utcnow_iso
from shared.scoring import calculate_score

from app.events import ProgressBroker, SessionEmitter
from app.services.attestation import AttestationRecorder, FixAttestation
from app.services.github_service import (
    GitHubService,
    RepoRef,
    build_branch_name,
    build_pull_request,
    parse_repo_url,
)
from app.store import SessionRepository

logger = logging.getLogger(__name__)

EVENT_OUTPUT_LIMIT = 2000
ATTEMPT_OUTPUT_LIMIT = 5000


@dataclass
class HealingPolicy:
    """Per-deployment knobs of the healing loop."""

    max_attempts: int = 5
    session_timeout_s: float = 300.0
    fork_required: bool = False
    grace_period_s: float = 10.0
    sandbox_base: str | None = None
    default_team_name: str = "TECH_CHAOS"
    default_leader_name: str = "ANURAG_MISHRA"


@dataclass
class _Workspace:
    """Where the session's code lives and where its pushes and PR go."""

    upstream: RepoRef
    repo_dir: Path
    branch: str
    head_owner: str
    forked: bool


class HealingOrchestrator:
    def __init__(
        self,
        github: GitHubService,
        scanner: BugScanner,
        fixer: FixEngineer,
        sessions: SessionRepository,
        broker: ProgressBroker,
        attestations: AttestationRecorder | None = None,
        policy: HealingPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.github = github
        self.scanner = scanner
        self.fixer = fixer
        self.sessions = sessions
        self.broker = broker
        self.attestations = attestations or AttestationRecorder(enabled=False)
        self.policy = policy or HealingPolicy()
        self._clock = clock
        # Keep strong references so background tasks aren't garbage-collected.
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def active_sessions(self) -> int:
        return len(self._tasks)

    # ── Entry point ──────────────────────────────────────────────────

    def start_healing(
        self,
        repo_url: str,
        user_id: str,
        team_name: str | None = None,
        leader_name: str | None = None,
    ) -> str:
        """Create a session, launch its loop in the background, return its id.

        Must be called from a running event loop.
        """
        session = Session(
            id=str(uuid.uuid4()),
            user_id=user_id,
            repo_url=repo_url,
            team_name=team_name or self.policy.default_team_name,
            leader_name=leader_name or self.policy.default_leader_name,
            max_attempts=self.policy.max_attempts,
        )
        self.sessions.create(session)
        self.broker.create(session.id)

        task = asyncio.create_task(self.execute_session(session), name=f"healing-{session.id}")
        self._tasks[session.id] = task
        task.add_done_callback(lambda t: self._handle_task_done(t, session.id))
        logger.info("Session %s queued for %s", session.id, repo_url)
        return session.id

    def _handle_task_done(self, task: asyncio.Task, session_id: str) -> None:
        """Callback invoked when a session task finishes (success or crash)."""
        self._tasks.pop(session_id, None)
        if task.cancelled():
            self.sessions.update(session_id, status=SessionStatus.FAILED, error="Healing task was cancelled")
        elif exc := task.exception():
            logger.error("Session %s crashed: %s", session_id, exc, exc_info=exc)
            self.sessions.update(session_id, status=SessionStatus.FAILED, error=f"Unhandled error: {exc}")

    # ── Session lifecycle ────────────────────────────────────────────

    async def execute_session(self, session: Session) -> None:
        """Run the whole healing loop for *session*.  Never raises."""
        sid = session.id
        emitter = self.broker.create(sid)
        started = self._clock()
        await asyncio.to_thread(self.sessions.update, sid, started_at=utcnow_iso())

        try:
            upstream = parse_repo_url(session.repo_url)
        except InvalidRepoUrl as exc:
            await asyncio.to_thread(
                self.sessions.update, sid, status=SessionStatus.FAILED, error=str(exc), completed_at=utcnow_iso(),
            )
            emitter.error(str(exc))
            await self.broker.remove_after_grace_period(sid, self.policy.grace_period_s)
            return

        await asyncio.to_thread(self.sessions.update, sid, repo_owner=upstream.owner, repo_name=upstream.repo)
        ledger = BugLedger()

        try:
            emitter.log(f"Starting self-healing for {session.repo_url}")
            ws = await self._prepare_workspace(session, upstream, emitter)
            await self._heal(session, ws, ledger, emitter, started)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception("Session %s failed", sid)
            emitter.error(message)
            emitter.log(f"Fatal error: {message}")
            await asyncio.to_thread(
                self.sessions.finalize, sid, SessionStatus.FAILED, ledger.bugs, ledger.attempts, None, error=message,
            )
        finally:
            try:
                await asyncio.to_thread(cleanup_sandbox, sid, self.policy.sandbox_base)
            except Exception:
                logger.exception("Sandbox cleanup failed for %s", sid)
            await self.broker.remove_after_grace_period(sid, self.policy.grace_period_s)

    async def _prepare_workspace(
        self, session: Session, upstream: RepoRef, emitter: SessionEmitter
    ) -> _Workspace:
        sid = session.id

        # ── Fork ──
        emitter.status(SessionStatus.CLONING.value, f"Forking {upstream.full_name}...")
        fork = await asyncio.to_thread(self.github.fork_repository, upstream.owner, upstream.repo)
        if fork.success:
            emitter.log(f"Forked to {fork.owner}/{fork.repo}")
        elif self.policy.fork_required:
            raise ForkFailed(fork.error or "Fork failed")
        else:
            emitter.log(f"Fork failed: {fork.error}")
            emitter.log("Falling back to direct repository operations")

        # ── Clone ──
        await asyncio.to_thread(self.sessions.update, sid, status=SessionStatus.CLONING)
        emitter.status(SessionStatus.CLONING.value, f"Cloning {'fork' if fork.success else 'repository'}...")
        sandbox_dir = get_sandbox_dir(sid, self.policy.sandbox_base)
        repo_dir = await asyncio.to_thread(
            self.github.clone_repository,
            session.repo_url,
            sandbox_dir,
            fork.owner if fork.success else None,
            fork.repo if fork.success else None,
        )
        emitter.log(f"{'Fork' if fork.success else 'Repository'} cloned successfully")

        # ── Branch ──
        branch = build_branch_name(session.team_name, session.leader_name)
        await asyncio.to_thread(self.github.create_branch, repo_dir, branch)
        emitter.log(f"Branch ready: {branch}")

        await asyncio.to_thread(
            self.sessions.update,
            sid,
            branch_name=branch,
            fork_owner=fork.owner if fork.success else None,
            fork_url=fork.url if fork.success else None,
        )
        return _Workspace(
            upstream=upstream,
            repo_dir=Path(repo_dir),
            branch=branch,
            head_owner=fork.owner if fork.success else upstream.owner,
            forked=fork.success,
        )

    # ── Healing loop ─────────────────────────────────────────────────

    async def _heal(
        self,
        session: Session,
        ws: _Workspace,
        ledger: BugLedger,
        emitter: SessionEmitter,
        started: float,
    ) -> None:
        sid = session.id
        max_attempts = self.policy.max_attempts

        # ── Install once ──
        test_command = await asyncio.to_thread(detect_test_command, ws.repo_dir)
        if test_command.install_command:
            emitter.log(f"Installing dependencies: {test_command.install_command}")
            installed = await asyncio.to_thread(install_dependencies, ws.repo_dir, test_command.install_command)
            if not installed:
                emitter.log("Dependency install reported problems; running tests anyway")

        attempts_run = 0
        for attempt in range(1, max_attempts + 1):
            if self._timed_out(started):
                emitter.log(f"Session time budget of {self.policy.session_timeout_s:g}s spent; final verification")
                break

            attempts_run = attempt
            attempt_start = self._clock()
            emitter.log(f"━━━ Attempt {attempt}/{max_attempts} ━━━")
            await asyncio.to_thread(self.sessions.update, sid, current_attempt=attempt, status=SessionStatus.TESTING)
            emitter.status(SessionStatus.TESTING.value, f"Running tests (attempt {attempt})...")

            result = await asyncio.to_thread(run_tests, ws.repo_dir, True, test_command)
            emitter.test_result(
                result.passed, result.full_output[:EVENT_OUTPUT_LIMIT], len(result.errors), attempt,
            )

            if result.passed:
                emitter.log(f"ALL TESTS PASSED on attempt {attempt}!")
                self._record_attempt(ledger, emitter, attempt, AttemptStatus.PASSED, result, 0, 0, attempt_start)
                await self._finish(session, ws, ledger, emitter, SessionStatus.COMPLETED, True, attempt, started)
                return

            emitter.log(f"Tests failed. {len(result.errors)} error location(s) detected.")

            # ── Scan ──
            await asyncio.to_thread(self.sessions.update, sid, status=SessionStatus.SCANNING)
            emitter.status(SessionStatus.SCANNING.value, f"AI scanning for bugs (attempt {attempt})...")
            scanned = await self.scanner.scan(
                ws.repo_dir, result.errors, test_output=result.full_output, on_log=emitter.log,
            )
            active = ledger.register(scanned, result.errors)
            if not active:
                if scanned:
                    emitter.log("Scanner only reported already-fixed locations")
                synthesized = ledger.synthesize(_fix_targets(result.errors))
                active = ledger.register(synthesized, result.errors)
                if active:
                    emitter.log(f"Using {len(active)} bug(s) taken from the parsed test errors")

            for bug in active:
                emitter.bug_found(bug)
            emitter.log(f"{len(active)} bug(s) to fix ({ledger.total} known, {ledger.fixed_count} fixed)")

            if not active:
                if ledger.fixed_count > 0:
                    # Everything identified so far has been fixed.
                    emitter.log("No unresolved bugs remain; treating the session as healed")
                    self._record_attempt(ledger, emitter, attempt, AttemptStatus.PASSED, result, 0, 0, attempt_start)
                    await self._finish(session, ws, ledger, emitter, SessionStatus.COMPLETED, False, attempt, started)
                    return
                emitter.log("Tests are failing but no bug could be located")
                self._record_attempt(ledger, emitter, attempt, AttemptStatus.FAILED, result, 0, 0, attempt_start)
                await asyncio.to_thread(self.sessions.update, sid, bugs=ledger.bugs, attempts=ledger.attempts)
                continue

            if self._timed_out(started):
                emitter.log("Session time budget spent before fixing; final verification")
                self._record_attempt(ledger, emitter, attempt, AttemptStatus.FAILED, result, len(active), 0, attempt_start)
                await asyncio.to_thread(self.sessions.update, sid, bugs=ledger.bugs, attempts=ledger.attempts)
                break

            # ── Fix ──
            await asyncio.to_thread(self.sessions.update, sid, status=SessionStatus.FIXING)
            emitter.status(SessionStatus.FIXING.value, f"Engineering fixes (attempt {attempt})...")
            report = await self.fixer.fix_all(
                ws.repo_dir,
                active,
                result.full_output,
                on_fix_applied=lambda o: emitter.fix_applied(o.file_path, o.description, o.bug_id),
                on_log=emitter.log,
            )
            for outcome in report.results:
                if outcome.applied:
                    ledger.mark_fixed(outcome.bug_id, attempt)
            emitter.log(f"Applied {report.bugs_fixed} fix(es) across {report.files_changed} file(s)")

            # ── Commit & push ──
            await asyncio.to_thread(self.sessions.update, sid, status=SessionStatus.PUSHING)
            emitter.status(SessionStatus.PUSHING.value, f"Committing and pushing (attempt {attempt})...")
            commit_message = f"Fix {report.bugs_fixed} bug(s) - attempt {attempt}/{max_attempts}"
            commit_sha = await self._commit_and_push(ws, commit_message, emitter)
            if commit_sha:
                await self._attest(sid, ledger, report.results, commit_sha, emitter)

            self._record_attempt(
                ledger, emitter, attempt, AttemptStatus.FAILED, result,
                len(active), report.bugs_fixed, attempt_start,
                commit_sha=commit_sha,
                commit_message=f"[AI-AGENT] {commit_message}" if commit_sha else None,
            )
            await asyncio.to_thread(self.sessions.update, sid, bugs=ledger.bugs, attempts=ledger.attempts)

        # ── Final verification ──
        emitter.log("━━━ Final Verification ━━━")
        await asyncio.to_thread(self.sessions.update, sid, status=SessionStatus.TESTING)
        emitter.status(SessionStatus.TESTING.value, "Running final test suite...")
        final = await asyncio.to_thread(run_tests, ws.repo_dir, True, test_command)
        emitter.test_result(final.passed, final.full_output[:EVENT_OUTPUT_LIMIT], len(final.errors), attempts_run)

        if final.passed:
            status = SessionStatus.COMPLETED
        elif ledger.fixed_count > 0:
            status = SessionStatus.PARTIAL_SUCCESS
        else:
            status = SessionStatus.FAILED
        await self._finish(session, ws, ledger, emitter, status, final.passed, max(attempts_run, 1), started)

    # ── Steps ────────────────────────────────────────────────────────

    def _timed_out(self, started: float) -> bool:
        return self._clock() - started >= self.policy.session_timeout_s

    def _record_attempt(
        self,
        ledger: BugLedger,
        emitter: SessionEmitter,
        attempt: int,
        status: AttemptStatus,
        result: TestResult,
        bugs_found: int,
        bugs_fixed: int,
        attempt_start: float,
        commit_sha: str | None = None,
        commit_message: str | None = None,
    ) -> Attempt:
        duration_ms = int((self._clock() - attempt_start) * 1000)
        record = Attempt(
            attempt=attempt,
            status=status,
            test_output=result.full_output[:ATTEMPT_OUTPUT_LIMIT],
            bugs_found=bugs_found,
            bugs_fixed=bugs_fixed,
            duration_ms=duration_ms,
            commit_sha=commit_sha,
            commit_message=commit_message,
        )
        ledger.append_attempt(record)
        emitter.attempt_complete(attempt, status.value, bugs_found, bugs_fixed, duration_ms)
        return record

    async def _commit_and_push(self, ws: _Workspace, message: str, emitter: SessionEmitter) -> str | None:
        try:
            sha = await asyncio.to_thread(self.github.commit_changes, ws.repo_dir, message)
        except Exception as exc:
            logger.warning("Commit failed: %s", exc)
            emitter.log(f"Commit failed: {exc}")
            return None
        if not sha:
            emitter.log("No file changes to commit")
            return None

        try:
            await asyncio.to_thread(self.github.push_branch, ws.repo_dir, ws.branch)
            emitter.log(f"Pushed commit {sha[:7]}: [AI-AGENT] {message}")
        except PushFailed as exc:
            emitter.log(f"Push failed: {exc}")
        return sha

    async def _attest(
        self,
        session_id: str,
        ledger: BugLedger,
        outcomes: list[FixOutcome],
        commit_sha: str,
        emitter: SessionEmitter,
    ) -> None:
        if not self.attestations.enabled:
            return
        emitter.log("Recording fix attestations...")
        for outcome in outcomes:
            if not outcome.applied:
                continue
            bug = ledger.get(outcome.bug_id)
            attestation = FixAttestation(
                session_id=session_id,
                bug_category=bug.category.value if bug else "UNKNOWN",
                file_path=outcome.file_path,
                line=bug.line if bug else 0,
                error_message=bug.message if bug else "Unknown error",
                fix_description=outcome.description,
                commit_sha=commit_sha,
            )
            result = await self.attestations.record_fix_attestation(attestation)
            if result.success:
                emitter.log(f"Attestation #{result.attestation_id} recorded → {result.explorer_url}")
            else:
                logger.info("Attestation skipped for %s: %s", outcome.file_path, result.error)

    async def _finish(
        self,
        session: Session,
        ws: _Workspace,
        ledger: BugLedger,
        emitter: SessionEmitter,
        status: SessionStatus,
        tests_passed: bool,
        attempts: int,
        started: float,
    ) -> None:
        sid = session.id
        total_commits = await asyncio.to_thread(self.github.get_commit_count, ws.repo_dir, ws.branch)
        score = calculate_score(
            total_bugs=ledger.total,
            bugs_fixed=ledger.fixed_count,
            tests_passed=tests_passed,
            attempts=attempts,
            total_commits=total_commits,
            elapsed_seconds=self._clock() - started,
        )

        await asyncio.to_thread(
            self.sessions.finalize, sid, status, ledger.bugs, ledger.attempts, score, current_attempt=attempts,
        )
        emitter.score(score)

        if status is not SessionStatus.FAILED:
            await self._open_pull_request(sid, ws, score, total_commits, emitter)

        if status is SessionStatus.COMPLETED:
            emitter.status(status.value, f"Self-healing complete! Score: {score.final_score}/100")
        elif status is SessionStatus.PARTIAL_SUCCESS:
            emitter.status(
                status.value,
                f"Max attempts reached. Fixed {score.bugs_fixed}/{score.total_bugs} bugs. Score: {score.final_score}/100",
            )
        else:
            emitter.status(status.value, f"No bug could be fixed. Score: {score.final_score}/100")

    async def _open_pull_request(
        self,
        session_id: str,
        ws: _Workspace,
        score: Score,
        total_commits: int,
        emitter: SessionEmitter,
    ) -> None:
        if total_commits == 0:
            emitter.log("Branch has no new commits; no pull request needed")
            return

        base = await asyncio.to_thread(self.github.get_default_branch, ws.repo_dir)
        title, body = build_pull_request(
            branch=ws.branch,
            bugs_fixed=score.bugs_fixed,
            total_bugs=score.total_bugs,
            attempts=score.attempts,
            max_attempts=self.policy.max_attempts,
            score=score.final_score,
            base=base,
            forked=ws.forked,
        )
        emitter.log(f"Creating pull request from {'fork' if ws.forked else 'branch'}...")
        pr = await asyncio.to_thread(
            self.github.create_pull_request,
            ws.upstream.owner, ws.upstream.repo, ws.head_owner, ws.branch, base, title, body,
        )
        if pr.success:
            emitter.log(f"PR created: {pr.pr_url}")
            await asyncio.to_thread(self.sessions.update, session_id, pr_url=pr.pr_url, pr_number=pr.pr_number)
        else:
            emitter.log(f"PR creation failed: {pr.error}")
            if not ws.forked:
                emitter.log("Token may need 'public_repo' or 'repo' scope")


def _fix_targets(errors: list[ParsedError]) -> list[ParsedError]:
    """Parsed errors worth fixing: source locations first, test files only as a last resort."""
    source = [e for e in errors if not is_test_file(e.file_path)]
    return source or list(errors)
