"""FastAPI application entry point."""

import logging
import sys
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents.bug_scanner import BugScanner
from agents.fixer import FixEngineer
from app.config import Settings, settings
from app.events import ProgressBroker
from app.orchestrator import HealingOrchestrator, HealingPolicy
from app.routes import health, sessions
from app.services.attestation import AttestationRecorder
from app.services.github_service import GitHubService
from app.store import InMemorySessionStore, JsonFileSessionStore, SessionRepository

# ── Logging configuration ────────────────────────────────────────────

def _configure_logging() -> None:
    """Set up root logger with console + file handlers."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    # Ensure log directory exists
    log_path = Path(settings.LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Console handler
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(log_level)
    console.setFormatter(fmt)

    # File handler (append mode so logs persist across restarts)
    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)  # always capture DEBUG to file
    file_handler.setFormatter(fmt)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    # Avoid duplicate handlers on reload
    root.handlers.clear()
    root.addHandler(console)
    root.addHandler(file_handler)

    # Quiet noisy third-party loggers
    for noisy in ("httpcore", "httpx", "urllib3", "github", "asyncio", "watchfiles"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


_configure_logging()
_logger = logging.getLogger(__name__)


# ── Service wiring ───────────────────────────────────────────────────

def build_orchestrator(cfg: Settings) -> HealingOrchestrator:
    """Assemble the orchestrator and its collaborators from *cfg*."""
    store = JsonFileSessionStore(cfg.SESSION_STORE_DIR) if cfg.SESSION_STORE_DIR else InMemorySessionStore()
    policy = HealingPolicy(
        max_attempts=cfg.MAX_ATTEMPTS,
        session_timeout_s=cfg.SESSION_TIMEOUT_SECONDS,
        fork_required=cfg.FORK_REQUIRED,
        grace_period_s=cfg.EMITTER_GRACE_SECONDS,
        sandbox_base=cfg.SANDBOX_ROOT or None,
        default_team_name=cfg.DEFAULT_TEAM_NAME,
        default_leader_name=cfg.DEFAULT_LEADER_NAME,
    )
    llm = dict(api_key=cfg.GEMINI_API_KEY, api_base=cfg.GEMINI_API_BASE, model=cfg.GEMINI_MODEL)
    return HealingOrchestrator(
        github=GitHubService(token=cfg.GITHUB_BOT_TOKEN, api_base=cfg.GITHUB_API_BASE),
        scanner=BugScanner(**llm),
        fixer=FixEngineer(**llm),
        sessions=SessionRepository(store),
        broker=ProgressBroker(),
        attestations=AttestationRecorder(
            enabled=cfg.ATTESTATION_ENABLED,
            endpoint=cfg.ATTESTATION_ENDPOINT,
            api_key=cfg.ATTESTATION_API_KEY,
        ),
        policy=policy,
    )


# ── FastAPI application ──────────────────────────────────────────────

app = FastAPI(
    title="Self-Healing Repository Agent",
    description="Forks a repository, runs its tests, lets AI agents fix the failures and opens a pull request.",
    version="0.2.0",
    debug=settings.APP_DEBUG,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_orchestrator = build_orchestrator(settings)
app.state.orchestrator = _orchestrator
app.state.sessions = _orchestrator.sessions
app.state.broker = _orchestrator.broker

# ── Routes ───────────────────────────────────────────────────────────
app.include_router(health.router, tags=["health"])

# Healing sessions:  POST /sessions, GET /sessions/{id}, GET /sessions/{id}/stream
app.include_router(sessions.router, tags=["sessions"])


@app.on_event("startup")
async def startup_event():
    _logger.info(
        "Starting Self-Healing Agent | env=%s | max_attempts=%d | fork_required=%s | ai=%s | log_file=%s",
        settings.APP_ENV, settings.MAX_ATTEMPTS, settings.FORK_REQUIRED,
        "on" if settings.GEMINI_API_KEY else "off", settings.LOG_FILE,
    )
