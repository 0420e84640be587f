"""Application configuration loaded from environment variables."""

import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_ENV: str = "development"
    APP_DEBUG: bool = True

    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000

    # ── Repository hosting ──
    GITHUB_BOT_TOKEN: str = ""
    GITHUB_API_BASE: str = "https://api.github.com"
    FORK_REQUIRED: bool = False

    # ── Healing loop ──
    SANDBOX_ROOT: str = ""               # empty → <system tmp>/self-healing
    MAX_ATTEMPTS: int = 5
    SESSION_TIMEOUT_SECONDS: int = 300
    EMITTER_GRACE_SECONDS: float = 10.0
    DEFAULT_TEAM_NAME: str = "TECH_CHAOS"
    DEFAULT_LEADER_NAME: str = "ANURAG_MISHRA"

    # ── Session persistence ──
    SESSION_STORE_DIR: str = ""          # empty → in-memory

    # ── Model ──
    GEMINI_API_KEY: str = ""
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    GEMINI_MODEL: str = "gemini-2.0-flash"

    # ── Attestation ──
    ATTESTATION_ENABLED: bool = False
    ATTESTATION_ENDPOINT: str = ""
    ATTESTATION_API_KEY: str = ""

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "shared/logs/app.log"

    class Config:
        env_file = (".env", "../.env")  # works from both the repo root and backend/
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()

# ── Export key settings to os.environ so agents can read them ─────────
# The scanner, fixer and sandbox use os.environ.get() directly rather
# than importing settings.
_EXPORT_KEYS = [
    "GEMINI_API_KEY", "GEMINI_API_BASE", "GEMINI_MODEL", "SANDBOX_ROOT",
]
for _key in _EXPORT_KEYS:
    _val = getattr(settings, _key, "")
    if _val and not os.environ.get(_key):
        os.environ[_key] = _val
