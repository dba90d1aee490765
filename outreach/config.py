# outreach/config.py
from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional

# Load local .env for development
load_dotenv(dotenv_path=Path(__file__).parent.parent / ".env")


class BloomerangConfigError(RuntimeError):
    """Raised when the CRM connection is not configured (fatal, never retried)."""


class Settings(BaseSettings):
    # ─── Bloomerang ────────────────────────────────────────────────────────────
    # Optional here so the app can boot; get_api_key() enforces it per request.
    BLOOMERANG_API_KEY: Optional[str] = Field(default=None)
    BLOOMERANG_BASE_URL: str = "https://api.bloomerang.co/v2"
    BLOOMERANG_TIMEOUT_SECONDS: float = 30.0

    # ─── Database ───────────────────────────────────────────────────────────────
    # Empty DATABASE_URL → in-process MemoryStore (local dev / tests)
    DATABASE_URL: str = ""

    # ─── OpenAI (activity summaries) ───────────────────────────────────────────
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OPENAI_MODEL: str = "gpt-4o-mini"

    # ─── Pipeline tunables ─────────────────────────────────────────────────────
    ENRICH_CONCURRENCY: int = 4
    SUMMARY_CACHE_TTL_SECONDS: int = 900

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


# single settings instance for the whole app
settings = Settings()


def get_api_key() -> str:
    key = (settings.BLOOMERANG_API_KEY or "").strip()
    if not key:
        raise BloomerangConfigError("BLOOMERANG_API_KEY is not configured.")
    return key


def bloomerang_base_url() -> str:
    base = (settings.BLOOMERANG_BASE_URL or "").strip()
    if not base:
        raise BloomerangConfigError("BLOOMERANG_BASE_URL is empty.")
    return base.rstrip("/")


def clamp_concurrency(value: Optional[int], default: Optional[int] = None) -> int:
    """
    Accepts a caller-supplied concurrency and clamps it to 1..10.
    Falls back to ENRICH_CONCURRENCY when missing or not a number.
    """
    fallback = default if default is not None else settings.ENRICH_CONCURRENCY
    try:
        n = int(value) if value is not None else int(fallback)
    except (TypeError, ValueError):
        n = int(fallback)
    return max(1, min(10, n))
