"""CallScope configuration — environment-driven settings loaded once at import.

Values come from the process environment (and a local .env file via
python-dotenv). Module-level constants are the defaults; `load_settings()`
returns an immutable snapshot that components receive explicitly, so tests
can build one with shorter timeouts.
"""

import os
import sys
from dataclasses import dataclass
from dotenv import load_dotenv
from loguru import logger

load_dotenv()


# ── LLM analyzer ──

LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
LLM_API_KEY = os.getenv("LLM_API_KEY", "")
ANALYSIS_MODEL = os.getenv("ANALYSIS_MODEL", "gpt-4o")

# ── Content store ──

CONTENT_BACKEND = os.getenv("CONTENT_BACKEND", "local")  # local | http
CONTENT_DIR = os.getenv("CONTENT_DIR", "data/transcripts")
CONTENT_BASE_URL = os.getenv("CONTENT_BASE_URL", "")
CONTENT_API_KEY = os.getenv("CONTENT_API_KEY", "")

# ── Document store ──

# Empty string keeps job/call documents in memory only.
DATA_DIR = os.getenv("DATA_DIR", "data/store")

# ── Timeouts & polling ──

ANALYSIS_CALL_TIMEOUT_MS = int(os.getenv("ANALYSIS_CALL_TIMEOUT_MS", "90000"))
BACKGROUND_ANALYSIS_TIMEOUT_MS = int(os.getenv("BACKGROUND_ANALYSIS_TIMEOUT_MS", str(3 * 60 * 1000)))
POLL_INTERVAL_S = float(os.getenv("POLL_INTERVAL_S", "2"))
MAX_POLL_ITERATIONS = int(os.getenv("MAX_POLL_ITERATIONS", "90"))
DEFAULT_LOOKBACK_DAYS = int(os.getenv("DEFAULT_LOOKBACK_DAYS", "7"))

# ── Server & logging ──

PORT = os.getenv("PORT", "8000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # text | json


@dataclass(frozen=True)
class Settings:
    llm_base_url: str = LLM_BASE_URL
    llm_api_key: str = LLM_API_KEY
    analysis_model: str = ANALYSIS_MODEL
    content_backend: str = CONTENT_BACKEND
    content_dir: str = CONTENT_DIR
    content_base_url: str = CONTENT_BASE_URL
    content_api_key: str = CONTENT_API_KEY
    data_dir: str = DATA_DIR
    analysis_call_timeout_ms: int = ANALYSIS_CALL_TIMEOUT_MS
    background_analysis_timeout_ms: int = BACKGROUND_ANALYSIS_TIMEOUT_MS
    poll_interval_s: float = POLL_INTERVAL_S
    max_poll_iterations: int = MAX_POLL_ITERATIONS
    default_lookback_days: int = DEFAULT_LOOKBACK_DAYS


def load_settings() -> Settings:
    """Snapshot of the current environment-derived settings."""
    return Settings()


def configure_logging(level: str = LOG_LEVEL, fmt: str = LOG_FORMAT) -> None:
    """Replace loguru's default sink with one honoring LOG_LEVEL / LOG_FORMAT.

    fmt="json" emits one serialized record per line (for log collectors).
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), serialize=(fmt == "json"))


def validate_at_startup() -> None:
    """Fail fast on configuration the server cannot run with.

    Raises ValueError on the first problem found.
    """
    missing = []
    if not LLM_API_KEY and "api.openai.com" in LLM_BASE_URL:
        missing.append("LLM_API_KEY")
    if CONTENT_BACKEND == "http" and not CONTENT_BASE_URL:
        missing.append("CONTENT_BASE_URL")
    if missing:
        raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

    if CONTENT_BACKEND not in ("local", "http"):
        raise ValueError(f"CONTENT_BACKEND must be 'local' or 'http', got: {CONTENT_BACKEND}")

    if not PORT.isdigit() or not 1 <= int(PORT) <= 65535:
        raise ValueError(f"PORT must be a number between 1 and 65535, got: {PORT}")

    if ANALYSIS_CALL_TIMEOUT_MS >= BACKGROUND_ANALYSIS_TIMEOUT_MS:
        logger.warning(
            f"ANALYSIS_CALL_TIMEOUT_MS ({ANALYSIS_CALL_TIMEOUT_MS}) is not below "
            f"BACKGROUND_ANALYSIS_TIMEOUT_MS ({BACKGROUND_ANALYSIS_TIMEOUT_MS})"
        )

    logger.info("Environment validated")
