"""Application configuration helpers."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from urllib.parse import quote, urlparse

from dotenv import load_dotenv

# Load variables from .env into process environment as early as possible.
load_dotenv()

ANALYSIS_PROVIDERS = ("gemini", "openai", "claude")

DEFAULT_ANALYSIS_MODELS = {
    "gemini": "gemini-2.5-flash",
    "openai": "gpt-4o",
    "claude": "claude-3-5-sonnet-20241022",
}

DEFAULT_STATE_PATH = Path("~/.clarity_choice/state.json")


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Environment variable {name} must be set")
    return value


def _optional_env(name: str) -> str | None:
    value = os.getenv(name)
    return value or None


def _flag(name: str) -> bool:
    return os.getenv(name, "0").lower() in {"1", "true", "yes", "on"}


def _encode_pg_password(conn_str: str) -> str:
    """Percent-encode the password of a PostgreSQL URI so asyncpg can parse it."""
    if not conn_str.startswith(("postgres://", "postgresql://")):
        return conn_str

    try:
        parsed = urlparse(conn_str)
    except ValueError:
        return conn_str
    if not parsed.password:
        return conn_str

    credentials = f"{quote(parsed.username or '', safe='')}:{quote(parsed.password, safe='')}"
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return parsed._replace(netloc=f"{credentials}@{host}").geturl()


@lru_cache(maxsize=None)
def get_pg_conn_str() -> str | None:
    """Return the remote store connection string, or None when no remote is configured."""
    conn_str = _optional_env("PG_CONN_STR")
    return _encode_pg_password(conn_str) if conn_str else None


@lru_cache(maxsize=None)
def use_in_memory_remote() -> bool:
    """Return True when the remote per-user store should live in memory."""
    return _flag("USE_IN_MEMORY_REMOTE")


@lru_cache(maxsize=None)
def get_local_state_path() -> Path:
    """Location of the device-local key-value file."""
    value = _optional_env("DECISION_STATE_PATH")
    return Path(value).expanduser() if value else DEFAULT_STATE_PATH.expanduser()


@lru_cache(maxsize=None)
def get_analysis_provider() -> str:
    """Return the LLM provider used for analysis (gemini, openai or claude)."""
    provider = os.getenv("ANALYSIS_PROVIDER", "gemini").strip().lower()
    if provider not in ANALYSIS_PROVIDERS:
        raise ValueError(
            f"Invalid ANALYSIS_PROVIDER {provider!r}; expected one of {', '.join(ANALYSIS_PROVIDERS)}"
        )
    return provider


@lru_cache(maxsize=None)
def get_analysis_model() -> str:
    return _optional_env("ANALYSIS_MODEL") or DEFAULT_ANALYSIS_MODELS[get_analysis_provider()]


@lru_cache(maxsize=None)
def get_openai_api_key() -> str:
    """Ensure the OpenAI API key is configured and return it."""
    return _require_env("OPENAI_API_KEY")


@lru_cache(maxsize=None)
def get_gemini_api_key() -> str:
    """Return the Gemini (Google AI Studio) API key."""

    value = _optional_env("GEMINI_API_KEY")
    if not value:
        raise RuntimeError("Set GEMINI_API_KEY to use the Gemini provider")
    return value


@lru_cache(maxsize=None)
def get_claude_api_key() -> str:
    """Return the Anthropic Claude API key."""

    value = _optional_env("CLAUDE_API_KEY") or _optional_env("ANTHROPIC_API_KEY")
    if not value:
        raise RuntimeError("Set CLAUDE_API_KEY (or ANTHROPIC_API_KEY) to use the Claude provider")
    return value


def get_provider_api_key(provider: str) -> str:
    getters = {
        "gemini": get_gemini_api_key,
        "openai": get_openai_api_key,
        "claude": get_claude_api_key,
    }
    getter = getters.get(provider)
    if getter is None:
        raise ValueError(f"No API key for provider: {provider}")
    return getter()


def configure_logging() -> None:
    """Apply LOG_LEVEL (default INFO) to the root logger."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
