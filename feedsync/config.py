"""
Configuration for the sync service.

All values come from environment variables (optionally loaded from a
.env file). Defaults match a single-user install on one machine.
"""

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

from feedsync.exceptions import ConfigurationError


DEFAULT_TOKENS_PATH = str(Path.home() / ".rss-reader" / "tokens.json")


class Settings(BaseModel):
    """Runtime settings, one field per environment variable."""

    # Persistence
    database_url: str = "sqlite:///./feedsync.db"

    # Push cycle
    sync_interval_minutes: float = 5
    sync_min_changes: int = 5
    sync_staleness_minutes: float = 15
    sync_batch_size: int = 100
    sync_max_retries: int = 3
    sync_retry_backoff_minutes: float = 10
    sync_autostart: bool = True

    # Pull cycle
    sync_conflict_policy: str = "remote"  # remote | prefer-local
    pull_max_articles: int = 100

    # Remote service
    inoreader_client_id: str | None = None
    inoreader_client_secret: str | None = None
    inoreader_redirect_uri: str = "http://localhost:8000/api/v1/auth/callback"
    inoreader_api_base: str = "https://www.inoreader.com/reader/api/0"
    inoreader_oauth_url: str = "https://www.inoreader.com/oauth2"
    http_timeout_seconds: float = 30

    # Credential file
    token_encryption_key: str | None = None
    tokens_path: str = DEFAULT_TOKENS_PATH

    # Logs
    conflict_log_path: str = "logs/sync-conflicts.jsonl"
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def oauth_token_url(self) -> str:
        return f"{self.inoreader_oauth_url}/token"

    @property
    def oauth_authorize_url(self) -> str:
        return f"{self.inoreader_oauth_url}/auth"

    @property
    def sync_interval_seconds(self) -> float:
        return self.sync_interval_minutes * 60

    @property
    def sync_staleness_seconds(self) -> float:
        return self.sync_staleness_minutes * 60

    @property
    def sync_retry_backoff_seconds(self) -> float:
        return self.sync_retry_backoff_minutes * 60

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        load_dotenv()

        return cls(
            database_url=os.getenv("DATABASE_URL", cls.model_fields["database_url"].default),
            sync_interval_minutes=_positive("SYNC_INTERVAL_MINUTES", 5),
            sync_min_changes=int(_number("SYNC_MIN_CHANGES", 5)),
            sync_staleness_minutes=_number("SYNC_STALENESS_MINUTES", 15),
            sync_batch_size=int(_positive("SYNC_BATCH_SIZE", 100)),
            sync_max_retries=int(_positive("SYNC_MAX_RETRIES", 3)),
            sync_retry_backoff_minutes=_number("SYNC_RETRY_BACKOFF_MINUTES", 10),
            sync_autostart=_flag("SYNC_AUTOSTART", True),
            sync_conflict_policy=_policy(os.getenv("SYNC_CONFLICT_POLICY", "remote")),
            pull_max_articles=int(_number("PULL_MAX_ARTICLES", 100)),
            inoreader_client_id=os.getenv("INOREADER_CLIENT_ID"),
            inoreader_client_secret=os.getenv("INOREADER_CLIENT_SECRET"),
            inoreader_redirect_uri=os.getenv(
                "INOREADER_OAUTH_REDIRECT_URI",
                cls.model_fields["inoreader_redirect_uri"].default
            ),
            inoreader_api_base=os.getenv(
                "INOREADER_API_BASE",
                cls.model_fields["inoreader_api_base"].default
            ).rstrip("/"),
            inoreader_oauth_url=os.getenv(
                "INOREADER_OAUTH_URL",
                cls.model_fields["inoreader_oauth_url"].default
            ).rstrip("/"),
            http_timeout_seconds=_number("HTTP_TIMEOUT_SECONDS", 30),
            token_encryption_key=os.getenv("TOKEN_ENCRYPTION_KEY"),
            tokens_path=os.path.expanduser(
                os.getenv("RSS_READER_TOKENS_PATH", DEFAULT_TOKENS_PATH)
            ),
            conflict_log_path=os.getenv(
                "CONFLICT_LOG_PATH",
                cls.model_fields["conflict_log_path"].default
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE") or None,
        )


def _number(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {raw!r}")
    return value


def _positive(name: str, default: float) -> float:
    value = _number(name, default)
    if value == 0:
        raise ConfigurationError(f"{name} must be greater than zero")
    return value


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _policy(raw: str) -> str:
    policy = raw.strip().lower()
    if policy not in ("remote", "prefer-local"):
        raise ConfigurationError(
            f"SYNC_CONFLICT_POLICY must be 'remote' or 'prefer-local', got {raw!r}"
        )
    return policy


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings.from_env()
