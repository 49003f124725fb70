"""Settings for the API layer."""
from __future__ import annotations

from pydantic_settings import BaseSettings

from .jobs.download_job import DEFAULT_TIMEOUT_SECONDS
from .jobs.framing import DEFAULT_MAX_LINE_BYTES
from .jobs.runner import DEFAULT_DOWNLOADER_PATH
from .jobs.store import DEFAULT_MAX_LOG_LINES


class ApiSettings(BaseSettings):
    """Immutable settings loaded from environment / .env file."""

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: str = "http://localhost:8080"
    log_level: str = "INFO"
    log_format: str = "structured"  # "structured" or "json"

    downloader_path: str = DEFAULT_DOWNLOADER_PATH
    default_timeout: int = DEFAULT_TIMEOUT_SECONDS
    max_log_lines: int = DEFAULT_MAX_LOG_LINES
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
    kill_grace_seconds: float = 5.0

    model_config = {"env_prefix": "MUSIC_DL_API_", "env_file": ".env", "extra": "ignore"}
