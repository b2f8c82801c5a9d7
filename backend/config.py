"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the execution
tracking engine. All settings can be overridden via environment variables or
a .env file.
"""

import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables.

    Attributes:
        workflows_url: Base URL of the workflows REST backend.
        api_prefix: Path prefix of the task-splitting endpoints.
        api_token: Optional bearer token sent with every request.
        request_timeout_seconds: Timeout for individual REST requests.
        status_poll_interval_seconds: Cadence of the job status poller.
        pr_poll_interval_seconds: Cadence of the pull-request status poller.
        layer_page_size: Number of layers requested per items page.
        auto_advance_delay_seconds: Pause between a slice completing and the
            switch to the next slice.
        activity_preview_chars: Maximum length of the parameter preview shown
            in timelines reconstructed from polled activity.
        session_cache_path: SQLite file backing the durable session cache.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Backend
    workflows_url: str = "http://localhost:8001/api/v1"
    api_prefix: str = "/codegen/task-splitting"
    api_token: str | None = None
    request_timeout_seconds: float = 15.0

    # Polling cadence
    status_poll_interval_seconds: float = 3.0
    pr_poll_interval_seconds: float = 3.0

    # Layer pagination
    layer_page_size: int = 10

    # Slice progression
    auto_advance_delay_seconds: float = 1.0

    # Timeline reconstruction
    activity_preview_chars: int = 60

    # Durable session cache
    session_cache_path: str = "./data/session_cache.db"

    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("layer_page_size")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        """Clamp the page size to the range the items endpoint accepts."""
        return max(1, min(v, 100))

    @field_validator("workflows_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the engine.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
