"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the agent
pipeline backend. All settings can be overridden via environment variables
or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        agent_command: Executable spawned for every agent invocation.
        agent_max_turns: Turn budget handed to each agent invocation.
        agent_timeout_overrides: Per-role inactivity timeouts in seconds,
            keyed by role value (e.g. ``{"rd": 900}``).
        agent_kill_grace_seconds: Delay between SIGTERM and SIGKILL.
        max_step_retries: Retries per step after the first attempt.
        retry_delays_seconds: Backoff delay before each retry.
        pause_poll_interval_seconds: Upper bound on the pause wait before
            the stage loop re-checks for cancellation.
        output_flush_interval_ms: Batching window for streamed agent text.
        title_max_length: Workflow titles are truncated to this many chars.
        prompts_dir: Optional directory with ``<role>-system.md`` overrides.
        database_path: SQLite database file.
        recover_orphaned_workflows: Fail workflows left running by a
            previous process on startup.
        default_project_path: Project directory used when a start request
            does not name one.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Agent invocation
    agent_command: str = "claude"
    agent_max_turns: int = 50
    agent_timeout_overrides: dict[str, float] = {}
    agent_kill_grace_seconds: float = 5.0

    # Pipeline scheduling
    max_step_retries: int = 2
    retry_delays_seconds: list[float] = [2.0, 4.0, 8.0]
    pause_poll_interval_seconds: float = 0.5
    output_flush_interval_ms: int = 50
    title_max_length: int = 80

    # Prompt templates
    prompts_dir: str | None = None

    # Database Configuration
    database_path: str = "./data/dashboard.db"
    recover_orphaned_workflows: bool = True

    # Server Configuration
    default_project_path: str | None = None
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000", "http://localhost:5173"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    @field_validator("retry_delays_seconds")
    @classmethod
    def validate_retry_delays(cls, v: list[float]) -> list[float]:
        """Require at least one non-negative backoff delay."""
        if not v:
            raise ValueError("retry_delays_seconds must not be empty")
        if any(delay < 0 for delay in v):
            raise ValueError("retry_delays_seconds must be non-negative")
        return v

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

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
        processors.append(structlog.processors.format_exc_info)
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
