"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the BuildBoard
backend. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any, Literal

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: LiteLLM model identifier used by the coding agent.
        use_mock_llm: If True, the coding agent uses scripted mock responses.
        llm_max_retries: Max retries for transient LLM failures.
        llm_request_timeout_seconds: Timeout for a single LLM API call.
        max_agent_iterations: Hard limit on reason/act rounds per agent turn.
        agent_timeout_seconds: Timeout for an entire coding-agent session.
        sandbox_provider: Which remote sandbox backend to use (e2b or docker).
        e2b_api_key: API key for E2B sandboxes.
        e2b_template: E2B template used for new sandboxes.
        e2b_domain: Public domain used to build preview URLs.
        docker_image: Docker image for local sandboxes.
        sandbox_ttl_minutes: Lifetime of a registered sandbox before the sweep closes it.
        sandbox_cleanup_interval_minutes: Interval of the expiry sweep.
        sandbox_workdir: Directory inside the sandbox that receives generated files.
        preview_port: Port of the static preview server.
        preview_settle_seconds: Delay between launching and verifying the preview server.
        github_token: Token used for GitHub REST calls.
        github_api_url: Base URL of the GitHub REST API.
        github_webhook_secret: Shared secret for verifying GitHub webhook deliveries.
        database_path: SQLite file holding projects, tasks and generations.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    # Model names must include provider prefix for LiteLLM (e.g., anthropic/, gemini/)
    default_model: str = "anthropic/claude-sonnet-4-5-20250929"
    use_mock_llm: bool = False
    llm_max_retries: int = 3
    llm_request_timeout_seconds: int = 120

    # Agent Limits
    max_agent_iterations: int = 25
    agent_timeout_seconds: int = 900

    # Sandbox Configuration
    sandbox_provider: Literal["e2b", "docker"] = "e2b"
    e2b_api_key: str = ""
    e2b_template: str = "base"
    e2b_domain: str = "e2b.app"
    docker_image: str = "python:3.12-slim"
    sandbox_ttl_minutes: int = 60
    sandbox_cleanup_interval_minutes: int = 5
    sandbox_workdir: str = "/home/user"
    preview_port: int = 8000
    preview_settle_seconds: float = 3.0

    # GitHub Configuration
    github_token: str = ""
    github_api_url: str = "https://api.github.com"
    github_webhook_secret: str = ""

    # Database Configuration
    database_path: str = "./data/buildboard.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Accept a list, a JSON array string or a comma-separated string."""
        if isinstance(v, list):
            return v
        if not isinstance(v, str):
            return ["http://localhost:3000"]
        text = v.strip()
        if text.startswith("["):
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                pass
        return [origin.strip() for origin in text.split(",") if origin.strip()]

    @field_validator("github_api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        # Request paths are appended as "/repos/...".
        return v.rstrip("/")

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def sandbox_ttl_seconds(self) -> float:
        return self.sandbox_ttl_minutes * 60.0

    @property
    def sandbox_cleanup_interval_seconds(self) -> float:
        return self.sandbox_cleanup_interval_minutes * 60.0


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog: JSON lines (``json``) or colored console output (``text``).

    Events are snake_case names with key-value context; ids bound via
    ``logger.bind(...)`` (project, task, generation, sandbox) travel with them.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if log_format == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        # The console renderer formats tracebacks itself.
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


settings = Settings()

configure_logging(settings.log_level, settings.log_format)
