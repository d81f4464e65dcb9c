"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the tree agent backend.
All settings can be overridden via environment variables or a .env file.
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
        default_model: LiteLLM model id used by every role unless overridden.
        planner_model: Optional model override for the planner role.
        executor_model: Optional model override for the executor role.
        aggregator_model: Optional model override for the aggregator role.
        use_mock_llm: If True, use scripted mock LLM responses.
        llm_request_timeout_seconds: Timeout for a single LLM request.
        llm_max_retries: Retries on transient provider errors (rate limit, 5xx, timeout).
        llm_json_max_retries: Extra attempts when a reply is not parseable JSON.
        max_parallel_children: Size of the worker pool that runs a band's children.
        max_tool_calls_per_pass: Tool calls taken from one executor reply.
        max_tool_calls_per_batch: Hard cap for a single sequential tool batch.
        max_tree_depth: Nodes at this depth are forced to execute as leaves.
        default_max_wall_clock_ms: Run budget used when a job omits one.
        max_active_runs_per_user: Queued or running runs a single user may own.
        scratchpad_prompt_chars: Scratchpad tail length sent to the LLM.
        tool_result_prompt_chars: Per-result truncation in the executor prompt.
        child_document_prompt_chars: Per-document truncation in the aggregator prompt.
        tavily_api_key: API key for the web_search tool.
        tavily_api_url: Tavily search endpoint.
        web_search_timeout_seconds: Timeout for web search requests.
        database_path: SQLite file holding runs, nodes, events and the ontology.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    # Model names must include provider prefix for LiteLLM (e.g., openai/, gemini/)
    default_model: str = "openai/gpt-4o-mini"
    planner_model: str | None = None
    executor_model: str | None = None
    aggregator_model: str | None = None
    use_mock_llm: bool = False
    llm_request_timeout_seconds: int = 120
    llm_max_retries: int = 3
    llm_json_max_retries: int = 2

    # Tree Limits
    max_parallel_children: int = 3
    max_tool_calls_per_pass: int = 6
    max_tool_calls_per_batch: int = 8
    max_tree_depth: int = 4
    default_max_wall_clock_ms: int = 60 * 60 * 1000
    max_active_runs_per_user: int = 3

    # Prompt Windows
    scratchpad_prompt_chars: int = 6000
    tool_result_prompt_chars: int = 2000
    child_document_prompt_chars: int = 2000

    # External Tools
    tavily_api_key: str = ""
    tavily_api_url: str = "https://api.tavily.com/search"
    web_search_timeout_seconds: int = 30

    # Database Configuration
    database_path: str = "./data/tree_agent.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
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

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_for_role(self, role: str) -> str:
        """Return the LiteLLM model id configured for a role.

        Args:
            role: One of "planner", "executor" or "aggregator".

        Returns:
            The role override when set, otherwise ``default_model``.
        """
        override = getattr(self, f"{role}_model", None)
        return override or self.default_model


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

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
