from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Literal

DEFAULT_RESEARCH_INSTRUCTIONS = (
    "You are a research analyst AI with access to web search and code execution. "
    "Conduct thorough research using multiple sources, provide specific figures and "
    "statistics, prioritize reliable sources, and include inline citations. "
    "Be analytical and data-driven."
)


class Settings(BaseSettings):
    # core
    ENV: str = "dev"
    API_PREFIX: str = "/api"

    # auth / security
    API_AUTH_KEY: str | None = None
    FRONTEND_ORIGIN: str | None = None
    # Explicit debug-only switch for wide-open CORS in non-prod envs
    CORS_ALLOW_ALL_ORIGINS: bool = False

    # upstream provider
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    RESEARCH_MODEL: str = "o3-deep-research"
    CHAT_MODEL: str = "gpt-4o-mini"
    CODE_MODEL: str = "gpt-4o"
    SEARCH_MODEL: str = "gpt-4o"
    RESEARCH_INSTRUCTIONS: str = DEFAULT_RESEARCH_INSTRUCTIONS
    DEFAULT_MAX_TOOL_CALLS: int = 50
    # Hard cap on concurrent upstream calls per process
    LLM_MAX_CONCURRENCY: int = 4
    UPSTREAM_RETRY_ATTEMPTS: int = 3

    # job registry
    JOB_STORE_BACKEND: Literal["memory", "redis"] = "memory"
    # Keep this as a plain string so redis:// URLs are always accepted
    REDIS_URL: str | None = None
    JOB_REDIS_PREFIX: str = "gptcore:research_job:"
    JOB_QUERY_PREVIEW_CHARS: int = 100

    # retention
    JOB_MAX_AGE_HOURS: float = 24
    JOB_CLEANUP_INTERVAL_SECONDS: float = 3600
    # When True, only completed/failed/cancelled jobs are swept
    JOB_CLEANUP_TERMINAL_ONLY: bool = False
    # Mark a job failed when its tool-call counter has not moved for this long
    JOB_STALE_AFTER_SECONDS: float | None = None

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
