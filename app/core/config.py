"""Configuration management for the plan pipeline engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Completion service credential. Optional at load time so the app can
    # boot; the pipeline refuses to start a run without it.
    LLM_API_KEY: str | None = Field(default=None, description="Bearer token for the completion API")

    # Environment
    PLAN_ENGINE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Remote completion service
    LLM_API_URL: str = Field(
        default="https://api.siliconflow.cn/v1/chat/completions",
        description="Chat-completion endpoint",
    )
    LLM_MODEL: str = Field(default="Qwen/Qwen2.5-72B-Instruct", description="Completion model")
    LLM_TEMPERATURE: float = Field(default=0.7, description="Sampling temperature")
    LLM_MAX_TOKENS: int = Field(default=4000, description="Max tokens for a direct call")
    LLM_CHUNK_MAX_TOKENS: int = Field(default=2000, description="Max tokens for a chunk call")
    LLM_TIMEOUT_SECONDS: float = Field(default=45.0, description="Per-request timeout")

    # Retry / circuit breaker
    RETRY_MAX_RETRIES: int = Field(default=3, description="Retries after the first attempt")
    RETRY_BASE_DELAY_SECONDS: float = Field(default=1.0, description="Backoff base delay")
    RETRY_MAX_DELAY_SECONDS: float = Field(default=30.0, description="Backoff ceiling")
    CHUNK_MAX_RETRIES: int = Field(default=2, description="Retries per chunk call")
    CHUNK_BASE_DELAY_SECONDS: float = Field(default=0.5, description="Backoff base for chunk calls")
    CIRCUIT_FAILURE_THRESHOLD: int = Field(
        default=5, description="Consecutive failures before a circuit opens"
    )
    CIRCUIT_RECOVERY_TIMEOUT_SECONDS: float = Field(
        default=60.0, description="Cool-down before an open circuit allows a probe"
    )

    # Result cache
    CACHE_TTL_SECONDS: float = Field(default=300.0, description="Cache entry time-to-live")
    CACHE_MAX_SIZE: int = Field(default=100, description="Max live cache entries")

    # Chunked mode for oversized prompts
    CHUNK_THRESHOLD_BYTES: int = Field(
        default=16 * 1024, description="Prompt size (UTF-8 bytes) that triggers chunked mode"
    )
    CHUNK_SIZE_CHARS: int = Field(default=8192, description="Window size for chunked mode")
    CHUNK_OVERLAP_CHARS: int = Field(default=200, description="Overlap between windows")

    # Pipeline
    PIPELINE_TIMEOUT_SECONDS: float = Field(default=600.0, description="Ceiling for a whole run")
    STAGE_HISTORY_CAPACITY: int = Field(
        default=50, description="Durations remembered per stage for time estimates"
    )
    MIN_PROMPT_COUNT: int = Field(
        default=8, description="Coding prompts required for the completeness check"
    )
    QUALITY_ACCEPTANCE_THRESHOLD: float = Field(
        default=60.0, description="Minimum result quality score for an accepted plan"
    )
    DEFAULT_LANGUAGE: str = Field(default="typescript", description="Default target language")
    PLAN_VERSION: str = Field(default="2.0.0", description="Deliverable format version")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance loaded from environment
    """
    return Settings()
