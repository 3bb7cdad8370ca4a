"""
CRM AI Configuration Module
===========================

Centralized configuration management using environment variables.
Supports both .env files and system environment variables.

Environment Variables:
    OPENAI_API_KEY: OpenAI key (generation, embeddings, moderation)
    OPENAI_CHAT_MODEL: Generation model (default: gpt-4o-mini)
    OPENAI_EMBEDDING_MODEL: Embedding model (default: text-embedding-3-small)
    OPENAI_MODERATION_MODEL: Moderation model (default: omni-moderation-latest)
    ANTHROPIC_API_KEY: Optional Claude key, used when LLM_PROVIDER=anthropic
    LLM_PROVIDER: openai | anthropic (default: auto-detect)

    AI_REQUESTS_PER_DAY: Per-user daily quota (default: 500)
    RATE_LIMIT_BACKEND: memory | redis (default: memory)

    CACHE_BACKEND: memory | redis (default: memory)
    CACHE_TTL_SECONDS: Response cache TTL (default: 900)
    CACHE_SWEEP_INTERVAL_SECONDS: Background sweep period (default: 60)
    REDIS_URL: Redis URL shared by cache and rate limiter
    CACHE_PREFIX: Key prefix (default: crm_ai)

    VECTOR_BACKEND: memory | pgvector (default: memory)
    RETRIEVAL_DEFAULT_K: Default number of context items (default: 5)
    RETRIEVAL_RECENCY_DAYS: Recency window (default: 365)

    TIMEOUT_EMBEDDING / TIMEOUT_VECTOR_QUERY / TIMEOUT_GENERATION /
    TIMEOUT_MODERATION: Per-call timeouts in seconds (5 / 3 / 15 / 5)

    DATABASE_HOST / DATABASE_PORT / DATABASE_NAME / DATABASE_USER /
    DATABASE_PASSWORD: PostgreSQL (pgvector store and audit log)
    AUDIT_BACKEND: memory | postgres (default: memory)

    CRM_API_URL: Base URL of the CRM REST API (default: http://localhost:5000/api)
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple
from pathlib import Path
from dotenv import load_dotenv


# Load environment variables from .env file if present
env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """
    Get environment variable with optional default and required validation.

    Args:
        key: Environment variable name
        default: Default value if not set
        required: If True, raises ValueError when not set

    Returns:
        Environment variable value or default

    Raises:
        ValueError: If required=True and variable is not set
    """
    value = os.getenv(key, default)
    if required and value is None:
        raise ValueError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be an integer, got: {value}")


def get_env_float(key: str, default: float) -> float:
    """Get environment variable as float."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be a float, got: {value}")


def get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


@dataclass
class OpenAIConfig:
    """OpenAI configuration (generation, embeddings, moderation)."""

    # Support both OPENAI_API_KEY and GPT_API_KEY
    api_key: Optional[str] = field(
        default_factory=lambda: get_env("OPENAI_API_KEY") or get_env("GPT_API_KEY")
    )
    chat_model: str = field(default_factory=lambda: get_env("OPENAI_CHAT_MODEL", "gpt-4o-mini"))
    embedding_model: str = field(
        default_factory=lambda: get_env("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
    )
    embedding_dimensions: int = field(default_factory=lambda: get_env_int("OPENAI_EMBEDDING_DIMENSIONS", 1536))
    moderation_model: str = field(
        default_factory=lambda: get_env("OPENAI_MODERATION_MODEL", "omni-moderation-latest")
    )


@dataclass
class AnthropicConfig:
    """Claude configuration, used when LLM_PROVIDER=anthropic."""

    api_key: Optional[str] = field(default_factory=lambda: get_env("ANTHROPIC_API_KEY"))
    model: str = field(default_factory=lambda: get_env("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"))


@dataclass
class RateLimitConfig:
    """Per-user daily quota."""

    requests_per_day: int = field(default_factory=lambda: get_env_int("AI_REQUESTS_PER_DAY", 500))
    backend: str = field(default_factory=lambda: get_env("RATE_LIMIT_BACKEND", "memory"))

    def __post_init__(self):
        if self.requests_per_day <= 0:
            raise ValueError("requests_per_day must be positive")
        if self.backend not in ("memory", "redis"):
            raise ValueError(f"Unknown rate limit backend: {self.backend}")


@dataclass
class CacheConfig:
    """Response cache configuration."""

    backend: str = field(default_factory=lambda: get_env("CACHE_BACKEND", "memory"))
    ttl_seconds: int = field(default_factory=lambda: get_env_int("CACHE_TTL_SECONDS", 15 * 60))
    sweep_interval_seconds: int = field(
        default_factory=lambda: get_env_int("CACHE_SWEEP_INTERVAL_SECONDS", 60)
    )
    redis_url: Optional[str] = field(default_factory=lambda: get_env("REDIS_URL"))
    prefix: str = field(default_factory=lambda: get_env("CACHE_PREFIX", "crm_ai"))

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if self.backend not in ("memory", "redis"):
            raise ValueError(f"Unknown cache backend: {self.backend}")


@dataclass
class RetrievalConfig:
    """
    Vector retrieval configuration.

    The feature weights are product parameters. Deal coaching relevance is
    0.4 * industry + 0.3 * deal size + 0.3 * objection type; the blended score
    is vector_weight * cosine + (1 - vector_weight) * feature relevance.
    """

    backend: str = field(default_factory=lambda: get_env("VECTOR_BACKEND", "memory"))
    default_k: int = field(default_factory=lambda: get_env_int("RETRIEVAL_DEFAULT_K", 5))
    recency_days: int = field(default_factory=lambda: get_env_int("RETRIEVAL_RECENCY_DAYS", 365))
    value_band: Tuple[float, float] = (0.5, 2.0)
    candidate_multiplier: int = field(default_factory=lambda: get_env_int("RETRIEVAL_CANDIDATE_MULTIPLIER", 4))
    vector_weight: float = field(default_factory=lambda: get_env_float("RETRIEVAL_VECTOR_WEIGHT", 0.5))

    industry_weight: float = 0.4
    deal_size_weight: float = 0.3
    objection_type_weight: float = 0.3

    def __post_init__(self):
        if self.backend not in ("memory", "pgvector"):
            raise ValueError(f"Unknown vector backend: {self.backend}")
        if not 0.0 <= self.vector_weight <= 1.0:
            raise ValueError("vector_weight must be between 0 and 1")
        if self.default_k <= 0:
            raise ValueError("default_k must be positive")


@dataclass
class TimeoutConfig:
    """Independent timeouts (seconds) per external call type."""

    embedding: float = field(default_factory=lambda: get_env_float("TIMEOUT_EMBEDDING", 5.0))
    vector_query: float = field(default_factory=lambda: get_env_float("TIMEOUT_VECTOR_QUERY", 3.0))
    generation: float = field(default_factory=lambda: get_env_float("TIMEOUT_GENERATION", 15.0))
    moderation: float = field(default_factory=lambda: get_env_float("TIMEOUT_MODERATION", 5.0))

    # A timed out call is retried at most this many times
    max_retries: int = field(default_factory=lambda: get_env_int("UPSTREAM_MAX_RETRIES", 1))

    def __post_init__(self):
        if not 0 <= self.max_retries <= 1:
            raise ValueError("max_retries must be 0 or 1")


@dataclass
class PromptConfig:
    """Prompt size bounds."""

    max_context_chars: int = field(default_factory=lambda: get_env_int("PROMPT_MAX_CONTEXT_CHARS", 1500))
    max_prompt_chars: int = field(default_factory=lambda: get_env_int("PROMPT_MAX_CHARS", 6000))
    max_field_chars: int = 300


@dataclass
class ConfidenceConfig:
    """Confidence heuristic constants."""

    base: int = 50
    min_score: int = 10
    max_score: int = 95
    rich_context_items: int = 3
    rich_context_bonus: int = 20
    high_similarity_threshold: float = 0.8
    high_similarity_bonus: int = 15
    evidence_bonus: int = 10
    length_band: Tuple[int, int] = (200, 1500)
    length_bonus: int = 5
    fallback_score: int = 20
    min_feedback_samples: int = field(default_factory=lambda: get_env_int("CONFIDENCE_MIN_FEEDBACK", 5))


@dataclass
class ModerationConfig:
    """Moderation filter configuration."""

    remote_enabled: bool = field(default_factory=lambda: get_env_bool("MODERATION_REMOTE_ENABLED", True))
    # Verdicts at or above this severity are blocked
    block_severity: str = field(default_factory=lambda: get_env("MODERATION_BLOCK_SEVERITY", "medium"))
    max_input_chars: int = 2000


@dataclass
class DatabaseConfig:
    """PostgreSQL configuration (pgvector store, audit log)."""

    host: str = field(default_factory=lambda: get_env("DATABASE_HOST", "localhost"))
    port: int = field(default_factory=lambda: get_env_int("DATABASE_PORT", 5432))
    name: str = field(default_factory=lambda: get_env("DATABASE_NAME", "crm_ai"))
    user: str = field(default_factory=lambda: get_env("DATABASE_USER", "postgres"))
    password: str = field(default_factory=lambda: get_env("DATABASE_PASSWORD", ""))

    pool_min_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MIN", 2))
    pool_max_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MAX", 10))
    connect_timeout: int = field(default_factory=lambda: get_env_int("DATABASE_CONNECT_TIMEOUT", 10))
    ssl_mode: str = field(default_factory=lambda: get_env("DATABASE_SSL_MODE", "prefer"))

    audit_backend: str = field(default_factory=lambda: get_env("AUDIT_BACKEND", "memory"))

    @property
    def connection_dict(self) -> dict:
        """Connection parameters as dictionary for psycopg2."""
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.name,
            "user": self.user,
            "password": self.password,
            "sslmode": self.ssl_mode,
            "connect_timeout": self.connect_timeout,
        }

    def __post_init__(self):
        if self.pool_min_size > self.pool_max_size:
            raise ValueError("pool_min_size cannot exceed pool_max_size")
        if self.audit_backend not in ("memory", "postgres"):
            raise ValueError(f"Unknown audit backend: {self.audit_backend}")


@dataclass
class CRMConfig:
    """CRM REST API (source of entity snapshots)."""

    base_url: str = field(default_factory=lambda: get_env("CRM_API_URL", "http://localhost:5000/api"))
    api_token: Optional[str] = field(default_factory=lambda: get_env("CRM_API_TOKEN"))
    timeout: int = field(default_factory=lambda: get_env_int("CRM_API_TIMEOUT", 10))


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE"))
    json_logs: bool = field(default_factory=lambda: get_env_bool("LOG_JSON", False))


@dataclass
class Settings:
    """Main application settings container."""

    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    anthropic: AnthropicConfig = field(default_factory=AnthropicConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    prompt: PromptConfig = field(default_factory=PromptConfig)
    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)
    moderation: ModerationConfig = field(default_factory=ModerationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    crm: CRMConfig = field(default_factory=CRMConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    llm_provider: Optional[str] = field(default_factory=lambda: get_env("LLM_PROVIDER"))

    # Application metadata
    app_name: str = "crm-ai"
    app_version: str = "1.0.0"
    environment: str = field(default_factory=lambda: get_env("ENVIRONMENT", "development"))

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() in ("production", "prod")


def load_settings() -> Settings:
    """
    Load and validate all application settings.

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    return Settings()


# Global settings instance (lazy-loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
