from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    db_url: str = Field(default="sqlite+aiosqlite:///./memcore.db", alias="DB_URL")
    openai_base_url: str = Field(default="https://api.openai.com", alias="OPENAI_BASE_URL")
    embed_provider: str = Field(default="deterministic", alias="EMBED_PROVIDER")
    embed_model: str = Field(default="", alias="EMBED_MODEL")
    embed_dim: int = Field(default=384, alias="EMBED_DIM")
    embed_openai_api_key: str = Field(default="", alias="EMBED_OPENAI_API_KEY")
    embed_timeout_sec: float = Field(default=5.0, alias="EMBED_TIMEOUT_SEC")
    embed_load_timeout_sec: float = Field(default=60.0, alias="EMBED_LOAD_TIMEOUT_SEC")
    embed_cache_size: int = Field(default=10_000, alias="EMBED_CACHE_SIZE")
    # Empty means the built-in keyword tables.
    memory_keywords_path: str = Field(default="", alias="MEMORY_KEYWORDS_PATH")
    memory_recent_corpus_size: int = Field(default=200, alias="MEMORY_RECENT_CORPUS_SIZE")
    memory_default_sensitivity: float = Field(default=0.7, alias="MEMORY_DEFAULT_SENSITIVITY")
    memory_feedback_learning_rate: float = Field(
        default=0.1, alias="MEMORY_FEEDBACK_LEARNING_RATE"
    )
    memory_duplicate_top_k: int = Field(default=5, alias="MEMORY_DUPLICATE_TOP_K")
    memory_duplicate_min_similarity: float = Field(
        default=0.7, alias="MEMORY_DUPLICATE_MIN_SIMILARITY"
    )
    memory_context_top_k: int = Field(default=3, alias="MEMORY_CONTEXT_TOP_K")
    memory_context_min_similarity: float = Field(
        default=0.6, alias="MEMORY_CONTEXT_MIN_SIMILARITY"
    )
    memory_confidence_boost: float = Field(default=0.1, alias="MEMORY_CONFIDENCE_BOOST")
    memory_max_content_chars: int = Field(default=2000, alias="MEMORY_MAX_CONTENT_CHARS")
    memory_deferred_limit: int = Field(default=10, alias="MEMORY_DEFERRED_LIMIT")
    memory_index_queue_size: int = Field(default=256, alias="MEMORY_INDEX_QUEUE_SIZE")
    memory_index_workers: int = Field(default=2, alias="MEMORY_INDEX_WORKERS")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached engine settings."""

    return Settings()
