"""Runtime configuration helpers.

Classes:
    Settings: Pydantic settings model capturing environment-driven defaults.

Functions:
    get_settings(): Return a cached Settings instance for dependency injection.
"""

from functools import lru_cache

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Entity Memory Engine API"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./data/memory_engine.db"

    openai_api_key: SecretStr | None = None
    openai_embedding_model: str = "text-embedding-3-small"
    text_embedding_dim: int = 1536

    visual_embedding_url: str | None = None
    visual_embedding_api_token: SecretStr | None = None
    visual_embedding_model: str = "clip-vit-large-patch14"
    visual_embedding_dim: int = 768

    chroma_host: str = "localhost"
    chroma_port: int = 8000
    chroma_collection: str = "entity-memory"

    replicate_api_token: SecretStr | None = None
    replicate_base_url: str = "https://api.replicate.com/v1"
    replicate_model_version: str = "39ed52f2a78e934b3ba6e2a89f5b1c712de7dfea535525255b1aa35c5565e08b"
    replicate_negative_prompt: str = "ugly, blurry, low quality, distorted"

    retry_max_attempts: int = 4
    retry_initial_delay_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_seconds: float = 10.0

    provider_timeout_seconds: float = 30.0
    index_timeout_seconds: float = 15.0
    generation_timeout_seconds: float = 300.0

    cache_max_size: int = 1000
    cache_ttl_seconds: float = 1800.0
    cache_sweep_interval_seconds: float = 300.0

    index_upsert_batch_size: int = Field(default=100, ge=1, le=100)
    index_delete_batch_size: int = Field(default=1000, ge=1)

    visual_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    semantic_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    drift_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    success_score_threshold: int = 90
    warning_score_threshold: int = 75

    queue_batch_size: int = Field(default=10, ge=1)
    processing_lease_seconds: float = 900.0

    @model_validator(mode="after")
    def _lease_outlasts_generation(self) -> "Settings":
        if self.processing_lease_seconds <= self.generation_timeout_seconds:
            raise ValueError("processing_lease_seconds must exceed generation_timeout_seconds")
        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()
