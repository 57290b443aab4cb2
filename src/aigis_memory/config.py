"""
Runtime Configuration

All tunables are read from the environment (and an optional `.env` file).
Nothing here is cached at import time: callers obtain a validated Settings
instance through `load_settings()` and pass it down explicitly.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import Field, SecretStr, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.errors import ConfigurationError


SimilarityMetric = Literal["cosine", "l2", "dot"]


def _split_csv(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseSettings):
    # Vector store
    database_url: Optional[str] = None
    memory_collection: str = Field(
        default="aigis_memory", pattern=r"^[a-zA-Z_][a-zA-Z0-9_]{0,62}$"
    )
    embedding_dimension: int = Field(default=1536, gt=0)
    similarity_metric: SimilarityMetric = "cosine"
    store_backend: Literal["pgvector", "memory"] = "pgvector"

    # Embedding backend
    openai_api_key: SecretStr
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str = "https://api.openai.com/v1/embeddings"
    embedding_timeout: float = Field(default=60.0, gt=0)
    verify_embedding_dimension: bool = True

    # Feed
    jetstream_url: str = "wss://jetstream2.us-east.bsky.network/subscribe"
    wanted_collections: str = "app.bsky.feed.post"
    bot_did: str
    allowed_users: str = ""
    allowed_langs: str = ""
    cursor_path: str = "data/cursor.json"
    cursor_flush_interval: float = Field(default=60.0, gt=0)
    reconnect_min_wait: float = Field(default=1.0, gt=0)
    reconnect_max_wait: float = Field(default=60.0, gt=0)

    # Pipeline
    raw_queue_size: int = Field(default=256, gt=0)
    embed_queue_size: int = Field(default=256, gt=0)
    store_queue_size: int = Field(default=256, gt=0)
    embed_batch_size: int = Field(default=32, gt=0)
    embed_max_wait: float = Field(default=0.5, gt=0)
    embed_workers: int = Field(default=1, gt=0)
    store_batch_size: int = Field(default=64, gt=0)
    retry_attempts: int = Field(default=5, gt=0)
    retry_min_wait: float = Field(default=0.5, ge=0)
    retry_max_wait: float = Field(default=30.0, gt=0)
    excerpt_chars: int = Field(default=2000, gt=0)
    shutdown_grace: float = Field(default=10.0, ge=0)
    dead_letter_path: str = "data/dead_letters.jsonl"

    # Operations API
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=8080, gt=0, lt=65536)

    # Misc
    persona_path: str = "prompt.txt"
    log_level: str = "INFO"
    admin_api_key: Optional[SecretStr] = None
    metrics_enabled: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @property
    def wanted_collection_list(self) -> List[str]:
        return _split_csv(self.wanted_collections)

    @property
    def allowed_user_list(self) -> List[str]:
        return _split_csv(self.allowed_users)

    @property
    def allowed_lang_list(self) -> List[str]:
        return [lang.lower() for lang in _split_csv(self.allowed_langs)]

    @model_validator(mode="after")
    def _require_database_url(self) -> "Settings":
        if self.store_backend == "pgvector" and not self.database_url:
            raise ValueError("DATABASE_URL is required for the pgvector backend")
        return self


def load_settings(**overrides) -> Settings:
    """
    Build and validate Settings.

    Any validation failure (missing credentials, unknown metric, negative
    sizes) is reported as a ConfigurationError so startup can abort before a
    feed subscription is opened.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        fields = ", ".join(_describe(err) for err in exc.errors())
        raise ConfigurationError(f"Invalid configuration: {fields}") from exc


def _describe(err) -> str:
    loc = ".".join(str(p) for p in err["loc"])
    if loc:
        return loc
    return f"<root> ({err['msg']})"
