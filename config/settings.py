"""
Centralized configuration for the RAG support engine.

All settings are loaded from environment variables via .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./data/rag.db")
    database_echo: bool = Field(default=False)

    # Local embedding backend (sentence-transformers)
    local_embed_model: str = Field(default="all-MiniLM-L6-v2")
    local_embed_device: Optional[str] = Field(default=None)

    # Cloud embedding backend (OpenAI)
    openai_api_key: Optional[str] = Field(default=None)
    openai_embed_model: str = Field(default="text-embedding-3-small")

    # Embedding calls
    embedding_timeout_seconds: float = Field(default=30.0, gt=0)
    embedding_batch_size: int = Field(default=16, ge=1)
    default_embedding_backend: str = Field(default="local")  # local | cloud

    # Chunking
    chunk_size: int = Field(default=512, gt=0)
    chunk_overlap: int = Field(default=50, ge=0)
    chunk_strategy: str = Field(default="structure_aware")  # fixed | structure_aware

    # Retrieval
    similarity_threshold: float = Field(default=0.6)
    top_k: int = Field(default=10, ge=1)
    max_context_chunks: int = Field(default=5, ge=1)
    max_context_tokens: int = Field(default=2000, ge=1)
    query_cache_size: int = Field(default=256, ge=0)

    # Reranking heuristics
    rerank_specialty_boost: float = Field(default=1.2)
    rerank_tag_overlap_factor: float = Field(default=0.3)
    rerank_recency_boost: float = Field(default=1.1)
    rerank_recency_window_hours: float = Field(default=24.0)

    # Ingestion
    ingest_max_retries: int = Field(default=3, ge=0)
    ingest_retry_backoff_seconds: float = Field(default=0.5, ge=0)

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_title: str = Field(default="RAG Support Engine API")
    api_version: str = Field(default="1.0.0")
    cors_origins: str = Field(default="*")

    # Logging
    log_level: str = Field(default="INFO")

    # Data
    data_directory: str = Field(default="./data")

    @property
    def cors_origins_list(self) -> list:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
