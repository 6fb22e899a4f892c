"""
Configuration management using Pydantic Settings.

All configuration is loaded from environment variables with sensible defaults.
Use a .env file for local development.

Environment Variables:
    EMBEDDING_PROVIDER: Embedding backend ("huggingface" or "gemini")
    EMBEDDING_MODEL: Model identifier passed to the provider
    HF_API_KEY / GEMINI_API_KEY: Provider API keys
    CHUNK_SIZE: Characters per document chunk
    CHUNK_OVERLAP: Characters shared between consecutive chunks
    STORE_DIR: Directory holding the persisted chunk store
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # API Keys
    # ==========================================================================
    hf_api_key: Optional[SecretStr] = Field(
        default=None,
        description="HuggingFace API key (for the huggingface embedding provider)",
    )
    gemini_api_key: Optional[SecretStr] = Field(
        default=None,
        description="Google Gemini API key (for the gemini embedding provider)",
    )

    # ==========================================================================
    # Embedding Configuration
    # ==========================================================================
    embedding_provider: Literal["huggingface", "gemini"] = Field(
        default="huggingface",
        description="Which embedding adapter to construct",
    )
    embedding_model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2",
        description="Provider model used for document/query embeddings",
    )
    embedding_dimension: int = Field(
        default=384,
        ge=1,
        description="Dimension of embedding vectors (must match model)",
    )
    embedding_batch_size: int = Field(
        default=32,
        ge=1,
        le=256,
        description="Number of texts sent per provider request",
    )
    embedding_timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request HTTP timeout in seconds",
    )
    embed_max_attempts: int = Field(
        default=4,
        ge=1,
        le=10,
        description="Attempts per embedding batch before a transient error is surfaced",
    )
    embed_backoff_initial: float = Field(
        default=1.0,
        ge=0.0,
        description="First retry delay in seconds (doubles on each retry)",
    )
    embed_backoff_max: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound on a single retry delay in seconds",
    )

    # ==========================================================================
    # Chunking Configuration
    # ==========================================================================
    chunk_size: int = Field(
        default=400,
        ge=1,
        le=8192,
        description="Maximum characters per document chunk",
    )
    chunk_overlap: int = Field(
        default=50,
        ge=0,
        description="Characters shared between consecutive chunks",
    )

    # ==========================================================================
    # Storage & Retrieval Configuration
    # ==========================================================================
    store_dir: Path = Field(
        default=Path("data/store"),
        description="Directory for the persisted chunk store",
    )
    persist_store: bool = Field(
        default=True,
        description="Persist the store to store_dir (in-memory only when false)",
    )
    retrieval_top_k: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Default number of chunks returned by GET /search",
    )
    similarity_threshold: Optional[float] = Field(
        default=None,
        ge=-1.0,
        le=1.0,
        description="Minimum cosine similarity for search results (disabled when unset)",
    )
    ingest_timeout: Optional[float] = Field(
        default=120.0,
        gt=0.0,
        description="Seconds an HTTP ingest may take before it is abandoned",
    )
    search_timeout: Optional[float] = Field(
        default=30.0,
        gt=0.0,
        description="Seconds an HTTP search may take before it is abandoned",
    )

    # ==========================================================================
    # API Configuration
    # ==========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="Host to bind API server",
    )
    api_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port for API server",
    )

    # ==========================================================================
    # Observability Configuration
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    phoenix_endpoint: str = Field(
        default="http://localhost:6006",
        description="Arize Phoenix collector endpoint",
    )
    enable_tracing: bool = Field(
        default=False,
        description="Enable OpenTelemetry tracing to Phoenix",
    )

    # ==========================================================================
    # Validators
    # ==========================================================================
    @field_validator("chunk_overlap")
    @classmethod
    def validate_chunk_overlap(cls, v: int, info) -> int:
        """Ensure overlap is less than chunk size."""
        chunk_size = info.data.get("chunk_size", 400)
        if v >= chunk_size:
            raise ValueError(f"chunk_overlap ({v}) must be less than chunk_size ({chunk_size})")
        return v

    @field_validator("store_dir")
    @classmethod
    def resolve_path(cls, v: Path) -> Path:
        """Resolve paths to absolute paths."""
        return v.resolve()

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @property
    def hf_api_key_value(self) -> Optional[str]:
        """Get the actual HuggingFace key value (use sparingly)."""
        if self.hf_api_key:
            return self.hf_api_key.get_secret_value()
        return None

    @property
    def gemini_api_key_value(self) -> Optional[str]:
        """Get the actual Gemini key value (use sparingly)."""
        if self.gemini_api_key:
            return self.gemini_api_key.get_secret_value()
        return None


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to ensure settings are only loaded once.
    Call `get_settings.cache_clear()` to reload settings.

    Returns:
        Settings: Application settings instance
    """
    return Settings()


# Convenience alias
settings = get_settings()
