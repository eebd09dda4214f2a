"""Application configuration using Pydantic Settings.

All configuration is loaded from environment variables.
See .env.example for available settings.
"""

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # ============================================
    # Application
    # ============================================
    app_name: str = "Knowledge Engine"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = False

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_prefix: str = "/api/v1"
    allowed_origins: list[str] = ["http://localhost:3000", "http://localhost:8080"]

    # ============================================
    # Database (PostgreSQL)
    # ============================================
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_db: str = "knowledge"

    # Explicit DATABASE_URL takes precedence if set
    database_url: str | None = None

    # Pool: pool_size + max_overflow is the hard connection cap
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_connect_timeout: float = Field(default=10.0, description="Connect timeout in seconds")
    db_create_tables: bool = Field(
        default=False, description="Create tables on startup instead of running Alembic"
    )

    @property
    def get_database_url(self) -> str:
        """Get database URL - explicit or constructed from components."""
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    # Bootstrap retry, shared by the database and Qdrant
    connect_retries: int = 3
    connect_retry_delay: float = 2.0

    # ============================================
    # Qdrant (Vector Database)
    # ============================================
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: str | None = None
    qdrant_timeout: int = 60
    qdrant_collection_prefix: str = Field(
        default="knowledge", description="Prefix for per-type collections"
    )
    qdrant_hnsw_m: int = 16
    qdrant_hnsw_ef_construct: int = Field(
        default=100, description="Higher values trade indexing time for recall"
    )

    # ============================================
    # Embeddings
    # ============================================
    embedding_dimensions: int = Field(
        default=512, description="Embedding vector dimensions (must match every tier)"
    )
    embedding_batch_size: int = Field(
        default=10, description="Texts embedded concurrently per window"
    )

    # Tier 1: local offline model
    embedding_local_enabled: bool = True
    embedding_local_model: str = "Xenova/bge-small-zh-v1.5"
    embedding_local_model_file: str = "onnx/model_quantized.onnx"
    model_cache_dir: str = Field(
        default="./models", description="Directory holding pre-downloaded models"
    )

    # Tier 2: external embedding service
    embedding_http_enabled: bool = False
    embedding_http_url: str = ""
    embedding_http_timeout: float = 30.0

    # Tier 3: hosted OpenAI-compatible API
    embedding_openai_enabled: bool = False
    openai_api_key: str = ""
    openai_base_url: str | None = None
    openai_embedding_model: str = "text-embedding-3-small"

    # ============================================
    # Retrieval
    # ============================================
    retrieval_top_k: int = 10
    retrieval_min_score: float = Field(default=0.5, ge=0.0, le=1.0)
    retrieval_kb_ratio: float = Field(
        default=0.7, gt=0.0, lt=1.0, description="Share of top_k given to knowledge-base search"
    )
    file_min_score: float = Field(default=0.5, ge=0.0, le=1.0)
    qa_duplicate_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    retrieval_local_fallback: bool = Field(
        default=True,
        description="Compute cosine similarity in-process when the vector store search fails",
    )

    # ============================================
    # Reranking
    # ============================================
    reranker_enabled: bool = True
    reranker_model: str = "Xenova/ms-marco-MiniLM-L-6-v2"
    reranker_model_file: str = "onnx/model_quantized.onnx"
    reranker_weight_similarity: float = Field(default=0.7, ge=0.0)
    reranker_weight_type: float = Field(default=0.2, ge=0.0)
    reranker_weight_rank: float = Field(default=0.1, ge=0.0)

    # ============================================
    # Chunking
    # ============================================
    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=150, ge=0)
    max_chunks: int = Field(default=5000, gt=0)

    # ============================================
    # Logging
    # ============================================
    log_level: str = "INFO"

    @model_validator(mode="after")
    def check_chunk_window(self) -> "Settings":
        """Overlap must leave room for forward progress."""
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    @property
    def reranker_weights(self) -> dict[str, float]:
        """Enhanced reranking weights keyed by signal."""
        return {
            "similarity": self.reranker_weight_similarity,
            "type_priority": self.reranker_weight_type,
            "rank_decay": self.reranker_weight_rank,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
