"""Runtime configuration for the answering engine and its HTTP surface."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_PROVIDER_ORDER = ("openai", "cohere", "huggingface", "local")


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="grcrag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Retrieval / fusion
    top_k: int = 10
    max_top_k: int = 50
    relevance_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    hybrid_alpha: float = Field(default=0.7, ge=0.0, le=1.0)  # weight of vector similarity vs lexical match
    overfetch_factor: float = 1.5
    max_context_length: int = 8000
    use_reranker: bool = True
    rerank_keyword_boost: float = Field(default=0.1, ge=0.0)
    rerank_recency_boost: float = Field(default=0.05, ge=0.0)
    rerank_recency_window_days: int = 30
    rerank_score_cap: float = Field(default=1.0, gt=0.0, le=1.0)

    # Timeouts (seconds)
    retrieval_timeout_seconds: float = 10.0
    generation_timeout_seconds: float = 60.0

    # Response cache
    cache_enabled: bool = True
    cache_ttl_seconds: float = 3600.0
    cache_sweep_interval_seconds: float = 3600.0

    # Generation providers, highest priority first
    generation_providers: tuple[str, ...] | str = _DEFAULT_PROVIDER_ORDER
    openai_api_key: str | None = None
    openai_model: str = "gpt-3.5-turbo"
    cohere_api_key: str | None = None
    cohere_model: str = "command-r"
    huggingface_api_key: str | None = None
    huggingface_model: str = "HuggingFaceH4/zephyr-7b-beta"
    use_local_generator: bool = False
    local_generator_model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    local_generator_device: str | None = None
    max_tokens: int = 1000
    temperature: float = 0.3
    fallback_excerpt_length: int = 500
    source_excerpt_length: int = 200

    # Embeddings
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = 384
    use_model_embeddings: bool = False

    # Vector index
    chroma_persist_dir: Path = Path("./.chroma")
    chroma_collection: str = "grc-documents"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    # Chunking pipeline
    chunk_size: int = 1000
    chunk_overlap: int = 200
    use_token_splitter: bool = False
    tokens_per_chunk: int = 256
    token_overlap: int = 50

    # Query log
    query_log_path: Path | None = None
    query_log_max_records: int = 10_000
    log_preview_length: int = 500

    # API & upload safety
    tenant_header: str = "X-Tenant-ID"
    allowed_extensions: tuple[str, ...] | str = (".pdf", ".docx", ".txt", ".md")
    max_files: int = 12
    max_upload_size_mb: int = 25  # per file
    max_total_upload_mb: int = 100
    api_key: str | None = None  # if set, required in X-API-Key header
    rate_limit_requests: int = 120  # per window per client
    rate_limit_window_seconds: int = 60

    evaluation_min_recall: float = 0.5
    evaluation_min_mrr: float = 0.5

    @property
    def provider_order(self) -> tuple[str, ...]:
        value = self.generation_providers
        if isinstance(value, str):
            parts = [p.strip().lower() for p in value.split(",") if p.strip()]
            return tuple(parts)
        return tuple(p.strip().lower() for p in value if p.strip())

    @property
    def allowed_extensions_tuple(self) -> tuple[str, ...]:
        value = self.allowed_extensions
        if isinstance(value, tuple):
            return value
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",") if p.strip()]
            return tuple(parts) if parts else (".pdf", ".docx", ".txt")
        return (".pdf", ".docx", ".txt")


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
