"""Centralized configuration for the conversational retrieval chain."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DOTENV_PATH = Path(__file__).resolve().parents[2] / ".env"
if DOTENV_PATH.exists():
    load_dotenv(dotenv_path=DOTENV_PATH, override=False)
else:
    load_dotenv()


class ModelSettings(BaseModel):
    embed_model: str = Field(default="sentence-transformers/all-MiniLM-L6-v2")
    llm_model: str = Field(default="gpt-4o-mini")
    llm_base_url: str = Field(default="http://localhost:11434")
    llm_provider: Literal["ollama", "openai"] = Field(default="openai")
    openai_api_base: str | None = Field(default="https://api.openai.com/v1")
    temperature: float = Field(default=0.2)
    max_input_tokens: int = Field(default=4096)
    max_output_tokens: int = Field(default=1024)


class RetrievalSettings(BaseModel):
    pinecone_api_key: SecretStr | None = Field(default=None)
    index_name: str = Field(default="documents")
    namespace: str | None = Field(default=None)
    metadata_filter: dict[str, Any] | None = Field(default=None)
    text_key: str = Field(default="text")
    top_k: int = Field(default=4, gt=0)
    min_score: int | None = Field(default=None, ge=1, le=100, description="Minimum score on a 1-100 scale")

    @property
    def score_threshold(self) -> float | None:
        if self.min_score is None:
            return None
        return self.min_score / 100


class ChainSettings(BaseModel):
    combine_strategy: str = Field(default="stuff")
    system_message: str | None = Field(default=None)
    return_source_documents: bool = Field(default=False)
    max_concurrency: int = Field(default=4, gt=0)


class MemorySettings(BaseModel):
    backend: Literal["buffer", "redis"] = Field(default="buffer")
    redis_url: str = Field(default="redis://localhost:6379/0")
    ttl_seconds: int | None = Field(default=None)


class ObservabilitySettings(BaseModel):
    verbose: bool = Field(default=False)
    enable_tracing: bool = Field(default=False)
    otlp_endpoint: str = Field(default="http://localhost:4318/v1/traces")
    enable_prometheus: bool = Field(default=True)


class CacheSettings(BaseModel):
    enabled: bool = Field(default=False)
    path: Path = Field(default=Path("data/cache/lc_cache.db"))


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CONVQA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    environment: str = Field(default="local")
    model: ModelSettings = ModelSettings()
    retrieval: RetrievalSettings = RetrievalSettings()
    chain: ChainSettings = ChainSettings()
    memory: MemorySettings = MemorySettings()
    observability: ObservabilitySettings = ObservabilitySettings()
    cache: CacheSettings = CacheSettings()


@lru_cache
def get_settings() -> AppSettings:
    """Return cached settings instance."""

    return AppSettings()
