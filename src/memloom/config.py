"""memloom configuration."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _default_data_dir() -> Path:
    return Path(os.environ.get("MEMLOOM_DATA_DIR", Path(__file__).resolve().parents[2] / "data"))


class RetryConfig(BaseModel):
    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.5


class EmbeddingConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("MEMLOOM_EMBED_PROVIDER", "dashscope"))
    dims: int = 1536
    timeout: float = 30.0
    max_text_chars: int = 8192
    retry: RetryConfig = Field(default_factory=RetryConfig)

    dashscope_api_key: str = Field(default_factory=lambda: os.environ.get("DASHSCOPE_API_KEY", ""))
    dashscope_model: str = Field(
        default_factory=lambda: os.environ.get("DASHSCOPE_EMBEDDING_MODEL", "text-embedding-v4")
    )
    dashscope_url: str = Field(
        default_factory=lambda: os.environ.get(
            "DASHSCOPE_EMBEDDING_URL",
            "https://dashscope.aliyuncs.com/api/v1/services/embeddings/text-embedding/text-embedding",
        )
    )
    openai_api_key: str = Field(default_factory=lambda: os.environ.get("OPENAI_API_KEY", ""))
    openai_model: str = Field(
        default_factory=lambda: os.environ.get("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
    )
    ollama_base_url: str = Field(
        default_factory=lambda: os.environ.get("OLLAMA_BASE_URL", "") or "http://127.0.0.1:11434"
    )
    ollama_model: str = Field(
        default_factory=lambda: os.environ.get("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text")
    )


class LLMConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("MEMLOOM_LLM_PROVIDER", "openai"))
    openai_api_key: str = Field(default_factory=lambda: os.environ.get("OPENAI_API_KEY", ""))
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = Field(default_factory=lambda: os.environ.get("OPENAI_MODEL", "gpt-4.1"))
    ollama_base_url: str = Field(
        default_factory=lambda: os.environ.get("OLLAMA_BASE_URL", "") or "http://127.0.0.1:11434"
    )
    ollama_model: str = Field(
        default_factory=lambda: os.environ.get("OLLAMA_MODEL", "alibayram/Qwen3-30B-A3B-Instruct-2507")
    )
    ollama_keep_alive: str = Field(default_factory=lambda: os.environ.get("OLLAMA_KEEP_ALIVE", "24h"))
    timeout: float = 120.0
    temperature: float = 0.7
    max_tokens: int = 4096


class ConsolidationConfig(BaseModel):
    top_k: int = 5
    min_similarity: float = 0.7
    extraction_timeout: float = 180.0
    adjudication_timeout: float = 180.0


class LoggingConfig(BaseModel):
    level: str = Field(default_factory=lambda: os.environ.get("MEMLOOM_LOG_LEVEL", "INFO"))
    log_file: str | None = Field(default_factory=lambda: os.environ.get("MEMLOOM_LOG_FILE") or None)


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db" / "memloom.db"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.db_path.parent]:
            d.mkdir(parents=True, exist_ok=True)
