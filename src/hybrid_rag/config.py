from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings

from .errors import InvalidConfig


DEFAULT_ENTITY_TYPES = [
    "character",
    "organization",
    "location",
    "time period",
    "object",
    "theme",
    "event",
]


class Settings(BaseSettings):
    # Where raw data lives
    data_dir: Path = Path("data/raw")

    # Ollama configuration
    ollama_base_url: str = "http://localhost:11434"
    ollama_chat_model: str = "llama3"
    ollama_extraction_model: str = "llama3"
    ollama_embedding_model: str = "nomic-embed-text"
    llm_temperature: float = 0.1

    # Storage backends
    chroma_db_dir: Path = Path("tmp/vec_db")
    chroma_collection: str = "hybrid_rag"
    graph_store_path: Path = Path("tmp/graph_store.json")
    kv_store_path: Path = Path("tmp/kv.db")
    store_close_timeout: float = 30.0

    # Ingestion
    chunk_max_token_size: int = 1500
    chunk_overlap_tokens: int = 100
    entity_types: List[str] = DEFAULT_ENTITY_TYPES
    max_retries: int = 5
    backoff_seconds: float = 3.0
    concurrency_count: int = 5

    # Query
    query_top_k: int = 5
    query_min_similarity: float = 0.2
    query_global_hops: int = 2
    query_global_top_k: int = 10
    query_history_turns: int = 3

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "HYBRID_RAG_"


@dataclass
class IngestConfig:
    chunk_max_token_size: int
    overlap_tokens: int
    entity_types: List[str]
    max_retries: int
    backoff_seconds: float
    concurrency_count: int

    def validate(self) -> "IngestConfig":
        if self.chunk_max_token_size <= 0:
            raise InvalidConfig("chunk_max_token_size must be positive")
        if self.overlap_tokens < 0:
            raise InvalidConfig("overlap_tokens must not be negative")
        if self.overlap_tokens >= self.chunk_max_token_size:
            raise InvalidConfig(
                f"overlap_tokens ({self.overlap_tokens}) must be smaller than "
                f"chunk_max_token_size ({self.chunk_max_token_size})"
            )
        if not [t for t in self.entity_types if t and t.strip()]:
            raise InvalidConfig("entity_types must name at least one type")
        if self.max_retries < 0:
            raise InvalidConfig("max_retries must not be negative")
        if self.backoff_seconds < 0:
            raise InvalidConfig("backoff_seconds must not be negative")
        if self.concurrency_count < 1:
            raise InvalidConfig("concurrency_count must be at least 1")
        return self

    @classmethod
    def from_settings(cls, s: Settings) -> "IngestConfig":
        return cls(
            chunk_max_token_size=s.chunk_max_token_size,
            overlap_tokens=s.chunk_overlap_tokens,
            entity_types=list(s.entity_types),
            max_retries=s.max_retries,
            backoff_seconds=s.backoff_seconds,
            concurrency_count=s.concurrency_count,
        ).validate()


@dataclass
class QueryConfig:
    top_k: int
    min_similarity: float
    global_hops: int
    global_top_k: int
    history_turns: int
    max_retries: int
    backoff_seconds: float

    def validate(self) -> "QueryConfig":
        if self.top_k < 1:
            raise InvalidConfig("top_k must be at least 1")
        if self.global_hops < 1:
            raise InvalidConfig("global_hops must be at least 1")
        if self.global_top_k < 0:
            raise InvalidConfig("global_top_k must not be negative")
        if self.history_turns < 0:
            raise InvalidConfig("history_turns must not be negative")
        if self.max_retries < 0 or self.backoff_seconds < 0:
            raise InvalidConfig("retry settings must not be negative")
        return self

    @classmethod
    def from_settings(cls, s: Settings) -> "QueryConfig":
        return cls(
            top_k=s.query_top_k,
            min_similarity=s.query_min_similarity,
            global_hops=s.query_global_hops,
            global_top_k=s.query_global_top_k,
            history_turns=s.query_history_turns,
            max_retries=s.max_retries,
            backoff_seconds=s.backoff_seconds,
        ).validate()


settings = Settings()
