"""Shared fakes and fixtures: a scripted LLM and an in-memory store stack."""
from __future__ import annotations

import json
import re
import threading
import zlib
from typing import Dict, List, Optional, Tuple

import pytest

from hybrid_rag.config import IngestConfig, QueryConfig
from hybrid_rag.graph_store import NetworkxGraphStore
from hybrid_rag.kv_store import InMemoryKeyValueStore
from hybrid_rag.ports import CompositeStore
from hybrid_rag.vector_store import InMemoryVectorStore


EMBED_DIM = 512

STORAGE_CATALOG = {
    "Neo4j": ("object", "Neo4j stores entities in a graph"),
    "ChromeM": ("object", "ChromeM stores vectors"),
    "Bolt": ("object", "Bolt stores chunks"),
}
STORAGE_RELATIONS = [
    ("Neo4j", "ChromeM", "both are storage backends", ["storage"]),
]

DOC1_TEXT = "Neo4j stores entities; ChromeM stores vectors; Bolt stores chunks."


def _words(text: str) -> List[str]:
    return [w for w in re.findall(r"[a-z0-9]+", text.lower()) if len(w) > 3]


def hash_embedding(text: str) -> List[float]:
    vec = [0.0] * EMBED_DIM
    for word in _words(text):
        vec[zlib.crc32(word.encode("utf-8")) % EMBED_DIM] += 1.0
    return vec


class FakeLLM:
    """
    Scripted LLM. Extraction answers are built from a catalog: every catalog
    entity named in the chunk is returned, with catalog relations between
    entities present in the same chunk.
    """

    def __init__(
        self,
        catalog: Optional[Dict[str, Tuple[str, str]]] = None,
        relations: Optional[List[Tuple[str, str, str, List[str]]]] = None,
        keywords: Optional[Dict[str, List[str]]] = None,
        extraction_failures: int = 0,
        answer: str = "stub answer",
    ):
        self.catalog = catalog if catalog is not None else dict(STORAGE_CATALOG)
        self.relations = relations if relations is not None else list(STORAGE_RELATIONS)
        self.keywords = keywords or {"high_level_keywords": [], "low_level_keywords": []}
        self.extraction_failures = extraction_failures
        self.answer = answer
        self.extraction_calls = 0
        self.embed_calls = 0
        self.prompts: List[Tuple[Optional[str], str]] = []
        self._lock = threading.Lock()

    def extraction_response(self, text: str) -> str:
        present = [name for name in self.catalog if name in text]
        entities = [
            {"name": name, "type": self.catalog[name][0], "description": self.catalog[name][1]}
            for name in present
        ]
        relationships = [
            {"source": a, "target": b, "description": desc, "keywords": kws, "strength": 1.0}
            for a, b, desc, kws in self.relations
            if a in present and b in present
        ]
        return json.dumps({"entities": entities, "relationships": relationships})

    def complete(self, prompt, *, system_prompt=None, token=None, **parameters):
        with self._lock:
            self.prompts.append((system_prompt, prompt))
        if system_prompt and "information extraction" in system_prompt:
            with self._lock:
                self.extraction_calls += 1
                failing = self.extraction_calls <= self.extraction_failures
            if failing:
                raise ConnectionError("llm unavailable")
            return self.extraction_response(prompt)
        if system_prompt and "keywords" in system_prompt:
            return json.dumps(self.keywords)
        return self.answer

    def embed_texts(self, texts, token=None):
        with self._lock:
            self.embed_calls += 1
        return [hash_embedding(t) for t in texts]

    def embed_query(self, text, token=None):
        return hash_embedding(text)


def make_store() -> CompositeStore:
    return CompositeStore(
        kv=InMemoryKeyValueStore(),
        vector=InMemoryVectorStore(),
        graph=NetworkxGraphStore(),
    )


@pytest.fixture
def store() -> CompositeStore:
    return make_store()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM(
        keywords={"high_level_keywords": ["storage"], "low_level_keywords": ["graph", "vectors"]},
    )


@pytest.fixture
def ingest_config() -> IngestConfig:
    return IngestConfig(
        chunk_max_token_size=1500,
        overlap_tokens=100,
        entity_types=["character", "organization", "location", "object", "event"],
        max_retries=2,
        backoff_seconds=0.0,
        concurrency_count=3,
    )


@pytest.fixture
def query_config() -> QueryConfig:
    return QueryConfig(
        top_k=5,
        min_similarity=0.1,
        global_hops=2,
        global_top_k=10,
        history_turns=2,
        max_retries=1,
        backoff_seconds=0.0,
    )
