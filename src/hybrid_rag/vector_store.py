from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence
import logging
import math
import threading
from pathlib import Path

from chromadb import PersistentClient

from .cancellation import CancelToken, ensure_token
from .config import settings
from .errors import StoreReadFailed, StoreWriteFailed
from .ports import VectorHit

logger = logging.getLogger(__name__)


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if not vec_a or not vec_b:
        return 0.0
    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    denom = norm_a * norm_b
    if denom == 0:
        return 0.0
    return dot / denom


def _clean_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    # Chroma only accepts scalar metadata values
    out: Dict[str, Any] = {}
    for k, v in metadata.items():
        if v is None:
            continue
        if isinstance(v, (str, int, float, bool)):
            out[k] = v
        else:
            out[k] = str(v)
    return out


class ChromaVectorStore:
    """
    Thin wrapper around a ChromaDB persistent collection using cosine space.
    Scores are returned as similarities (1 - cosine distance).
    """

    def __init__(
        self,
        collection_name: str | None = None,
        path: Path | None = None,
    ):
        self.client = PersistentClient(path=str(path or settings.chroma_db_dir))
        self.collection_name = collection_name or settings.chroma_collection
        self.collection = self.client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def has_data(self) -> bool:
        try:
            return self.collection.count() > 0
        except Exception as e:
            raise StoreReadFailed(f"chroma count failed: {e}", store="vector") from e

    def upsert_vector(
        self,
        id: str,
        embedding: List[float],
        metadata: Dict[str, Any],
        token: Optional[CancelToken] = None,
    ) -> None:
        ensure_token(token).raise_if_cancelled("vector upsert")
        try:
            self.collection.upsert(
                ids=[id],
                embeddings=[list(embedding)],
                metadatas=[_clean_metadata(metadata)],
            )
        except Exception as e:
            raise StoreWriteFailed(f"chroma upsert of {id} failed: {e}", stores=["vector"]) from e

    def query_vectors(
        self,
        embedding: List[float],
        top_k: int,
        where: Optional[Dict[str, Any]] = None,
        token: Optional[CancelToken] = None,
    ) -> List[VectorHit]:
        ensure_token(token).raise_if_cancelled("vector query")
        try:
            count = self.collection.count()
            if count == 0:
                return []
            res = self.collection.query(
                query_embeddings=[list(embedding)],
                n_results=min(top_k, count),
                where=where or None,
            )
        except Exception as e:
            raise StoreReadFailed(f"chroma query failed: {e}", store="vector") from e

        ids = (res.get("ids") or [[]])[0]
        distances = (res.get("distances") or [[]])[0]
        metas = (res.get("metadatas") or [[]])[0]
        out: List[VectorHit] = []
        for _id, dist, meta in zip(ids, distances, metas):
            out.append(VectorHit(id=_id, score=1.0 - float(dist), metadata=dict(meta or {})))
        return out

    def delete_vector(self, id: str, token: Optional[CancelToken] = None) -> None:
        ensure_token(token).raise_if_cancelled("vector delete")
        try:
            self.collection.delete(ids=[id])
        except Exception as e:
            raise StoreWriteFailed(f"chroma delete of {id} failed: {e}", stores=["vector"]) from e


class InMemoryVectorStore:
    """Keeps embeddings in a dict and searches by brute force."""

    def __init__(self):
        self._entries: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def upsert_vector(self, id, embedding, metadata, token=None) -> None:
        ensure_token(token).raise_if_cancelled("vector upsert")
        with self._lock:
            self._entries[id] = (list(embedding), dict(metadata))

    def query_vectors(self, embedding, top_k, where=None, token=None) -> List[VectorHit]:
        ensure_token(token).raise_if_cancelled("vector query")
        with self._lock:
            entries = list(self._entries.items())
        hits: List[VectorHit] = []
        for _id, (vec, meta) in entries:
            if where and any(meta.get(k) != v for k, v in where.items()):
                continue
            hits.append(VectorHit(id=_id, score=cosine_similarity(embedding, vec), metadata=dict(meta)))
        hits.sort(key=lambda h: (-h.score, h.id))
        return hits[:top_k]

    def delete_vector(self, id, token=None) -> None:
        ensure_token(token).raise_if_cancelled("vector delete")
        with self._lock:
            self._entries.pop(id, None)

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)
