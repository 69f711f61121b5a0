"""Storage port contracts and their composition into one logical store."""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from .cancellation import CancelToken
from .schemas import Entity, Relationship


@dataclass
class VectorHit:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class KeyValueStore(Protocol):
    """Raw chunks and per-document manifests, keyed by id."""

    def put(self, key: str, value: Dict[str, Any], token: Optional[CancelToken] = None) -> None: ...

    def get(self, key: str, token: Optional[CancelToken] = None) -> Optional[Dict[str, Any]]: ...

    def delete(self, key: str, token: Optional[CancelToken] = None) -> None: ...


@runtime_checkable
class VectorStore(Protocol):
    """Chunk and entity embeddings with similarity search (higher score is closer)."""

    def upsert_vector(
        self,
        id: str,
        embedding: List[float],
        metadata: Dict[str, Any],
        token: Optional[CancelToken] = None,
    ) -> None: ...

    def query_vectors(
        self,
        embedding: List[float],
        top_k: int,
        where: Optional[Dict[str, Any]] = None,
        token: Optional[CancelToken] = None,
    ) -> List[VectorHit]: ...

    def delete_vector(self, id: str, token: Optional[CancelToken] = None) -> None: ...


@runtime_checkable
class GraphStore(Protocol):
    """Entities as nodes keyed by normalized name, relationships as undirected edges."""

    def upsert_entity(self, entity: Entity, token: Optional[CancelToken] = None) -> None: ...

    def upsert_relationship(self, rel: Relationship, token: Optional[CancelToken] = None) -> None: ...

    def get_entity(self, name: str, token: Optional[CancelToken] = None) -> Optional[Entity]: ...

    def get_relationship(
        self, source: str, target: str, token: Optional[CancelToken] = None
    ) -> Optional[Relationship]: ...

    def neighbors(self, name: str, hops: int = 1, token: Optional[CancelToken] = None) -> List[Entity]:
        """Distinct entities within `hops` of `name`, excluding it, sorted by key."""

    def relationships_among(
        self, names: Iterable[str], token: Optional[CancelToken] = None
    ) -> List[Relationship]: ...

    def degree(self, name: str, token: Optional[CancelToken] = None) -> int: ...

    def match_entities(self, terms: Iterable[str], token: Optional[CancelToken] = None) -> List[Entity]: ...

    def delete_entity(self, name: str, token: Optional[CancelToken] = None) -> None: ...

    def delete_relationship(
        self, source: str, target: str, token: Optional[CancelToken] = None
    ) -> None: ...

    def close(self, timeout: Optional[float] = None) -> None: ...


@runtime_checkable
class Store(KeyValueStore, VectorStore, GraphStore, Protocol):
    """One object satisfying all three ports."""


class CompositeStore:
    """
    Composes three independent backends into one `Store`.

    Each backend is its own failure domain; any of them may itself be a
    full `Store`, in which case only its matching port is used.
    """

    def __init__(self, kv: KeyValueStore, vector: VectorStore, graph: GraphStore):
        self.kv = kv
        self.vector = vector
        self.graph = graph

    # KeyValueStore
    def put(self, key, value, token=None):
        self.kv.put(key, value, token=token)

    def get(self, key, token=None):
        return self.kv.get(key, token=token)

    def delete(self, key, token=None):
        self.kv.delete(key, token=token)

    # VectorStore
    def upsert_vector(self, id, embedding, metadata, token=None):
        self.vector.upsert_vector(id, embedding, metadata, token=token)

    def query_vectors(self, embedding, top_k, where=None, token=None):
        return self.vector.query_vectors(embedding, top_k, where=where, token=token)

    def delete_vector(self, id, token=None):
        self.vector.delete_vector(id, token=token)

    # GraphStore
    def upsert_entity(self, entity, token=None):
        self.graph.upsert_entity(entity, token=token)

    def upsert_relationship(self, rel, token=None):
        self.graph.upsert_relationship(rel, token=token)

    def get_entity(self, name, token=None):
        return self.graph.get_entity(name, token=token)

    def get_relationship(self, source, target, token=None):
        return self.graph.get_relationship(source, target, token=token)

    def neighbors(self, name, hops=1, token=None):
        return self.graph.neighbors(name, hops, token=token)

    def relationships_among(self, names, token=None):
        return self.graph.relationships_among(names, token=token)

    def degree(self, name, token=None):
        return self.graph.degree(name, token=token)

    def match_entities(self, terms, token=None):
        return self.graph.match_entities(terms, token=token)

    def delete_entity(self, name, token=None):
        self.graph.delete_entity(name, token=token)

    def delete_relationship(self, source, target, token=None):
        self.graph.delete_relationship(source, target, token=token)

    def close(self, timeout=None):
        self.graph.close(timeout)
        for backend in (self.kv, self.vector):
            closer = getattr(backend, "close", None)
            if closer is not None and backend is not self.graph:
                closer()
