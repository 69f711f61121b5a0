from __future__ import annotations
from typing import Dict, Iterable, List, Optional
import json
import logging
import threading
from pathlib import Path

import networkx as nx
from networkx.readwrite import json_graph

from .cancellation import CancelToken, ensure_token
from .errors import StoreWriteFailed
from .schemas import Entity, Relationship, normalize_name

logger = logging.getLogger(__name__)

# shorter terms only match whole names
_MIN_PARTIAL_MATCH = 3


class NetworkxGraphStore:
    """
    Undirected graph over entities and relationships.
    Nodes: normalized entity name with the entity record
    Edges: one per entity pair with the relationship record
    """

    def __init__(self, path: Optional[Path] = None):
        self.graph = nx.Graph()
        self.path = Path(path) if path is not None else None
        self._lock = threading.RLock()

    # Persistence

    def is_empty(self) -> bool:
        return (
            self.graph.number_of_nodes() == 0
            and self.graph.number_of_edges() == 0
        )

    def to_dict(self) -> Dict:
        with self._lock:
            return json_graph.node_link_data(self.graph, edges="links")

    @classmethod
    def from_dict(cls, data: Dict, path: Optional[Path] = None) -> "NetworkxGraphStore":
        inst = cls(path=path)
        inst.graph = json_graph.node_link_graph(
            data, multigraph=False, directed=False, edges="links"
        )
        return inst

    def save(self, path: Optional[Path] = None) -> None:
        path = Path(path) if path is not None else self.path
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.write_text(
                json.dumps(self.to_dict(), ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except OSError as e:
            raise StoreWriteFailed(f"failed to save graph to {path}: {e}", stores=["graph"]) from e

    @classmethod
    def load(cls, path: Path) -> "NetworkxGraphStore":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_dict(data, path=path)

    @classmethod
    def open(cls, path: Path) -> "NetworkxGraphStore":
        path = Path(path)
        if path.exists():
            try:
                return cls.load(path)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load existing graph store %s: %s", path, e)
        return cls(path=path)

    def close(self, timeout: Optional[float] = None) -> None:
        # persistence is local; the timeout only bounds lock acquisition
        acquired = self._lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise StoreWriteFailed("timed out closing graph store", stores=["graph"])
        try:
            self.save()
        finally:
            self._lock.release()

    # Entity operations

    def upsert_entity(self, entity: Entity, token: Optional[CancelToken] = None) -> None:
        ensure_token(token).raise_if_cancelled("graph upsert")
        with self._lock:
            self.graph.add_node(entity.key, record=entity.to_record())

    def get_entity(self, name: str, token: Optional[CancelToken] = None) -> Optional[Entity]:
        key = normalize_name(name)
        with self._lock:
            if key not in self.graph:
                return None
            return Entity.from_record(self.graph.nodes[key]["record"])

    def delete_entity(self, name: str, token: Optional[CancelToken] = None) -> None:
        ensure_token(token).raise_if_cancelled("graph delete")
        key = normalize_name(name)
        with self._lock:
            if key in self.graph:
                # incident relationships go with the node
                self.graph.remove_node(key)

    def match_entities(
        self, terms: Iterable[str], token: Optional[CancelToken] = None
    ) -> List[Entity]:
        """Entities whose key equals, contains or is contained in a term."""
        term_keys = {normalize_name(t) for t in terms}
        term_keys.discard("")
        matches: List[Entity] = []
        with self._lock:
            for node_id, data in self.graph.nodes(data=True):
                for term in term_keys:
                    if term == node_id or (
                        min(len(term), len(node_id)) >= _MIN_PARTIAL_MATCH
                        and (term in node_id or node_id in term)
                    ):
                        matches.append(Entity.from_record(data["record"]))
                        break
        return sorted(matches, key=lambda e: e.key)

    def degree(self, name: str, token: Optional[CancelToken] = None) -> int:
        key = normalize_name(name)
        with self._lock:
            if key not in self.graph:
                return 0
            return int(self.graph.degree(key))

    # Relationship operations

    def upsert_relationship(
        self, rel: Relationship, token: Optional[CancelToken] = None
    ) -> None:
        ensure_token(token).raise_if_cancelled("graph upsert")
        src, tgt = rel.key
        with self._lock:
            if src not in self.graph or tgt not in self.graph:
                raise StoreWriteFailed(
                    f"relationship {rel.source!r} -- {rel.target!r} references a missing entity",
                    stores=["graph"],
                )
            self.graph.add_edge(src, tgt, record=rel.to_record())

    def get_relationship(
        self, source: str, target: str, token: Optional[CancelToken] = None
    ) -> Optional[Relationship]:
        src, tgt = normalize_name(source), normalize_name(target)
        with self._lock:
            if not self.graph.has_edge(src, tgt):
                return None
            return Relationship.from_record(self.graph.edges[src, tgt]["record"])

    def delete_relationship(
        self, source: str, target: str, token: Optional[CancelToken] = None
    ) -> None:
        ensure_token(token).raise_if_cancelled("graph delete")
        src, tgt = normalize_name(source), normalize_name(target)
        with self._lock:
            if self.graph.has_edge(src, tgt):
                self.graph.remove_edge(src, tgt)

    # Neighborhood

    def neighbors(
        self, name: str, hops: int = 1, token: Optional[CancelToken] = None
    ) -> List[Entity]:
        key = normalize_name(name)
        with self._lock:
            if key not in self.graph:
                return []
            reached = nx.single_source_shortest_path_length(self.graph, key, cutoff=hops)
            return [
                Entity.from_record(self.graph.nodes[n]["record"])
                for n in sorted(reached)
                if n != key
            ]

    def relationships_among(
        self, names: Iterable[str], token: Optional[CancelToken] = None
    ) -> List[Relationship]:
        keys = {normalize_name(n) for n in names}
        with self._lock:
            present = [k for k in keys if k in self.graph]
            subgraph = self.graph.subgraph(present)
            return [
                Relationship.from_record(data["record"])
                for _, _, data in subgraph.edges(data=True)
            ]
