from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Set, Tuple
import uuid


CHUNK_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "hybrid-rag/chunk")
MANIFEST_PREFIX = "manifest:"
ENTITY_VECTOR_PREFIX = "entity:"


def normalize_name(name: str) -> str:
    """Merge key for entity names: collapsed whitespace, upper case, no quotes."""
    cleaned = " ".join(str(name or "").split()).strip().strip("\"'").strip()
    return cleaned.upper()


def make_chunk_id(doc_id: str, order: int) -> str:
    return str(uuid.uuid5(CHUNK_NAMESPACE, f"{doc_id}:{order}"))


def manifest_key(doc_id: str) -> str:
    return f"{MANIFEST_PREFIX}{doc_id}"


def entity_vector_id(key: str) -> str:
    return f"{ENTITY_VECTOR_PREFIX}{key}"


def join_descriptions(values: Iterable[str]) -> str:
    # line-level set semantics keep the join associative and commutative
    lines: Set[str] = set()
    for value in values:
        for line in (value or "").splitlines():
            line = line.strip()
            if line:
                lines.add(line)
    return "\n".join(sorted(lines))


@dataclass
class Document:
    id: str
    content: str


@dataclass
class Chunk:
    id: str
    doc_id: str
    content: str
    token_count: int
    order: int

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "doc_id": self.doc_id,
            "content": self.content,
            "token_count": self.token_count,
            "order": self.order,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Chunk":
        return cls(
            id=data["id"],
            doc_id=data["doc_id"],
            content=data.get("content", ""),
            token_count=int(data.get("token_count", 0)),
            order=int(data.get("order", 0)),
        )


@dataclass
class EntityMention:
    type: str
    description: str = ""

    def combine(self, other: "EntityMention") -> "EntityMention":
        return EntityMention(
            type=min(self.type, other.type),
            description=join_descriptions([self.description, other.description]),
        )


@dataclass
class Entity:
    """
    A named concept. Provenance is kept per chunk so a re-ingested document
    can withdraw exactly what it contributed.
    """

    name: str
    mentions: Dict[str, EntityMention] = field(default_factory=dict)

    def __post_init__(self):
        if not normalize_name(self.name):
            raise ValueError("entity name must be non-empty")
        self.name = " ".join(self.name.split())

    @classmethod
    def from_chunk(
        cls, name: str, type: str, description: str, chunk_id: str
    ) -> "Entity":
        return cls(
            name=name,
            mentions={chunk_id: EntityMention(type=type, description=description.strip())},
        )

    @property
    def key(self) -> str:
        return normalize_name(self.name)

    @property
    def type(self) -> str:
        if not self.mentions:
            return ""
        counts = Counter(m.type for m in self.mentions.values())
        return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]

    @property
    def description(self) -> str:
        return join_descriptions(m.description for m in self.mentions.values())

    @property
    def source_chunk_ids(self) -> Set[str]:
        return set(self.mentions)

    def merge(self, other: "Entity") -> "Entity":
        if other.key != self.key:
            raise ValueError(f"cannot merge {self.name!r} with {other.name!r}")
        mentions = dict(self.mentions)
        for chunk_id, mention in other.mentions.items():
            if chunk_id in mentions:
                mentions[chunk_id] = mentions[chunk_id].combine(mention)
            else:
                mentions[chunk_id] = mention
        return Entity(name=min(self.name, other.name), mentions=mentions)

    def without_chunks(self, chunk_ids: Iterable[str]) -> "Entity":
        drop = set(chunk_ids)
        return Entity(
            name=self.name,
            mentions={cid: m for cid, m in self.mentions.items() if cid not in drop},
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "mentions": {
                cid: {"type": m.type, "description": m.description}
                for cid, m in sorted(self.mentions.items())
            },
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Entity":
        mentions = {
            cid: EntityMention(type=m.get("type", ""), description=m.get("description", ""))
            for cid, m in (data.get("mentions") or {}).items()
        }
        return cls(name=data["name"], mentions=mentions)


@dataclass
class RelationshipMention:
    description: str = ""
    weight: float = 1.0
    keywords: List[str] = field(default_factory=list)

    def combine(self, other: "RelationshipMention") -> "RelationshipMention":
        return RelationshipMention(
            description=join_descriptions([self.description, other.description]),
            weight=max(self.weight, other.weight),
            keywords=sorted(set(self.keywords) | set(other.keywords)),
        )


@dataclass
class Relationship:
    """
    Association between two entities. Stored undirected: endpoints are
    ordered by their normalized names.
    """

    source: str
    target: str
    mentions: Dict[str, RelationshipMention] = field(default_factory=dict)

    def __post_init__(self):
        self.source = " ".join(self.source.split())
        self.target = " ".join(self.target.split())
        if normalize_name(self.source) > normalize_name(self.target):
            self.source, self.target = self.target, self.source

    @classmethod
    def from_chunk(
        cls,
        source: str,
        target: str,
        description: str,
        chunk_id: str,
        weight: float = 1.0,
        keywords: Iterable[str] = (),
    ) -> "Relationship":
        return cls(
            source=source,
            target=target,
            mentions={
                chunk_id: RelationshipMention(
                    description=description.strip(),
                    weight=weight,
                    keywords=sorted({k.strip() for k in keywords if k and k.strip()}),
                )
            },
        )

    @property
    def source_key(self) -> str:
        return normalize_name(self.source)

    @property
    def target_key(self) -> str:
        return normalize_name(self.target)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source_key, self.target_key)

    @property
    def description(self) -> str:
        return join_descriptions(m.description for m in self.mentions.values())

    @property
    def weight(self) -> float:
        return float(sum(m.weight for m in self.mentions.values()))

    @property
    def keywords(self) -> List[str]:
        out: Set[str] = set()
        for m in self.mentions.values():
            out.update(m.keywords)
        return sorted(out)

    @property
    def source_chunk_ids(self) -> Set[str]:
        return set(self.mentions)

    def merge(self, other: "Relationship") -> "Relationship":
        if other.key != self.key:
            raise ValueError(f"cannot merge relationship {self.key} with {other.key}")
        mentions = dict(self.mentions)
        for chunk_id, mention in other.mentions.items():
            if chunk_id in mentions:
                mentions[chunk_id] = mentions[chunk_id].combine(mention)
            else:
                mentions[chunk_id] = mention
        return Relationship(
            source=min(self.source, other.source),
            target=min(self.target, other.target),
            mentions=mentions,
        )

    def without_chunks(self, chunk_ids: Iterable[str]) -> "Relationship":
        drop = set(chunk_ids)
        return Relationship(
            source=self.source,
            target=self.target,
            mentions={cid: m for cid, m in self.mentions.items() if cid not in drop},
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "description": self.description,
            "weight": self.weight,
            "keywords": self.keywords,
            "mentions": {
                cid: {
                    "description": m.description,
                    "weight": m.weight,
                    "keywords": list(m.keywords),
                }
                for cid, m in sorted(self.mentions.items())
            },
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Relationship":
        mentions = {
            cid: RelationshipMention(
                description=m.get("description", ""),
                weight=float(m.get("weight", 1.0)),
                keywords=list(m.get("keywords", [])),
            )
            for cid, m in (data.get("mentions") or {}).items()
        }
        return cls(source=data["source"], target=data["target"], mentions=mentions)


def merge_entities(entities: Iterable[Entity]) -> Dict[str, Entity]:
    merged: Dict[str, Entity] = {}
    for ent in entities:
        current = merged.get(ent.key)
        merged[ent.key] = ent if current is None else current.merge(ent)
    return merged


def merge_relationships(
    relationships: Iterable[Relationship],
) -> Dict[Tuple[str, str], Relationship]:
    merged: Dict[Tuple[str, str], Relationship] = {}
    for rel in relationships:
        current = merged.get(rel.key)
        merged[rel.key] = rel if current is None else current.merge(rel)
    return merged


@dataclass
class DocumentManifest:
    """Per-document record of what the last ingest wrote."""

    doc_id: str
    chunk_ids: List[str] = field(default_factory=list)
    entity_keys: List[str] = field(default_factory=list)
    relationship_keys: List[Tuple[str, str]] = field(default_factory=list)

    def to_record(self) -> Dict[str, Any]:
        return {
            "doc_id": self.doc_id,
            "chunk_ids": list(self.chunk_ids),
            "entity_keys": sorted(self.entity_keys),
            "relationship_keys": [list(k) for k in sorted(self.relationship_keys)],
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "DocumentManifest":
        return cls(
            doc_id=data["doc_id"],
            chunk_ids=list(data.get("chunk_ids", [])),
            entity_keys=list(data.get("entity_keys", [])),
            relationship_keys=[tuple(k) for k in data.get("relationship_keys", [])],
        )


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ConversationTurn:
    role: Role
    message: str


@dataclass
class QueryKeywords:
    high_level: List[str] = field(default_factory=list)
    low_level: List[str] = field(default_factory=list)


@dataclass
class QueryResult:
    local_entities: List[Entity] = field(default_factory=list)
    global_entities: List[Entity] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)
    chunks: List[Chunk] = field(default_factory=list)
    keywords: QueryKeywords = field(default_factory=QueryKeywords)

    @property
    def is_empty(self) -> bool:
        return not self.local_entities and not self.global_entities

    def to_context(self) -> str:
        """Render the retrieved evidence as a prompt-ready text block."""
        lines: List[str] = []
        lines.append("-----Local entities-----")
        for ent in self.local_entities:
            lines.append(f"{ent.name} ({ent.type}): {ent.description}")
        lines.append("-----Global entities-----")
        for ent in self.global_entities:
            lines.append(f"{ent.name} ({ent.type}): {ent.description}")
        lines.append("-----Relationships-----")
        for rel in self.relationships:
            lines.append(f"{rel.source} -- {rel.target} [{rel.weight:g}]: {rel.description}")
        lines.append("-----Sources-----")
        for chunk in self.chunks:
            lines.append(f"[{chunk.doc_id}#{chunk.order}] {chunk.content}")
        return "\n".join(lines)
