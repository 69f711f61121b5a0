# src/api/server.py

from __future__ import annotations
from functools import lru_cache
from pathlib import Path
from typing import Literal

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from hybrid_rag.errors import Canceled, HybridRAGError, InvalidConfig
from hybrid_rag.logging_utils import setup_logging
from hybrid_rag.schemas import ConversationTurn, Document, Entity, QueryResult, Relationship, Role
from hybrid_rag.service import GraphRAGService

setup_logging()

app = FastAPI(title="Hybrid GraphRAG API", version="0.3.0")


@lru_cache(maxsize=1)
def get_service() -> GraphRAGService:
    return GraphRAGService()


class DocumentRequest(BaseModel):
    id: str
    content: str


class IngestResponse(BaseModel):
    doc_id: str
    chunk_count: int
    entity_count: int
    relationship_count: int
    pruned_entities: list[str]
    removed_chunk_ids: list[str]


class BuildIndexRequest(BaseModel):
    data_dir: str | None = None


class BuildIndexResponse(BaseModel):
    num_sources: int
    num_chunks: int
    sources: list[str]
    failed: dict[str, str]


class Turn(BaseModel):
    role: Literal["user", "assistant"]
    message: str


class QueryRequest(BaseModel):
    conversation: list[Turn]


class EntityOut(BaseModel):
    name: str
    type: str
    description: str
    source_chunk_ids: list[str]


class RelationshipOut(BaseModel):
    source: str
    target: str
    description: str
    weight: float
    keywords: list[str]
    source_chunk_ids: list[str]


class ChunkOut(BaseModel):
    id: str
    doc_id: str
    order: int
    token_count: int
    content: str


class QueryResponse(BaseModel):
    no_match: bool
    high_level_keywords: list[str]
    low_level_keywords: list[str]
    local_entities: list[EntityOut]
    global_entities: list[EntityOut]
    relationships: list[RelationshipOut]
    chunks: list[ChunkOut]


class QARequest(BaseModel):
    question: str
    history: list[Turn] = []


class QAResponse(BaseModel):
    answer: str
    citations: list[dict]
    context: QueryResponse


def _entity_out(ent: Entity) -> EntityOut:
    return EntityOut(
        name=ent.name,
        type=ent.type,
        description=ent.description,
        source_chunk_ids=sorted(ent.source_chunk_ids),
    )


def _relationship_out(rel: Relationship) -> RelationshipOut:
    return RelationshipOut(
        source=rel.source,
        target=rel.target,
        description=rel.description,
        weight=rel.weight,
        keywords=rel.keywords,
        source_chunk_ids=sorted(rel.source_chunk_ids),
    )


def _query_out(result: QueryResult) -> QueryResponse:
    return QueryResponse(
        no_match=result.is_empty,
        high_level_keywords=result.keywords.high_level,
        low_level_keywords=result.keywords.low_level,
        local_entities=[_entity_out(e) for e in result.local_entities],
        global_entities=[_entity_out(e) for e in result.global_entities],
        relationships=[_relationship_out(r) for r in result.relationships],
        chunks=[
            ChunkOut(
                id=c.id,
                doc_id=c.doc_id,
                order=c.order,
                token_count=c.token_count,
                content=c.content,
            )
            for c in result.chunks
        ],
    )


def _turns(turns: list[Turn]) -> list[ConversationTurn]:
    return [ConversationTurn(role=Role(t.role), message=t.message) for t in turns]


def _http_error(e: HybridRAGError) -> HTTPException:
    if isinstance(e, InvalidConfig):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, Canceled):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=502, detail=f"{type(e).__name__}: {e}")


@app.post("/documents", response_model=IngestResponse)
def ingest_document(req: DocumentRequest, service: GraphRAGService = Depends(get_service)):
    """Ingest or re-ingest one document."""
    if not req.id.strip():
        raise HTTPException(status_code=400, detail="document id cannot be empty")
    try:
        report = service.ingest_document(Document(id=req.id, content=req.content))
    except HybridRAGError as e:
        raise _http_error(e)
    return IngestResponse(
        doc_id=report.doc_id,
        chunk_count=report.chunk_count,
        entity_count=report.entity_count,
        relationship_count=report.relationship_count,
        pruned_entities=report.pruned_entities,
        removed_chunk_ids=report.removed_chunk_ids,
    )


@app.post("/build_index", response_model=BuildIndexResponse)
def build_index(req: BuildIndexRequest, service: GraphRAGService = Depends(get_service)):
    """
    Ingest every supported file under the data directory.
    """
    data_dir = Path(req.data_dir) if req.data_dir else None
    result = service.build_index(data_dir)
    return BuildIndexResponse(**result)


@app.post("/query", response_model=QueryResponse)
def query(req: QueryRequest, service: GraphRAGService = Depends(get_service)):
    try:
        result = service.query(_turns(req.conversation))
    except HybridRAGError as e:
        raise _http_error(e)
    return _query_out(result)


@app.post("/qa", response_model=QAResponse)
def qa(req: QARequest, service: GraphRAGService = Depends(get_service)):
    try:
        result = service.answer(req.question, history=_turns(req.history))
    except HybridRAGError as e:
        raise _http_error(e)
    return QAResponse(
        answer=result["answer"],
        citations=result["citations"],
        context=_query_out(result["result"]),
    )


@app.get("/health")
def health():
    return {"status": "ok"}
