# src/hybrid_rag/service.py

from __future__ import annotations
from typing import Any, Dict, Iterator, List, Optional, Sequence
from contextlib import contextmanager
from pathlib import Path
import logging
import threading

from .cancellation import CancelToken
from .config import IngestConfig, QueryConfig, settings
from .errors import HybridRAGError, RetrievalFailed
from .graph_store import NetworkxGraphStore
from .ingestion import IngestReport, ingest
from .kv_store import SqliteKeyValueStore
from .llm import LLMClient, LLMProvider
from .loaders import load_documents
from .ports import CompositeStore, Store
from .retrieval import query
from .schemas import ConversationTurn, Document, QueryResult, Role
from .vector_store import ChromaVectorStore

logger = logging.getLogger(__name__)


ANSWER_SYSTEM_PROMPT = (
    "You are a GraphRAG question answering agent.\n"
    "You receive a context block with local entities, global entities, "
    "relationships between them and source chunks labelled [document#order].\n"
    "Use ONLY this context to answer the user's question and cite sources as "
    "[document#order]. If the context is empty or unrelated, say that no "
    "evidence was found.\n"
)


def build_default_store() -> CompositeStore:
    """File-backed stack: SQLite KV, ChromaDB vectors, networkx graph as JSON."""
    return CompositeStore(
        kv=SqliteKeyValueStore(settings.kv_store_path),
        vector=ChromaVectorStore(),
        graph=NetworkxGraphStore.open(settings.graph_store_path),
    )


class GraphRAGService:
    def __init__(
        self,
        llm: Optional[LLMProvider] = None,
        store: Optional[Store] = None,
        ingest_config: Optional[IngestConfig] = None,
        query_config: Optional[QueryConfig] = None,
        extraction_llm: Optional[LLMProvider] = None,
    ):
        self.llm = llm or LLMClient()
        if extraction_llm is not None:
            self.extraction_llm = extraction_llm
        elif llm is not None:
            self.extraction_llm = llm
        else:
            self.extraction_llm = LLMClient(chat_model=settings.ollama_extraction_model)
        self.store = store if store is not None else build_default_store()
        self.ingest_config = (ingest_config or IngestConfig.from_settings(settings)).validate()
        self.query_config = (query_config or QueryConfig.from_settings(settings)).validate()
        # same-document ingests must not overlap; entries live while someone holds or waits
        self._doc_locks: Dict[str, List[Any]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _doc_lock(self, doc_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._doc_locks.setdefault(doc_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._doc_locks[doc_id]

    def _persist(self) -> None:
        graph = getattr(self.store, "graph", self.store)
        save = getattr(graph, "save", None)
        if save is not None:
            save()

    def ingest_document(
        self, doc: Document, token: Optional[CancelToken] = None
    ) -> IngestReport:
        with self._doc_lock(doc.id):
            report = ingest(doc, self.ingest_config, self.extraction_llm, self.store, token=token)
        self._persist()
        return report

    def build_index(self, data_dir: Path | None = None) -> Dict[str, Any]:
        """
        Ingest every supported file under data_dir. A failing document is
        logged and reported; the others still go through.
        """
        docs = load_documents(data_dir)
        reports: List[IngestReport] = []
        failed: Dict[str, str] = {}
        for idx, doc in enumerate(docs, start=1):
            logger.info("[%d/%d] Ingesting %s", idx, len(docs), doc.id)
            try:
                reports.append(self.ingest_document(doc))
            except HybridRAGError as e:
                logger.error("Failed to ingest %s: %s", doc.id, e)
                failed[doc.id] = str(e)

        return {
            "num_sources": len(docs),
            "num_chunks": sum(r.chunk_count for r in reports),
            "sources": [r.doc_id for r in reports],
            "failed": failed,
        }

    def query(
        self,
        conversation: Sequence[ConversationTurn],
        token: Optional[CancelToken] = None,
    ) -> QueryResult:
        return query(conversation, self.query_config, self.llm, self.store, token=token)

    def answer(
        self,
        question: str,
        history: Optional[Sequence[ConversationTurn]] = None,
        token: Optional[CancelToken] = None,
    ) -> Dict[str, Any]:
        conversation = list(history or []) + [ConversationTurn(role=Role.USER, message=question)]
        result = self.query(conversation, token=token)
        if result.is_empty:
            return {
                "answer": "No matching entities were found in the knowledge store.",
                "citations": [],
                "result": result,
            }

        prompt = f"Question:\n{question}\n\nContext:\n{result.to_context()}\n"
        try:
            answer_text = self.llm.complete(prompt, system_prompt=ANSWER_SYSTEM_PROMPT, token=token)
        except HybridRAGError:
            raise
        except Exception as e:
            raise RetrievalFailed(f"answer generation failed: {e}", stage="answer") from e
        citations = [
            {
                "chunk_id": c.id,
                "doc_id": c.doc_id,
                "label": f"{c.doc_id}#{c.order}",
                "order": c.order,
            }
            for c in result.chunks
        ]
        return {"answer": answer_text, "citations": citations, "result": result}

    def close(self) -> None:
        self.store.close(settings.store_close_timeout)
