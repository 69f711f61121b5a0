from __future__ import annotations
from typing import Iterable, List, Optional


class HybridRAGError(Exception):
    """Base class for every error raised by the ingestion/query pipeline."""


class InvalidConfig(HybridRAGError):
    """Bad chunking or pipeline parameters. Never retried."""


class Canceled(HybridRAGError):
    """The caller cancelled the operation or its deadline passed."""


class ExtractionFailed(HybridRAGError):
    """LLM call or response parsing failed for one or more chunks."""

    def __init__(
        self,
        message: str,
        doc_id: Optional[str] = None,
        chunk_ids: Iterable[str] = (),
    ):
        super().__init__(message)
        self.doc_id = doc_id
        self.chunk_ids: List[str] = list(chunk_ids)


class EmbeddingFailed(ExtractionFailed):
    """The embedding model failed for a document's chunks or entities."""


class StoreWriteFailed(HybridRAGError):
    def __init__(self, message: str, stores: Iterable[str] = (), doc_id: Optional[str] = None):
        super().__init__(message)
        self.stores: List[str] = list(stores)
        self.doc_id = doc_id


class StoreReadFailed(HybridRAGError):
    def __init__(self, message: str, store: Optional[str] = None):
        super().__init__(message)
        self.store = store


class RetrievalFailed(HybridRAGError):
    """Query-time failure where no safe partial result exists."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage
