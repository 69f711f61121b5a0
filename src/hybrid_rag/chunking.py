from __future__ import annotations
from typing import List
import logging
import re

from .errors import InvalidConfig
from .schemas import Chunk, Document, make_chunk_id

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\S+")


def split_document(doc: Document, max_tokens: int, overlap_tokens: int) -> List[Chunk]:
    """
    Split a document into overlapping windows of whitespace tokens.

    Windows advance by ``max_tokens - overlap_tokens``; the last window always
    ends on the final token. Chunk text is the original span between the
    window's first and last token, so inner formatting survives.
    """
    if max_tokens <= 0:
        raise InvalidConfig("max_tokens must be positive")
    if overlap_tokens < 0:
        raise InvalidConfig("overlap_tokens must not be negative")
    if overlap_tokens >= max_tokens:
        raise InvalidConfig(
            f"overlap_tokens ({overlap_tokens}) must be smaller than max_tokens ({max_tokens})"
        )

    spans = [m.span() for m in _TOKEN_RE.finditer(doc.content or "")]
    if not spans:
        logger.debug("Document %s has no content; no chunks", doc.id)
        return []

    step = max_tokens - overlap_tokens
    chunks: List[Chunk] = []
    start = 0
    order = 0
    while True:
        end = min(start + max_tokens, len(spans))
        text = doc.content[spans[start][0] : spans[end - 1][1]]
        chunks.append(
            Chunk(
                id=make_chunk_id(doc.id, order),
                doc_id=doc.id,
                content=text,
                token_count=end - start,
                order=order,
            )
        )
        if end >= len(spans):
            break
        start += step
        order += 1

    logger.debug("Chunked %s into %d chunks", doc.id, len(chunks))
    return chunks
