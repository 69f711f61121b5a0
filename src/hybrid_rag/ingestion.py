"""
Document ingestion: chunk, extract, merge, reconcile with the stored state
and fan the writes out to the key-value, vector and graph ports.

Same-document ingests must be serialized by the caller; different documents
may be ingested concurrently.
"""
from __future__ import annotations
from concurrent.futures import CancelledError, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple
import logging
import threading
import time
import weakref

from .cancellation import CancelToken, ensure_token
from .chunking import split_document
from .config import IngestConfig
from .errors import (
    Canceled,
    EmbeddingFailed,
    ExtractionFailed,
    StoreReadFailed,
    StoreWriteFailed,
)
from .extraction import Extractor
from .llm import LLMProvider
from .ports import Store
from .retry import call_with_retry
from .schemas import (
    Chunk,
    Document,
    DocumentManifest,
    Entity,
    Relationship,
    entity_vector_id,
    manifest_key,
    merge_entities,
    merge_relationships,
)

logger = logging.getLogger(__name__)

RelKey = Tuple[str, str]

# reconcile reads and the writes that follow run under one lock per store
_commit_locks: "weakref.WeakKeyDictionary[object, threading.Lock]" = weakref.WeakKeyDictionary()
_commit_locks_guard = threading.Lock()


def _commit_lock(store: Store) -> threading.Lock:
    with _commit_locks_guard:
        lock = _commit_locks.get(store)
        if lock is None:
            lock = _commit_locks[store] = threading.Lock()
        return lock


@dataclass
class IngestReport:
    doc_id: str
    chunk_count: int
    entity_count: int
    relationship_count: int
    pruned_entities: List[str] = field(default_factory=list)
    pruned_relationships: List[RelKey] = field(default_factory=list)
    removed_chunk_ids: List[str] = field(default_factory=list)


@dataclass
class _WritePlan:
    chunks: List[Chunk]
    removed_chunk_ids: List[str]
    entities: List[Entity]
    relationships: List[Relationship]
    pruned_entities: List[str]
    pruned_relationships: List[RelKey]
    manifest: DocumentManifest
    pending_manifest: DocumentManifest
    chunk_vectors: List[List[float]] = field(default_factory=list)
    entity_vectors: List[List[float]] = field(default_factory=list)


def ingest(
    doc: Document,
    config: IngestConfig,
    llm: LLMProvider,
    store: Store,
    token: Optional[CancelToken] = None,
) -> IngestReport:
    """
    Ingest one document. Raises on failure; re-invoking with the same
    document is the recovery path and converges to the same stored state.
    """
    config.validate()
    token = ensure_token(token)
    started = time.perf_counter()
    logger.info("Ingesting document %s (%d chars)", doc.id, len(doc.content or ""))

    chunks = split_document(doc, config.chunk_max_token_size, config.overlap_tokens)
    entities, relationships = _extract_all(doc, chunks, config, Extractor(llm), token)
    logger.info(
        "Document %s: %d chunks -> %d entities, %d relationships",
        doc.id, len(chunks), len(entities), len(relationships),
    )

    # extraction above runs in parallel across documents; the commit does not
    with _commit_lock(store):
        plan = _plan_writes(doc, chunks, entities, relationships, config, store, token)
        _embed(doc, plan, config, llm, token)
        _dispatch_writes(doc, plan, config, store, token)

    logger.info(
        "Ingested %s in %.2fs (pruned %d entities, removed %d chunks)",
        doc.id,
        time.perf_counter() - started,
        len(plan.pruned_entities),
        len(plan.removed_chunk_ids),
    )
    return IngestReport(
        doc_id=doc.id,
        chunk_count=len(plan.chunks),
        entity_count=len(plan.entities),
        relationship_count=len(plan.relationships),
        pruned_entities=plan.pruned_entities,
        pruned_relationships=plan.pruned_relationships,
        removed_chunk_ids=plan.removed_chunk_ids,
    )


# Extraction

def _extract_chunk(
    extractor: Extractor,
    chunk: Chunk,
    config: IngestConfig,
    token: CancelToken,
) -> Tuple[List[Entity], List[Relationship]]:
    return call_with_retry(
        lambda: extractor.extract(chunk, config.entity_types, token=token),
        max_retries=config.max_retries,
        backoff_seconds=config.backoff_seconds,
        token=token,
        retry_on=(ExtractionFailed,),
        what=f"extraction of chunk {chunk.order} ({chunk.id})",
    )


def _extract_all(
    doc: Document,
    chunks: List[Chunk],
    config: IngestConfig,
    extractor: Extractor,
    token: CancelToken,
) -> Tuple[Dict[str, Entity], Dict[RelKey, Relationship]]:
    """
    Extract every chunk on a bounded pool. Chunks are queued in order and may
    finish in any order; results land in an unordered bag before the merge.
    """
    # cancelled on the first exhausted chunk to stop sibling retries
    workers_token = token.child()
    found_entities: List[Entity] = []
    found_relationships: List[Relationship] = []
    failures: Dict[str, ExtractionFailed] = {}
    unexpected: List[BaseException] = []

    with ThreadPoolExecutor(
        max_workers=config.concurrency_count, thread_name_prefix="extract"
    ) as pool:
        futures = {
            pool.submit(_extract_chunk, extractor, chunk, config, workers_token): chunk
            for chunk in chunks
        }
        for fut in as_completed(futures):
            chunk = futures[fut]
            try:
                ents, rels = fut.result()
            except (CancelledError, Canceled):
                continue
            except ExtractionFailed as e:
                failures[chunk.id] = e
            except Exception as e:
                unexpected.append(e)
            else:
                found_entities.extend(ents)
                found_relationships.extend(rels)
                continue
            # fail fast: drop queued chunks and stop in-flight retries
            workers_token.cancel()
            for other in futures:
                other.cancel()

    if token.cancelled:
        raise Canceled(f"ingest of {doc.id} cancelled")
    if unexpected:
        raise unexpected[0]
    if failures:
        failed_ids = sorted(failures, key=lambda cid: next(c.order for c in chunks if c.id == cid))
        first = failures[failed_ids[0]]
        raise ExtractionFailed(
            f"document {doc.id}: extraction failed for chunk(s) {', '.join(failed_ids)}: {first}",
            doc_id=doc.id,
            chunk_ids=failed_ids,
        ) from first

    return merge_entities(found_entities), merge_relationships(found_relationships)


# Reconciliation with stored state

def _read(fn: Callable, config: IngestConfig, token: CancelToken, what: str, store_name: str):
    try:
        return call_with_retry(
            fn,
            max_retries=config.max_retries,
            backoff_seconds=config.backoff_seconds,
            token=token,
            what=what,
        )
    except (Canceled, StoreReadFailed):
        raise
    except Exception as e:
        raise StoreReadFailed(f"{what} failed: {e}", store=store_name) from e


def _plan_writes(
    doc: Document,
    chunks: List[Chunk],
    entities: Dict[str, Entity],
    relationships: Dict[RelKey, Relationship],
    config: IngestConfig,
    store: Store,
    token: CancelToken,
) -> _WritePlan:
    record = _read(
        lambda: store.get(manifest_key(doc.id), token=token),
        config, token, f"manifest read for {doc.id}", "kv",
    )
    previous = DocumentManifest.from_record(record) if record else None
    new_chunk_ids = [c.id for c in chunks]
    old_chunk_ids: Set[str] = set(previous.chunk_ids) if previous else set()
    removed_chunk_ids = sorted(old_chunk_ids - set(new_chunk_ids))
    # every earlier contribution of this document is replaced in full
    withdrawn = old_chunk_ids | set(new_chunk_ids)

    entity_keys = set(entities) | (set(previous.entity_keys) if previous else set())
    upserts: List[Entity] = []
    pruned: List[str] = []
    for key in sorted(entity_keys):
        stored = _read(
            lambda: store.get_entity(key, token=token),
            config, token, f"entity read {key}", "graph",
        )
        result = _reconcile(stored, entities.get(key), withdrawn)
        if result is not None:
            upserts.append(result)
        else:
            # also when already gone from the graph: a failed run may have left its vector
            pruned.append(key)

    live = {e.key for e in upserts}
    rel_keys = set(relationships) | (
        {tuple(k) for k in previous.relationship_keys} if previous else set()
    )
    rel_upserts: List[Relationship] = []
    rel_pruned: List[RelKey] = []
    for key in sorted(rel_keys):
        stored_rel = _read(
            lambda: store.get_relationship(key[0], key[1], token=token),
            config, token, f"relationship read {key}", "graph",
        )
        result = _reconcile(stored_rel, relationships.get(key), withdrawn)
        if result is not None and any(k in pruned for k in key):
            result = None
        if result is not None:
            if not all(k in live for k in key):
                # endpoint untouched by this document: it must already be stored
                missing = [
                    k for k in key
                    if k not in live and _read(
                        lambda: store.get_entity(k, token=token),
                        config, token, f"entity read {k}", "graph",
                    ) is None
                ]
                if missing:
                    logger.warning("Skipping relationship %s: missing endpoint(s) %s", key, missing)
                    result = None
        if result is not None:
            rel_upserts.append(result)
        elif stored_rel is not None:
            rel_pruned.append(key)

    manifest = DocumentManifest(
        doc_id=doc.id,
        chunk_ids=new_chunk_ids,
        entity_keys=sorted(entities),
        relationship_keys=sorted(k for k in relationships if k in {r.key for r in rel_upserts}),
    )
    # covers both runs until every write has landed
    pending_manifest = DocumentManifest(
        doc_id=doc.id,
        chunk_ids=new_chunk_ids + sorted(old_chunk_ids - set(new_chunk_ids)),
        entity_keys=sorted(entity_keys),
        relationship_keys=sorted(rel_keys),
    )
    return _WritePlan(
        chunks=chunks,
        removed_chunk_ids=removed_chunk_ids,
        entities=upserts,
        relationships=rel_upserts,
        pruned_entities=pruned,
        pruned_relationships=rel_pruned,
        manifest=manifest,
        pending_manifest=pending_manifest,
    )


def _reconcile(stored, fresh, withdrawn: Set[str]):
    """Stored record minus this document's chunks, plus the fresh mentions."""
    base = stored.without_chunks(withdrawn) if stored is not None else None
    if base is not None and not base.mentions:
        base = None
    if base is None and fresh is None:
        return None
    if base is None:
        return fresh
    if fresh is None:
        return base
    return base.merge(fresh)


# Embeddings

def _embed(
    doc: Document,
    plan: _WritePlan,
    config: IngestConfig,
    llm: LLMProvider,
    token: CancelToken,
) -> None:
    texts_chunks = [c.content for c in plan.chunks]
    texts_entities = [f"{e.name}\n{e.description}" for e in plan.entities]
    try:
        plan.chunk_vectors = call_with_retry(
            lambda: llm.embed_texts(texts_chunks, token=token),
            max_retries=config.max_retries,
            backoff_seconds=config.backoff_seconds,
            token=token,
            what=f"chunk embeddings for {doc.id}",
        ) if texts_chunks else []
        plan.entity_vectors = call_with_retry(
            lambda: llm.embed_texts(texts_entities, token=token),
            max_retries=config.max_retries,
            backoff_seconds=config.backoff_seconds,
            token=token,
            what=f"entity embeddings for {doc.id}",
        ) if texts_entities else []
    except Canceled:
        raise
    except Exception as e:
        raise EmbeddingFailed(f"document {doc.id}: embedding failed: {e}", doc_id=doc.id) from e
    if len(plan.chunk_vectors) != len(texts_chunks) or len(plan.entity_vectors) != len(texts_entities):
        raise EmbeddingFailed(
            f"document {doc.id}: embedding model returned the wrong number of vectors",
            doc_id=doc.id,
        )


# Writes

def _dispatch_writes(
    doc: Document,
    plan: _WritePlan,
    config: IngestConfig,
    store: Store,
    token: CancelToken,
) -> None:
    """
    Run the three port writes concurrently; all are always attempted.

    The manifest brackets them: a pending manifest naming the old and new
    contribution goes first, the final one only after every write landed.
    A failed or cancelled run leaves the pending manifest behind, so the
    next ingest of the document withdraws both.
    """

    def call(fn: Callable[[], None], what: str) -> None:
        call_with_retry(
            fn,
            max_retries=config.max_retries,
            backoff_seconds=config.backoff_seconds,
            token=token,
            what=what,
        )

    def put_manifest(manifest: DocumentManifest, what: str) -> None:
        try:
            call(
                lambda: store.put(manifest_key(doc.id), manifest.to_record(), token=token),
                f"kv put {what} manifest {doc.id}",
            )
        except Canceled:
            raise
        except Exception as e:
            raise StoreWriteFailed(
                f"document {doc.id}: write failed for store(s) kv: {e}",
                stores=["kv"],
                doc_id=doc.id,
            ) from e

    def write_kv() -> None:
        for chunk in plan.chunks:
            call(lambda: store.put(chunk.id, chunk.to_record(), token=token), f"kv put {chunk.id}")
        for cid in plan.removed_chunk_ids:
            call(lambda: store.delete(cid, token=token), f"kv delete {cid}")

    def write_vector() -> None:
        for chunk, vec in zip(plan.chunks, plan.chunk_vectors):
            meta = {"kind": "chunk", "doc_id": chunk.doc_id, "order": chunk.order}
            call(
                lambda: store.upsert_vector(chunk.id, vec, meta, token=token),
                f"vector upsert {chunk.id}",
            )
        for cid in plan.removed_chunk_ids:
            call(lambda: store.delete_vector(cid, token=token), f"vector delete {cid}")
        for ent, vec in zip(plan.entities, plan.entity_vectors):
            meta = {"kind": "entity", "name": ent.name, "type": ent.type}
            call(
                lambda: store.upsert_vector(entity_vector_id(ent.key), vec, meta, token=token),
                f"vector upsert entity {ent.key}",
            )
        for key in plan.pruned_entities:
            call(
                lambda: store.delete_vector(entity_vector_id(key), token=token),
                f"vector delete entity {key}",
            )

    def write_graph() -> None:
        for src, tgt in plan.pruned_relationships:
            call(lambda: store.delete_relationship(src, tgt, token=token), f"graph delete {src}--{tgt}")
        for key in plan.pruned_entities:
            call(lambda: store.delete_entity(key, token=token), f"graph delete {key}")
        for ent in plan.entities:
            call(lambda: store.upsert_entity(ent, token=token), f"graph upsert {ent.key}")
        for rel in plan.relationships:
            call(
                lambda: store.upsert_relationship(rel, token=token),
                f"graph upsert {rel.source_key}--{rel.target_key}",
            )

    put_manifest(plan.pending_manifest, "pending")

    tasks = {"kv": write_kv, "vector": write_vector, "graph": write_graph}
    failures: Dict[str, BaseException] = {}
    with ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix="store-write") as pool:
        futures = {pool.submit(fn): name for name, fn in tasks.items()}
        for fut in as_completed(futures):
            name = futures[fut]
            try:
                fut.result()
            except Exception as e:
                failures[name] = e

    if token.cancelled:
        raise Canceled(f"ingest of {doc.id} cancelled during store writes")
    if failures:
        names = sorted(failures)
        detail = "; ".join(f"{n}: {failures[n]}" for n in names)
        raise StoreWriteFailed(
            f"document {doc.id}: write failed for store(s) {', '.join(names)}: {detail}",
            stores=names,
            doc_id=doc.id,
        ) from failures[names[0]]

    put_manifest(plan.manifest, "final")
