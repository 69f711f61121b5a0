from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from textwrap import dedent
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple
import json
import logging

from .cancellation import CancelToken, ensure_token
from .config import QueryConfig
from .errors import Canceled, RetrievalFailed
from .extraction import parse_json_response
from .llm import LLMProvider
from .ports import Store
from .retry import call_with_retry
from .schemas import (
    ENTITY_VECTOR_PREFIX,
    Chunk,
    ConversationTurn,
    Entity,
    QueryKeywords,
    QueryResult,
    Relationship,
    Role,
    normalize_name,
)

logger = logging.getLogger(__name__)

# neighbours inherit this share of the score of the entity that reached them
NEIGHBOR_DECAY = 0.5
NAME_MATCH_SCORE = 1.0

KEYWORDS_SYSTEM_PROMPT = dedent(
    """
    You identify search keywords in the user's latest question.
    high_level_keywords are broad concepts or themes; low_level_keywords are
    specific entities, names, objects or terms.
    Respond ONLY with valid JSON of the form:
    {"high_level_keywords": ["..."], "low_level_keywords": ["..."]}
    """
).strip()

Scored = Dict[str, Tuple[Entity, float]]


def query(
    conversation: Sequence[ConversationTurn],
    config: QueryConfig,
    llm: LLMProvider,
    store: Store,
    token: Optional[CancelToken] = None,
) -> QueryResult:
    """
    Resolve a conversation into ranked local and global entities, the
    relationships among them and their supporting chunks. An empty result
    means nothing matched.
    """
    config.validate()
    token = ensure_token(token)
    question, history = _split_conversation(conversation, config.history_turns)

    keywords = _derive_keywords(question, history, config, llm, token)
    embedding = _call(
        lambda: llm.embed_query(question, token=token),
        config, token, "query embedding", "embedding",
    )
    logger.info(
        "Query keywords: high=%s low=%s", keywords.high_level, keywords.low_level
    )

    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="query") as pool:
        local_future = pool.submit(_local_search, embedding, keywords, config, store, token)
        global_future = pool.submit(_global_search, keywords, config, store, token)
        errors: List[BaseException] = []
        local_scored: Scored = {}
        global_scored: Scored = {}
        try:
            local_scored = local_future.result()
        except Exception as e:
            errors.append(e)
        try:
            global_scored = global_future.result()
        except Exception as e:
            errors.append(e)

    if token.cancelled:
        raise Canceled("query cancelled")
    for err in errors:
        if isinstance(err, (Canceled, RetrievalFailed)):
            raise err
    if errors:
        raise RetrievalFailed(f"search branch failed: {errors[0]}", stage="search") from errors[0]

    result = _assemble(local_scored, global_scored, keywords, config, store, token)
    if result.is_empty:
        logger.info("No entities matched the query")
    return result


def _call(fn: Callable, config: QueryConfig, token: CancelToken, what: str, stage: str):
    try:
        return call_with_retry(
            fn,
            max_retries=config.max_retries,
            backoff_seconds=config.backoff_seconds,
            token=token,
            what=what,
        )
    except Canceled:
        raise
    except Exception as e:
        raise RetrievalFailed(f"{what} failed: {e}", stage=stage) from e


def _split_conversation(
    conversation: Sequence[ConversationTurn], history_turns: int
) -> Tuple[str, List[ConversationTurn]]:
    for idx in range(len(conversation) - 1, -1, -1):
        turn = conversation[idx]
        if turn.role == Role.USER and turn.message.strip():
            start = max(0, idx - history_turns)
            return turn.message.strip(), list(conversation[start:idx])
    raise RetrievalFailed("conversation has no user message", stage="conversation")


def _fallback_keywords(question: str) -> List[str]:
    words = [w.strip(".,;:!?\"'()[]") for w in question.split()]
    return sorted({w for w in words if len(w) > 3})


def _derive_keywords(
    question: str,
    history: List[ConversationTurn],
    config: QueryConfig,
    llm: LLMProvider,
    token: CancelToken,
) -> QueryKeywords:
    prompt = question
    if history:
        lines = [f"{t.role.value if isinstance(t.role, Role) else t.role}: {t.message}" for t in history]
        prompt = "Conversation so far:\n" + "\n".join(lines) + f"\n\nLatest question:\n{question}"
    raw = _call(
        lambda: llm.complete(prompt, system_prompt=KEYWORDS_SYSTEM_PROMPT, token=token),
        config, token, "keyword extraction", "keywords",
    )
    try:
        data = parse_json_response(raw)
    except (ValueError, json.JSONDecodeError):
        logger.warning("Unparseable keyword response; falling back to question terms")
        return QueryKeywords(high_level=[], low_level=_fallback_keywords(question))

    def clean(values) -> List[str]:
        if not isinstance(values, list):
            return []
        return [str(v).strip() for v in values if isinstance(v, (str, int)) and str(v).strip()]

    return QueryKeywords(
        high_level=clean(data.get("high_level_keywords")),
        low_level=clean(data.get("low_level_keywords")),
    )


def _offer(scored: Scored, entity: Entity, score: float) -> None:
    current = scored.get(entity.key)
    if current is None or score > current[1]:
        scored[entity.key] = (entity, score)


def _local_search(
    embedding: List[float],
    keywords: QueryKeywords,
    config: QueryConfig,
    store: Store,
    token: CancelToken,
) -> Scored:
    """Vector nearest entities plus name matches, expanded by one hop."""
    scored: Scored = {}
    hits = _call(
        lambda: store.query_vectors(embedding, config.top_k, where={"kind": "entity"}, token=token),
        config, token, "entity vector search", "local",
    )
    for hit in hits:
        if hit.score < config.min_similarity:
            continue
        if hit.id.startswith(ENTITY_VECTOR_PREFIX):
            key = hit.id[len(ENTITY_VECTOR_PREFIX):]
        else:
            key = normalize_name(hit.metadata.get("name", ""))
        entity = _call(
            lambda: store.get_entity(key, token=token),
            config, token, f"entity read {key}", "local",
        )
        if entity is None:
            logger.debug("Vector hit %s has no graph entity; skipping", hit.id)
            continue
        _offer(scored, entity, hit.score)

    if keywords.low_level:
        matched = _call(
            lambda: store.match_entities(keywords.low_level, token=token),
            config, token, "entity name match", "local",
        )
        for entity in matched:
            _offer(scored, entity, NAME_MATCH_SCORE)

    for entity, score in sorted(scored.values(), key=lambda es: es[0].key):
        neighbors = _call(
            lambda: store.neighbors(entity.key, 1, token=token),
            config, token, f"neighbors of {entity.key}", "local",
        )
        for nb in neighbors:
            _offer(scored, nb, score * NEIGHBOR_DECAY)
    return scored


def _global_search(
    keywords: QueryKeywords,
    config: QueryConfig,
    store: Store,
    token: CancelToken,
) -> Scored:
    """Entities reachable within the hop limit from any name match, scored by degree."""
    terms = keywords.high_level + keywords.low_level
    if not terms or config.global_top_k == 0:
        return {}
    seeds = _call(
        lambda: store.match_entities(terms, token=token),
        config, token, "entity name match", "global",
    )
    collected: Dict[str, Entity] = {}
    seed_keys = {s.key for s in seeds}
    for seed in seeds:
        reached = _call(
            lambda: store.neighbors(seed.key, config.global_hops, token=token),
            config, token, f"traversal from {seed.key}", "global",
        )
        for ent in reached:
            if ent.key not in seed_keys:
                collected.setdefault(ent.key, ent)
    if not collected:
        collected = {s.key: s for s in seeds}

    scored: Scored = {}
    for key, ent in collected.items():
        degree = _call(
            lambda: store.degree(key, token=token),
            config, token, f"degree of {key}", "global",
        )
        scored[key] = (ent, float(degree))
    ranked = sorted(scored.items(), key=lambda kv: (-kv[1][1], kv[1][0].name))
    return dict(ranked[: config.global_top_k])


def _rank(
    scored: Scored,
    degrees: Dict[str, int],
) -> List[Entity]:
    ordered = sorted(
        scored.values(),
        key=lambda es: (-es[1], -degrees.get(es[0].key, 0), es[0].name),
    )
    return [ent for ent, _ in ordered]


def _assemble(
    local_scored: Scored,
    global_scored: Scored,
    keywords: QueryKeywords,
    config: QueryConfig,
    store: Store,
    token: CancelToken,
) -> QueryResult:
    global_only = {k: v for k, v in global_scored.items() if k not in local_scored}
    keys = sorted(set(local_scored) | set(global_only))
    if not keys:
        return QueryResult(keywords=keywords)

    degrees: Dict[str, int] = {}
    for key in keys:
        degrees[key] = _call(
            lambda: store.degree(key, token=token),
            config, token, f"degree of {key}", "merge",
        )
    local_entities = _rank(local_scored, degrees)
    global_entities = _rank(global_only, degrees)

    relationships: List[Relationship] = _call(
        lambda: store.relationships_among(keys, token=token),
        config, token, "relationship lookup", "merge",
    )
    relationships = sorted(relationships, key=lambda r: (-r.weight, r.source_key, r.target_key))

    chunk_ids: Set[str] = set()
    for ent in local_entities + global_entities:
        chunk_ids |= ent.source_chunk_ids
    for rel in relationships:
        chunk_ids |= rel.source_chunk_ids

    chunks: List[Chunk] = []
    for cid in sorted(chunk_ids):
        record = _call(
            lambda: store.get(cid, token=token),
            config, token, f"chunk read {cid}", "chunks",
        )
        if record is None:
            logger.warning("Chunk %s referenced by the graph is missing from the kv store", cid)
            continue
        chunks.append(Chunk.from_record(record))
    chunks.sort(key=lambda c: (c.doc_id, c.order))

    return QueryResult(
        local_entities=local_entities,
        global_entities=global_entities,
        relationships=relationships,
        chunks=chunks,
        keywords=keywords,
    )
