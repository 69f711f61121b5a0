from dataclasses import replace

import pytest

from hybrid_rag.cancellation import CancelToken
from hybrid_rag.errors import Canceled, InvalidConfig, RetrievalFailed
from hybrid_rag.ingestion import ingest
from hybrid_rag.retrieval import query
from hybrid_rag.schemas import (
    Chunk,
    ConversationTurn,
    Document,
    Entity,
    Relationship,
    Role,
)

from conftest import DOC1_TEXT, FakeLLM, make_store


def _ask(text):
    return [ConversationTurn(role=Role.USER, message=text)]


@pytest.fixture
def loaded_store(ingest_config):
    store = make_store()
    ingest(Document(id="doc-1", content=DOC1_TEXT), ingest_config, FakeLLM(), store)
    return store


def _hub_store():
    """Catalog -- Hub, Catalog -- Leaf, Hub -- X/Y/Z."""
    store = make_store()
    store.put("c1", Chunk(id="c1", doc_id="d", content="catalog text", token_count=2, order=0).to_record())
    for name in ("Catalog", "Hub", "Leaf", "X", "Y", "Z"):
        store.upsert_entity(Entity.from_chunk(name, "object", f"{name} description", "c1"))
    for a, b in [("Catalog", "Hub"), ("Catalog", "Leaf"), ("Hub", "X"), ("Hub", "Y"), ("Hub", "Z")]:
        store.upsert_relationship(Relationship.from_chunk(a, b, f"{a} links {b}", "c1"))
    return store


def test_scenario_query_finds_local_entities(loaded_store, fake_llm, query_config):
    result = query(_ask("Where are vectors kept?"), query_config, fake_llm, loaded_store)

    assert not result.is_empty
    local = [e.name for e in result.local_entities]
    assert "ChromeM" in local
    assert "Neo4j" in local
    # ChromeM is the direct hit, Neo4j only its neighbour
    assert local.index("ChromeM") < local.index("Neo4j")
    assert [(r.source, r.target) for r in result.relationships] == [("ChromeM", "Neo4j")]
    assert [c.doc_id for c in result.chunks] == ["doc-1"]
    assert result.keywords.high_level == ["storage"]


def test_storage_question_finds_graph_and_vector_backends(loaded_store, fake_llm, query_config):
    result = query(_ask("where are graph and vectors stored?"), query_config, fake_llm, loaded_store)

    assert not result.is_empty
    local = [e.name for e in result.local_entities]
    assert "ChromeM" in local
    assert "Neo4j" in local
    assert "Bolt" not in local
    assert local.index("ChromeM") < local.index("Neo4j")
    assert result.global_entities == []
    assert [c.doc_id for c in result.chunks] == ["doc-1"]
    assert "ChromeM" in result.to_context()


def test_query_is_deterministic(loaded_store, fake_llm, query_config):
    first = query(_ask("Where are vectors kept?"), query_config, fake_llm, loaded_store)
    second = query(_ask("Where are vectors kept?"), query_config, fake_llm, loaded_store)
    assert first == second
    assert first.to_context() == second.to_context()


def test_empty_store_returns_no_match(store, fake_llm, query_config):
    result = query(_ask("Where are vectors kept?"), query_config, fake_llm, store)
    assert result.is_empty
    assert result.relationships == []
    assert result.chunks == []


def test_global_ranking_prefers_high_degree(query_config):
    llm = FakeLLM(keywords={"high_level_keywords": ["catalog"], "low_level_keywords": []})
    result = query(_ask("What is in the catalog?"), query_config, llm, _hub_store())

    assert result.local_entities == []
    assert [e.name for e in result.global_entities] == ["Hub", "Leaf", "X", "Y", "Z"]
    assert [c.id for c in result.chunks] == ["c1"]
    # relationships among the retrieved entities only; Catalog was a seed
    assert {r.key for r in result.relationships} == {("HUB", "X"), ("HUB", "Y"), ("HUB", "Z")}


def test_global_top_k_and_hop_limit(query_config):
    llm = FakeLLM(keywords={"high_level_keywords": ["catalog"], "low_level_keywords": []})
    config = replace(query_config, global_hops=1, global_top_k=1)
    result = query(_ask("catalog?"), config, llm, _hub_store())
    assert [e.name for e in result.global_entities] == ["Hub"]


def test_global_entities_exclude_local_ones(query_config):
    llm = FakeLLM(keywords={"high_level_keywords": ["catalog"], "low_level_keywords": ["hub"]})
    result = query(_ask("catalog hub"), query_config, llm, _hub_store())
    local = [e.name for e in result.local_entities]
    assert local[0] == "Hub"
    assert not {e.name for e in result.global_entities} & set(local)


def test_history_is_passed_to_keyword_extraction(loaded_store, fake_llm, query_config):
    conversation = [
        ConversationTurn(role=Role.USER, message="Tell me about Neo4j"),
        ConversationTurn(role=Role.ASSISTANT, message="It is a graph store"),
        ConversationTurn(role=Role.USER, message="Where are vectors kept?"),
    ]
    query(conversation, query_config, fake_llm, loaded_store)
    keyword_prompts = [p for system, p in fake_llm.prompts if system and "keywords" in system]
    assert len(keyword_prompts) == 1
    assert "user: Tell me about Neo4j" in keyword_prompts[0]
    assert "assistant: It is a graph store" in keyword_prompts[0]
    assert keyword_prompts[0].endswith("Where are vectors kept?")


def test_conversation_without_user_turn_fails(store, fake_llm, query_config):
    with pytest.raises(RetrievalFailed) as exc:
        query([ConversationTurn(role=Role.ASSISTANT, message="hi")], query_config, fake_llm, store)
    assert exc.value.stage == "conversation"


def test_unparseable_keywords_fall_back_to_question_terms(loaded_store, query_config):
    class Chatty(FakeLLM):
        def complete(self, prompt, *, system_prompt=None, token=None, **parameters):
            return "no json here"

    result = query(_ask("Which backend stores Bolt?"), query_config, Chatty(), loaded_store)
    assert "Bolt" in result.keywords.low_level
    assert "Bolt" in [e.name for e in result.local_entities]


def test_llm_failure_is_retrieval_failed(loaded_store, query_config):
    class Down(FakeLLM):
        def complete(self, prompt, *, system_prompt=None, token=None, **parameters):
            raise ConnectionError("llm unavailable")

    with pytest.raises(RetrievalFailed) as exc:
        query(_ask("anything"), query_config, Down(), loaded_store)
    assert exc.value.stage == "keywords"


def test_graph_failure_is_retrieval_failed(loaded_store, fake_llm, query_config):
    class BrokenGraph:
        def __getattr__(self, name):
            def fail(*args, **kwargs):
                raise ConnectionError("graph offline")
            return fail

    loaded_store.graph = BrokenGraph()
    with pytest.raises(RetrievalFailed):
        query(_ask("Where are vectors kept?"), query_config, fake_llm, loaded_store)


def test_missing_chunks_are_skipped(loaded_store, fake_llm, query_config):
    for key in loaded_store.kv.keys():
        if not key.startswith("manifest:"):
            loaded_store.delete(key)
    result = query(_ask("Where are vectors kept?"), query_config, fake_llm, loaded_store)
    assert not result.is_empty
    assert result.chunks == []


def test_cancelled_query(loaded_store, fake_llm, query_config):
    token = CancelToken()
    token.cancel()
    with pytest.raises(Canceled):
        query(_ask("Where are vectors kept?"), query_config, fake_llm, loaded_store, token=token)


def test_invalid_query_config(store, fake_llm, query_config):
    with pytest.raises(InvalidConfig):
        query(_ask("x"), replace(query_config, top_k=0), fake_llm, store)
