import pytest
from fastapi.testclient import TestClient

from api.server import app, get_service
from hybrid_rag.service import GraphRAGService

from conftest import DOC1_TEXT, FakeLLM, make_store


@pytest.fixture
def service(fake_llm, ingest_config, query_config):
    return GraphRAGService(
        llm=fake_llm,
        store=make_store(),
        ingest_config=ingest_config,
        query_config=query_config,
    )


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _ingest(client):
    res = client.post("/documents", json={"id": "doc-1", "content": DOC1_TEXT})
    assert res.status_code == 200
    return res.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_ingest_document(client):
    body = _ingest(client)
    assert body["doc_id"] == "doc-1"
    assert body["chunk_count"] == 1
    assert body["entity_count"] == 3
    assert body["relationship_count"] == 1


def test_empty_document_id_is_rejected(client):
    res = client.post("/documents", json={"id": "  ", "content": "x"})
    assert res.status_code == 400


def test_query_returns_entities_and_sources(client):
    _ingest(client)
    res = client.post(
        "/query",
        json={"conversation": [{"role": "user", "message": "Where are vectors kept?"}]},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["no_match"] is False
    assert "ChromeM" in [e["name"] for e in body["local_entities"]]
    assert body["chunks"][0]["content"] == DOC1_TEXT


def test_query_on_empty_store_is_no_match(client):
    res = client.post("/query", json={"conversation": [{"role": "user", "message": "anything?"}]})
    assert res.status_code == 200
    assert res.json()["no_match"] is True


def test_query_without_user_turn_is_bad_gateway(client):
    res = client.post("/query", json={"conversation": [{"role": "assistant", "message": "hi"}]})
    assert res.status_code == 502
    assert "RetrievalFailed" in res.json()["detail"]


def test_qa_cites_sources(client, fake_llm):
    _ingest(client)
    res = client.post("/qa", json={"question": "Where are vectors kept?"})
    assert res.status_code == 200
    body = res.json()
    assert body["answer"] == fake_llm.answer
    assert [c["label"] for c in body["citations"]] == ["doc-1#0"]
    assert body["context"]["no_match"] is False


def test_qa_without_evidence_skips_the_llm(client, fake_llm):
    res = client.post("/qa", json={"question": "Where are vectors kept?"})
    assert res.status_code == 200
    assert res.json()["citations"] == []
    answer_prompts = [s for s, _ in fake_llm.prompts if s and "question answering" in s]
    assert answer_prompts == []


def test_extraction_failure_is_bad_gateway(query_config, ingest_config):
    failing = GraphRAGService(
        llm=FakeLLM(extraction_failures=100),
        store=make_store(),
        ingest_config=ingest_config,
        query_config=query_config,
    )
    app.dependency_overrides[get_service] = lambda: failing
    try:
        res = TestClient(app).post("/documents", json={"id": "doc-1", "content": DOC1_TEXT})
    finally:
        app.dependency_overrides.clear()
    assert res.status_code == 502
    assert "ExtractionFailed" in res.json()["detail"]
