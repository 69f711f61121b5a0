import json

import pytest

from hybrid_rag.errors import ExtractionFailed
from hybrid_rag.extraction import Extractor, parse_json_response
from hybrid_rag.schemas import Chunk

from conftest import DOC1_TEXT, FakeLLM


class ScriptedLLM:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.system_prompts = []

    def complete(self, prompt, *, system_prompt=None, token=None, **parameters):
        self.system_prompts.append(system_prompt)
        if self.error:
            raise self.error
        return self.response


def _chunk(text: str = DOC1_TEXT) -> Chunk:
    return Chunk(id="chunk-1", doc_id="doc-1", content=text, token_count=len(text.split()), order=0)


def test_extracts_scenario_entities():
    entities, relationships = Extractor(FakeLLM()).extract(_chunk(), ["object", "event"])
    by_name = {e.name: e for e in entities}
    assert set(by_name) == {"Neo4j", "ChromeM", "Bolt"}
    for ent in entities:
        assert ent.type == "object"
        assert ent.source_chunk_ids == {"chunk-1"}
    assert [r.key for r in relationships] == [("CHROMEM", "NEO4J")]


def test_prompt_names_allowed_types():
    llm = ScriptedLLM(response='{"entities": []}')
    Extractor(llm).extract(_chunk(), ["object", "location"])
    assert "location, object" in llm.system_prompts[0]


def test_unknown_types_are_dropped():
    response = json.dumps(
        {
            "entities": [
                {"name": "Neo4j", "type": "Object", "description": "db"},
                {"name": "Paris", "type": "city", "description": "place"},
            ],
            "relationships": [{"source": "Neo4j", "target": "Paris", "description": "x"}],
        }
    )
    entities, relationships = Extractor(ScriptedLLM(response)).extract(_chunk(), ["object"])
    assert [(e.name, e.type) for e in entities] == [("Neo4j", "object")]
    # the endpoint was dropped with its entity
    assert relationships == []


def test_accepts_relations_key_and_fenced_json():
    response = (
        "Here you go:\n```json\n"
        + json.dumps(
            {
                "entities": [
                    {"name": "A", "type": "event"},
                    {"name": "B", "type": "event"},
                ],
                "relations": [{"source": ["A"], "target": "B", "type": "precedes", "weight": "2"}],
            }
        )
        + "\n```"
    )
    entities, relationships = Extractor(ScriptedLLM(response)).extract(_chunk(), ["event"])
    assert {e.name for e in entities} == {"A", "B"}
    assert len(relationships) == 1
    assert relationships[0].description == "precedes"
    assert relationships[0].weight == 2.0


def test_duplicates_within_a_chunk_merge():
    response = json.dumps(
        {
            "entities": [
                {"name": "Bolt", "type": "object", "description": "kv store"},
                {"name": "bolt ", "type": "object", "description": "file backed"},
            ]
        }
    )
    entities, _ = Extractor(ScriptedLLM(response)).extract(_chunk(), ["object"])
    assert len(entities) == 1
    assert entities[0].description == "file backed\nkv store"


def test_self_relationships_are_ignored():
    response = json.dumps(
        {
            "entities": [{"name": "A", "type": "event"}],
            "relationships": [{"source": "A", "target": "a"}],
        }
    )
    _, relationships = Extractor(ScriptedLLM(response)).extract(_chunk(), ["event"])
    assert relationships == []


def test_llm_error_is_extraction_failed():
    with pytest.raises(ExtractionFailed) as exc:
        Extractor(ScriptedLLM(error=TimeoutError("slow"))).extract(_chunk(), ["object"])
    assert exc.value.chunk_ids == ["chunk-1"]
    assert exc.value.doc_id == "doc-1"


def test_unparseable_response_is_extraction_failed():
    with pytest.raises(ExtractionFailed):
        Extractor(ScriptedLLM("I could not find anything")).extract(_chunk(), ["object"])


def test_parse_json_response_rejects_non_objects():
    with pytest.raises(ValueError):
        parse_json_response("[1, 2]")
    assert parse_json_response('noise {"a": 1} noise') == {"a": 1}
