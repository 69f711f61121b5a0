from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional, Tuple
from textwrap import dedent
import json
import logging

from .cancellation import CancelToken
from .errors import Canceled, ExtractionFailed
from .llm import LLMProvider
from .schemas import (
    Chunk,
    Entity,
    Relationship,
    merge_entities,
    merge_relationships,
    normalize_name,
)

logger = logging.getLogger(__name__)


EXTRACTION_SYSTEM_PROMPT = dedent(
    """
    You are an information extraction agent. Given a text chunk, extract the
    entities it mentions and the relationships between them.
    Only use these entity types: {entity_types}.
    Respond ONLY with valid JSON of the form:
    {{
      "entities": [
        {{"name": "...", "type": "<one of the entity types>", "description": "..."}}
      ],
      "relationships": [
        {{"source": "<entity name>", "target": "<entity name>",
          "description": "...", "keywords": ["..."], "strength": 1.0}}
      ]
    }}
    """
).strip()


def parse_json_response(response_str: str) -> Dict[str, Any]:
    """Parse a JSON object, tolerating prose or code fences around it."""
    try:
        data = json.loads(response_str)
    except json.JSONDecodeError:
        start = response_str.find("{")
        end = response_str.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("no JSON object in response")
        data = json.loads(response_str[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("response JSON is not an object")
    return data


def _to_name_list(val: Any) -> List[str]:
    # Relations may carry single names or lists (model-dependent).
    if val is None:
        return []
    if isinstance(val, list):
        return [str(v) for v in val if isinstance(v, (str, int))]
    if isinstance(val, (str, int)):
        return [str(val)]
    return []


def _to_float(val: Any, default: float = 1.0) -> float:
    try:
        out = float(val)
    except (TypeError, ValueError):
        return default
    return out if out > 0 else default


class Extractor:
    """
    Calls the LLM on one chunk and turns the structured answer into entity
    and relationship records scoped to that chunk.
    """

    def __init__(self, llm: LLMProvider):
        self.llm = llm

    def extract(
        self,
        chunk: Chunk,
        entity_types: Iterable[str],
        token: Optional[CancelToken] = None,
    ) -> Tuple[List[Entity], List[Relationship]]:
        allowed = {t.strip().lower(): t.strip() for t in entity_types if t and t.strip()}
        system_prompt = EXTRACTION_SYSTEM_PROMPT.format(
            entity_types=", ".join(sorted(allowed.values()))
        )
        try:
            raw = self.llm.complete(chunk.content, system_prompt=system_prompt, token=token)
        except Canceled:
            raise
        except Exception as e:
            raise ExtractionFailed(
                f"LLM call failed for chunk {chunk.id}: {e}",
                doc_id=chunk.doc_id,
                chunk_ids=[chunk.id],
            ) from e

        try:
            parsed = parse_json_response(raw)
        except (ValueError, json.JSONDecodeError) as e:
            raise ExtractionFailed(
                f"unparseable extraction response for chunk {chunk.id}: {e}",
                doc_id=chunk.doc_id,
                chunk_ids=[chunk.id],
            ) from e

        entities = self._parse_entities(chunk, parsed, allowed)
        relationships = self._parse_relationships(chunk, parsed, entities)
        logger.debug(
            "Chunk %s: %d entities, %d relationships",
            chunk.id, len(entities), len(relationships),
        )
        return list(entities.values()), list(relationships.values())

    def _parse_entities(
        self,
        chunk: Chunk,
        parsed: Dict[str, Any],
        allowed: Dict[str, str],
    ) -> Dict[str, Entity]:
        records: List[Entity] = []
        for ent in parsed.get("entities") or []:
            if not isinstance(ent, dict):
                continue
            name = ent.get("name") or ent.get("label")
            if not name or not normalize_name(str(name)):
                continue
            raw_type = str(ent.get("type") or "").strip()
            ent_type = allowed.get(raw_type.lower())
            if ent_type is None:
                logger.info(
                    "Dropping entity %r with unrecognized type %r (chunk %s)",
                    name, raw_type, chunk.id,
                )
                continue
            records.append(
                Entity.from_chunk(
                    name=str(name),
                    type=ent_type,
                    description=str(ent.get("description") or ""),
                    chunk_id=chunk.id,
                )
            )
        return merge_entities(records)

    def _parse_relationships(
        self,
        chunk: Chunk,
        parsed: Dict[str, Any],
        entities: Dict[str, Entity],
    ) -> Dict[Tuple[str, str], Relationship]:
        raw_rels = parsed.get("relationships")
        if raw_rels is None:
            raw_rels = parsed.get("relations") or []
        records: List[Relationship] = []
        for rel in raw_rels:
            if not isinstance(rel, dict):
                continue
            keywords = rel.get("keywords") or []
            if isinstance(keywords, str):
                keywords = [k for k in keywords.split(",")]
            description = str(rel.get("description") or rel.get("type") or "")
            weight = _to_float(rel.get("strength", rel.get("weight")))
            for src_name in _to_name_list(rel.get("source")):
                for tgt_name in _to_name_list(rel.get("target")):
                    src_key, tgt_key = normalize_name(src_name), normalize_name(tgt_name)
                    if not src_key or not tgt_key or src_key == tgt_key:
                        continue
                    if src_key not in entities or tgt_key not in entities:
                        # skip relations whose endpoints weren't extracted
                        logger.debug(
                            "Dropping relationship %r -> %r (unknown endpoint, chunk %s)",
                            src_name, tgt_name, chunk.id,
                        )
                        continue
                    records.append(
                        Relationship.from_chunk(
                            source=entities[src_key].name,
                            target=entities[tgt_key].name,
                            description=description,
                            chunk_id=chunk.id,
                            weight=weight,
                            keywords=[str(k) for k in keywords],
                        )
                    )
        return merge_relationships(records)
