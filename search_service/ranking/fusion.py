"""Weighted result fusion for hybrid search.

Nothing here touches a backend or engine state. ``combine_and_rank_results``
is the reducer shared by plain and expansion searches.
"""

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import structlog
from pydantic import BaseModel

from ..models import (
    HIT_TYPES,
    SOURCE_PRIORITY,
    CombinedResult,
    HybridConfig,
)

logger = structlog.get_logger("search_service.ranking.fusion")

HitLike = Union[BaseModel, Mapping[str, Any]]

_SCORE_KEYS = ("score", "similarity", "confidence", "rank")
_ID_KEYS = ("id", "entity_id")
_GRAPH_FIELDS = ("entity_type", "relationship", "related_entity")


def to_hit(row: HitLike, source: str):
    """Reshape a backend row (or an existing hit) into the typed hit for ``source``.

    Rows may name their score ``score``, ``similarity``, ``confidence`` or
    ``rank`` and their id ``id`` or ``entity_id``; the first present wins.
    Raises ``ValueError`` when the row has no id.
    """
    hit_type = HIT_TYPES[source]
    if isinstance(row, BaseModel):
        row = row.model_dump()

    hit_id = next((row[key] for key in _ID_KEYS if row.get(key) is not None), None)
    if hit_id is None:
        raise ValueError(f"{source} row has no id")
    score = next((row[key] for key in _SCORE_KEYS if row.get(key) is not None), 0.0)
    metadata = dict(row.get("metadata") or {})

    fields: Dict[str, Any] = {
        "id": str(hit_id),
        "content": row.get("content") or "",
        "score": float(score),
        "metadata": metadata,
    }
    if source == "graph":
        for name in _GRAPH_FIELDS:
            value = row.get(name, metadata.get(name))
            if value is not None:
                fields[name] = value
                metadata.setdefault(name, value)

    return hit_type(**fields)


def to_hits(rows: Iterable[HitLike], source: str) -> List[Any]:
    hits = []
    for row in rows:
        try:
            hits.append(to_hit(row, source))
        except ValueError as e:
            logger.warning("Skipping backend row", source=source, error=str(e))
    return hits


def select_source_hits(
    rows: Iterable[HitLike],
    source: str,
    limit: int,
    threshold: Optional[float] = None,
) -> List[Any]:
    """Cap a backend's rows to ``limit`` and drop hits under ``threshold``."""
    hits = to_hits(rows, source)[:max(limit, 0)]
    if threshold is None:
        return hits
    return [hit for hit in hits if hit.score >= threshold]


def combine_and_rank_results(
    vector_results: Sequence[HitLike],
    text_results: Sequence[HitLike],
    graph_results: Sequence[HitLike],
    config: HybridConfig,
) -> List[CombinedResult]:
    """Merge three source lists into one ranked, deduplicated list.

    1. ``combined_score = raw score * weight of the list it came from``
    2. Same id in several lists: the higher combined score wins; on a tie the
       earlier source in vector > text > graph order is kept
    3. Drop ``combined_score < combined_threshold``
    4. Sort descending by ``combined_score`` (stable)
    5. Truncate to ``max_combined_results``
    """
    merged: Dict[str, CombinedResult] = {}

    for source, rows in (
        ("vector", vector_results),
        ("text", text_results),
        ("graph", graph_results),
    ):
        weight = config.weight_for(source)
        for hit in to_hits(rows, source):
            candidate = CombinedResult(
                id=hit.id,
                content=hit.content,
                score=hit.score,
                metadata=hit.metadata,
                source=source,
                combined_score=hit.score * weight,
            )
            current = merged.get(hit.id)
            if current is None or _outranks(candidate, current):
                merged[hit.id] = candidate

    ranked = [
        result for result in merged.values()
        if result.combined_score >= config.combined_threshold
    ]
    ranked.sort(key=lambda result: result.combined_score, reverse=True)
    return ranked[:max(config.max_combined_results, 0)]


def _outranks(candidate: CombinedResult, current: CombinedResult) -> bool:
    if candidate.combined_score != current.combined_score:
        return candidate.combined_score > current.combined_score
    return SOURCE_PRIORITY[candidate.source] < SOURCE_PRIORITY[current.source]


def merge_by_id(hits: Iterable[Any]) -> List[Any]:
    """Deduplicate single-source hits by id (higher raw score wins), best first."""
    best: Dict[str, Any] = {}
    for hit in hits:
        current = best.get(hit.id)
        if current is None or hit.score > current.score:
            best[hit.id] = hit
    return sorted(best.values(), key=lambda hit: hit.score, reverse=True)


_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def prepare_text_query(query: str) -> str:
    """Turn free text into a prefix-matching OR tsquery.

    ``"How do I reset my password?"`` becomes
    ``"How:* | reset:* | password:*"``; words of two characters or fewer are
    dropped, and the raw text is returned when nothing survives.
    """
    cleaned = _WHITESPACE.sub(" ", _NON_WORD.sub(" ", query)).strip()
    words = [word for word in cleaned.split(" ") if len(word) > 2]
    if not words:
        return query
    return " | ".join(f"{word}:*" for word in words)
