"""Typed records exchanged with the hybrid query engine.

Backends hand back loosely-typed rows; the engine reshapes each row into one
variant of the closed ``SourceResult`` union, discriminated on ``source``.
Every model accepts both snake_case and camelCase keys so payloads from the
REST layer (``businessId``, ``expandSimilar``...) validate unchanged.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SourceTag = Literal["vector", "text", "graph", "conversation", "message"]
HybridSource = Literal["vector", "text", "graph"]

# Canonical tie-break order when the same id wins equal scores in two sources.
SOURCE_PRIORITY: Dict[str, int] = {"vector": 0, "text": 1, "graph": 2}

MAX_QUERY_LENGTH = 1000


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TimeRange(_Model):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class SearchFilters(_Model):
    category: Optional[List[str]] = None
    time_range: Optional[TimeRange] = None


class ContextBoost(_Model):
    """Hints about the caller's context (recent conversations, customer)."""

    recent_conversations: List[str] = Field(default_factory=list)
    customer_profile: Dict[str, Any] = Field(default_factory=dict)


class SearchQuery(_Model):
    """Input of a hybrid search.

    ``business_id`` is the tenant isolation key; the engine rejects blank
    values before any backend is called.
    """

    text: Optional[str] = Field(default=None, max_length=MAX_QUERY_LENGTH)
    business_id: str
    conversation_id: Optional[str] = None
    assistant_id: Optional[str] = None
    filters: Optional[SearchFilters] = None
    context_boost: Optional[ContextBoost] = None
    entities: Optional[List[str]] = None
    expand_similar: bool = False
    max_expansions: int = 3


class KnowledgeGraphQuery(_Model):
    entities: List[str] = Field(default_factory=list)
    relationships: List[str] = Field(default_factory=list)
    business_id: str
    limit: Optional[int] = None


class ConversationHistoryQuery(_Model):
    text: str = Field(max_length=MAX_QUERY_LENGTH)
    conversation_id: str
    business_id: str
    include_related_conversations: bool = False
    limit: int = 10


class _Hit(_Model):
    id: str
    content: str = ""
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class VectorHit(_Hit):
    source: Literal["vector"] = "vector"


class TextHit(_Hit):
    source: Literal["text"] = "text"


class GraphHit(_Hit):
    source: Literal["graph"] = "graph"
    entity_type: Optional[str] = None
    relationship: Optional[str] = None
    related_entity: Optional[str] = None


class ConversationHit(_Hit):
    source: Literal["conversation"] = "conversation"


class MessageHit(_Hit):
    source: Literal["message"] = "message"


SourceResult = Annotated[
    Union[VectorHit, TextHit, GraphHit, ConversationHit, MessageHit],
    Field(discriminator="source"),
]

HIT_TYPES = {
    "vector": VectorHit,
    "text": TextHit,
    "graph": GraphHit,
    "conversation": ConversationHit,
    "message": MessageHit,
}


class CombinedResult(_Hit):
    """A hit after weighting; ``source`` names the winning source."""

    source: HybridSource
    combined_score: float


class HybridConfig(_Model):
    """Tunable weights, thresholds and caps read by every search.

    Types are validated; ranges are not. Weights need not sum to 1.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    vector_weight: float = 0.5
    text_weight: float = 0.3
    graph_weight: float = 0.2
    vector_threshold: float = 0.7
    text_threshold: float = 0.6
    combined_threshold: float = 0.5
    max_vector_results: int = 8
    max_text_results: int = 5
    max_graph_results: int = 4
    max_combined_results: int = 10

    def weight_for(self, source: str) -> float:
        return {
            "vector": self.vector_weight,
            "text": self.text_weight,
            "graph": self.graph_weight,
        }[source]


class SearchStats(_Model):
    total_queries: int = 0
    avg_query_time_ms: float = 0.0
    cache_hit_rate: float = 0.0
    source_breakdown: Dict[str, int] = Field(
        default_factory=lambda: {"vector": 0, "text": 0, "graph": 0}
    )
    avg_result_count: float = 0.0
    expansion_usage: int = 0


class EmbeddingResult(_Model):
    embedding: List[float]
    token_count: int = 0
    processing_time_ms: float = 0.0
    model: str = "unknown"
