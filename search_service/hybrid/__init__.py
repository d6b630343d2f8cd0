"""Hybrid query engine combining vector, text and graph retrieval."""

from .query_engine import (
    HybridQueryEngine,
    create_hybrid_query_engine,
    create_hybrid_query_engine_from_config,
    get_default_hybrid_config,
)

__all__ = [
    "HybridQueryEngine",
    "create_hybrid_query_engine",
    "create_hybrid_query_engine_from_config",
    "get_default_hybrid_config",
]
