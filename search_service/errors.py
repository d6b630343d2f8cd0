"""Exceptions raised by the hybrid query engine."""


class SearchEngineError(Exception):
    """Base exception for engine operations."""
    pass


class InvalidSearchQueryError(SearchEngineError, ValueError):
    """The query is malformed (e.g. missing tenant id)."""
    pass


class EmbeddingProviderError(SearchEngineError):
    """The embedding provider failed; the vector path cannot proceed."""
    pass
