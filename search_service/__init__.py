"""Multi-tenant hybrid retrieval for RAG assistants.

Import ``HybridQueryEngine`` from ``search_service.hybrid`` and the record
types from ``search_service.models``.
"""

__version__ = "1.0.0"
