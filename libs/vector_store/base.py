"""Search backend interfaces.

Defines the abstract contracts the hybrid engine depends on, independent of
the backing implementation (Supabase RPC, asyncpg, in-memory fakes).

All methods are asynchronous. Rows are plain mappings; the engine reshapes
them into typed hits, so backends stay free of engine models.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence

Row = Dict[str, Any]


class VectorSearchBackend(ABC):
    """Abstract base class for vector similarity search backends.

    ``descriptor`` identifies what is searched for (query text, tenant,
    conversation); ``options`` carries limits, thresholds and filters.
    Implementations return rows with at least ``id``, ``content`` and
    ``score`` (similarity in ``[0, 1]``), sorted by descending similarity.
    """

    @abstractmethod
    async def search(
        self,
        descriptor: Mapping[str, Any],
        embedding: Sequence[float],
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        """Search knowledge content similar to ``embedding``."""
        pass

    @abstractmethod
    async def search_conversations(
        self,
        descriptor: Mapping[str, Any],
        embedding: Sequence[float],
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        """Search messages of the conversation named in ``descriptor``."""
        pass

    @abstractmethod
    async def search_messages(
        self,
        descriptor: Mapping[str, Any],
        embedding: Sequence[float],
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        """Search messages across all conversations of the tenant."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the backend is healthy."""
        pass


class RpcClient(ABC):
    """Invoke named server-side functions (text and graph search)."""

    @abstractmethod
    async def rpc(self, function_name: str, params: Mapping[str, Any]) -> List[Row]:
        """Call ``function_name`` with named ``params`` and return its rows.

        Raises ``VectorStoreQueryError`` when the function call fails.
        """
        pass

    async def health_check(self) -> bool:
        return True


class VectorStoreError(Exception):
    """Base exception for search backend operations."""
    pass


class VectorStoreConnectionError(VectorStoreError):
    """Connection error to the backing database."""
    pass


class VectorStoreQueryError(VectorStoreError):
    """Query or function call error in the backing database."""
    pass
