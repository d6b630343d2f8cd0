"""Postgres/pgvector implementation of the search backends.

Text and graph search live in server-side SQL functions
(``search_knowledge_text``, ``search_graph_knowledge``...) called through
``PgRpcClient.rpc``. Vector search runs parameterized statements over the
pgvector-indexed tables so tenant, category and conversation predicates are
applied by Postgres before ``LIMIT``.

Connection management
- A shared asyncpg pool is created on demand and reused across calls
- Every statement goes through ``PgRpcClient.fetch`` for uniform error
  handling
- The pgvector codec is registered on each connection so embeddings can be
  passed as arrays
"""

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import asyncpg
import numpy as np
import structlog
from asyncpg import Connection, Pool
from pgvector.asyncpg import register_vector

from .base import (
    Row,
    RpcClient,
    VectorSearchBackend,
    VectorStoreConnectionError,
    VectorStoreQueryError,
)

logger = structlog.get_logger("vector_store.pgvector")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def build_rpc_statement(function_name: str, param_names: Iterable[str]) -> str:
    """Build ``SELECT * FROM fn(a => $1, b => $2)`` for a set-returning function.

    Names are interpolated into SQL, so both the function and every
    parameter name must be plain identifiers.
    """
    if not _IDENTIFIER.match(function_name):
        raise VectorStoreQueryError(f"Invalid function name: {function_name!r}")

    args = []
    for position, name in enumerate(param_names, start=1):
        if not _IDENTIFIER.match(name):
            raise VectorStoreQueryError(f"Invalid parameter name: {name!r}")
        args.append(f"{name} => ${position}")

    return f"SELECT * FROM {function_name}({', '.join(args)})"


class PgRpcClient(RpcClient):
    """Call Postgres functions over an asyncpg pool."""

    def __init__(
        self,
        dsn: str,
        pool_size: int = 10,
        max_queries: int = 50000,
        command_timeout: int = 60,
    ):
        """Configure the RPC client.

        Parameters
        - dsn: PostgreSQL DSN including database and credentials
        - pool_size: Max size of asyncpg connection pool
        - max_queries: Queries per connection before recycling
        - command_timeout: Seconds to allow per DB command
        """
        self.dsn = dsn
        self.pool_size = pool_size
        self.max_queries = max_queries
        self.command_timeout = command_timeout
        self._pool: Optional[Pool] = None

    async def _init_connection(self, conn: Connection) -> None:
        await register_vector(conn)

    async def _get_pool(self) -> Pool:
        """Get or create connection pool.

        Lazily initializes an asyncpg pool so callers don't pay startup cost
        unless/until they make a call that requires the database.
        """
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    max_queries=self.max_queries,
                    command_timeout=self.command_timeout,
                    init=self._init_connection,
                )
                logger.info("Created Postgres RPC connection pool", pool_size=self.pool_size)
            except Exception as e:
                logger.error("Failed to create Postgres RPC connection pool", error=str(e))
                raise VectorStoreConnectionError(f"Failed to create connection pool: {e}")

        return self._pool

    async def rpc(self, function_name: str, params: Mapping[str, Any]) -> List[Row]:
        statement = build_rpc_statement(function_name, params.keys())
        return await self.fetch(statement, *params.values(), operation=function_name)

    async def fetch(self, statement: str, *args: Any, operation: str = "query") -> List[Row]:
        """Run a parameterized statement and return its rows as dicts."""
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(statement, *args)
        except Exception as e:
            logger.error("Query failed", operation=operation, error=str(e))
            raise VectorStoreQueryError(f"{operation} failed: {e}")

        return [dict(row) for row in rows]

    async def health_check(self) -> bool:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Closed Postgres RPC connection pool")




# Same similarity, tenant and ordering rules as the ``knowledge_nodes_vector_search``
# and ``messages_vector_search`` functions, plus the optional scope in $5, so
# category and conversation filters apply before LIMIT rather than after it.
KNOWLEDGE_VECTOR_SEARCH = """
SELECT kn.id, kn.content, kn.entity_name, kn.entity_type, kn.properties,
       1 - (kn.embeddings <=> $1) AS similarity
FROM knowledge_nodes kn
WHERE kn.business_id = $2
  AND kn.is_active = true
  AND kn.embeddings IS NOT NULL
  AND 1 - (kn.embeddings <=> $1) > $3
  AND ($5::text[] IS NULL OR kn.entity_type::text = ANY($5::text[]))
ORDER BY kn.embeddings <=> $1
LIMIT $4
"""

MESSAGE_VECTOR_SEARCH = """
SELECT m.id, m.content, m.conversation_id, m.sender_type, m.timestamp,
       1 - (m.embeddings <=> $1) AS similarity
FROM messages m
JOIN conversations c ON m.conversation_id = c.id
JOIN assistants a ON c.assistant_id = a.id
WHERE a.business_id = $2
  AND m.embeddings IS NOT NULL
  AND 1 - (m.embeddings <=> $1) > $3
  AND ($5::uuid IS NULL OR m.conversation_id = $5::uuid)
ORDER BY m.embeddings <=> $1
LIMIT $4
"""


class PgVectorSearchBackend(VectorSearchBackend):
    """Vector search over the pgvector-indexed knowledge and message tables.

    Statements are parameterized as ``(query_embedding, business_id,
    match_threshold, match_count, scope)`` where ``scope`` is the category
    list for knowledge search and the conversation id for conversation
    search (``NULL`` for no scope). Rows carry a ``similarity`` column.
    """

    def __init__(self, rpc_client: PgRpcClient, vector_dimension: Optional[int] = None):
        self.rpc_client = rpc_client
        self.vector_dimension = vector_dimension

    def _ensure_vector_dimension(self, vector: Iterable[float]) -> np.ndarray:
        """Ensure a vector matches the expected dimensionality."""
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1:
            raise ValueError("Vector must be one-dimensional")

        if self.vector_dimension is not None and array.shape[0] != self.vector_dimension:
            raise ValueError(
                f"Expected vector dimension {self.vector_dimension}, "
                f"got {array.shape[0]}"
            )
        return array

    async def _vector_query(
        self,
        statement: str,
        operation: str,
        descriptor: Mapping[str, Any],
        embedding: Sequence[float],
        options: Mapping[str, Any],
        scope: Any = None,
    ) -> List[Row]:
        return await self.rpc_client.fetch(
            statement,
            self._ensure_vector_dimension(embedding),
            descriptor["business_id"],
            float(options.get("threshold", 0.0)),
            int(options.get("limit", 10)),
            scope,
            operation=operation,
        )

    async def search(
        self,
        descriptor: Mapping[str, Any],
        embedding: Sequence[float],
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        options = options or {}
        filter_types = options.get("filter_types")

        rows = await self._vector_query(
            KNOWLEDGE_VECTOR_SEARCH,
            "knowledge_vector_search",
            descriptor,
            embedding,
            options,
            list(filter_types) if filter_types else None,
        )

        results = [
            {
                "id": str(row["id"]),
                "content": row.get("content") or "",
                "score": float(row["similarity"]),
                "metadata": {
                    "category": row.get("entity_type"),
                    "entity_name": row.get("entity_name"),
                    "properties": row.get("properties") or {},
                },
            }
            for row in rows
        ]

        logger.info(
            "Knowledge vector search completed",
            business_id=descriptor["business_id"],
            filter_types=filter_types,
            results_count=len(results),
        )
        return results

    async def search_conversations(
        self,
        descriptor: Mapping[str, Any],
        embedding: Sequence[float],
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        rows = await self._vector_query(
            MESSAGE_VECTOR_SEARCH,
            "conversation_vector_search",
            descriptor,
            embedding,
            options or {},
            str(descriptor["conversation_id"]),
        )
        return [self._message_row(row) for row in rows]

    async def search_messages(
        self,
        descriptor: Mapping[str, Any],
        embedding: Sequence[float],
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        rows = await self._vector_query(
            MESSAGE_VECTOR_SEARCH,
            "message_vector_search",
            descriptor,
            embedding,
            options or {},
        )
        return [self._message_row(row) for row in rows]

    @staticmethod
    def _message_row(row: Mapping[str, Any]) -> Dict[str, Any]:
        timestamp = row.get("timestamp")
        return {
            "id": str(row["id"]),
            "content": row.get("content") or "",
            "score": float(row["similarity"]),
            "metadata": {
                "conversation_id": str(row.get("conversation_id")),
                "sender_type": row.get("sender_type"),
                "timestamp": timestamp.isoformat() if timestamp is not None else None,
            },
        }

    async def health_check(self) -> bool:
        return await self.rpc_client.health_check()
