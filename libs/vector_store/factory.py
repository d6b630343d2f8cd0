"""Search backend factory.

Centralizes creation of concrete backends so the engine's callers don't
depend on implementation details. New backends can be added without
changing call sites.
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple

import structlog

from libs.common.config import BaseConfig

from .base import RpcClient, VectorSearchBackend
from .pgvector import PgRpcClient, PgVectorSearchBackend

logger = structlog.get_logger("vector_store.factory")


class BackendType(Enum):
    """Supported backend types."""
    PGVECTOR = "pgvector"


def create_search_backends(
    backend_type: BackendType,
    config: Dict[str, Any],
) -> Tuple[RpcClient, VectorSearchBackend]:
    """Create the RPC client and vector backend for ``backend_type``.

    Parameters
    - backend_type: A ``BackendType`` enum value
    - config: Backend-specific parameters (``dsn``, ``pool_size``,
      ``command_timeout``, ``vector_dimension``)
    """
    if backend_type == BackendType.PGVECTOR:
        dsn = config.get("dsn")
        if not dsn:
            raise ValueError("PgVector requires 'dsn' in config")

        rpc_client = PgRpcClient(
            dsn=dsn,
            pool_size=config.get("pool_size", 10),
            max_queries=config.get("max_queries", 50000),
            command_timeout=config.get("command_timeout", 60),
        )
        vector_backend = PgVectorSearchBackend(
            rpc_client,
            vector_dimension=config.get("vector_dimension"),
        )
        logger.info("Created search backends", backend_type=backend_type.value)
        return rpc_client, vector_backend

    raise ValueError(f"Unsupported backend type: {backend_type}")


def create_search_backends_from_config(
    config: Optional[BaseConfig] = None,
) -> Tuple[RpcClient, VectorSearchBackend]:
    """Create backends from settings (environment by default)."""
    config = config or BaseConfig()
    return create_search_backends(
        BackendType.PGVECTOR,
        {
            "dsn": config.rag_db_dsn,
            "pool_size": config.rag_db_pool_size,
            "command_timeout": config.rag_db_command_timeout,
            "vector_dimension": config.rag_vector_dimension,
        },
    )
