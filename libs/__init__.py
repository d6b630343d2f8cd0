"""Shared libraries for the hybrid search platform.

Subpackages:
- ``libs.common``: configuration, logging, and metrics.
- ``libs.vector_store``: search backend contracts and the Postgres/pgvector
  RPC adapters.

Notes:
- Avoid engine-specific logic; keep modules cohesive and broadly useful.
"""
