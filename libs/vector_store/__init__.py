"""Search backend adapters and utilities.

Primary components:
- ``base``: abstract ``VectorSearchBackend`` and ``RpcClient`` interfaces and
  common exceptions.
- ``pgvector``: Postgres/pgvector implementation calling server-side
  similarity, text and graph functions.
- ``factory``: helpers to construct backends from typed config or env.
"""
