"""Adapters for external collaborators of the engine.

- ``embedding_client``: embedding provider contract and HTTP client
- ``circuit_breaker``: failure isolation for outbound calls
"""
