"""Tests for the hybrid search engine and its shared libraries.

Backends are mocked throughout; nothing here needs Postgres, Redis or the
embedding service.
"""
