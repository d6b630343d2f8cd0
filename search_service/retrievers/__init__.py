"""Retrieval helpers: result caching for repeated hybrid queries."""
