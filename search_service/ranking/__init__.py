"""Search ranking and result fusion components.

Contents
- ``fusion``: weighted cross-source fusion, deduplication, and text query
  preparation for hybrid search
"""
