"""Persistence layers for learned patterns and supplier keywords."""

__all__ = [
    "pattern_store",
    "supplier_keyword_repo",
]
