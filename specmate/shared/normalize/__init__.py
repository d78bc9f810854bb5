"""Utility helpers for category normalization and lightweight text matching."""

from .category import (
    CANONICAL_CATEGORIES,
    UNKNOWN,
    category_aliases,
    category_display_name,
    is_canonical,
    load_category_table,
    normalize_category,
)
from .text import (
    collapse_whitespace,
    compact_key,
    normalize_label,
    normalize_query,
    tokenize,
)

__all__ = [
    "CANONICAL_CATEGORIES",
    "UNKNOWN",
    "category_aliases",
    "category_display_name",
    "collapse_whitespace",
    "compact_key",
    "is_canonical",
    "load_category_table",
    "normalize_category",
    "normalize_label",
    "normalize_query",
    "tokenize",
]
