from __future__ import annotations

"""Normalization primitives shared between retrieval, parsing and validation."""

import re

_RE_WHITESPACE = re.compile(r"\s+")
_RE_NON_WORD = re.compile(r"[^\w\s]+")
_RE_COMPACT = re.compile(r"[\W_]+")


def collapse_whitespace(text: str | None) -> str:
    """Trim *text* and collapse every run of whitespace into one space."""

    if not text:
        return ""
    return _RE_WHITESPACE.sub(" ", str(text)).strip()


def normalize_label(text: str | None) -> str:
    """Lowercased, trimmed, whitespace-collapsed form of a free-form label."""

    return collapse_whitespace(text).lower()


def normalize_query(text: str | None) -> str:
    """Return a deterministic representation of *text* for token matching.

    Lowercases, turns punctuation into spaces and collapses duplicate
    whitespace. Hangul and other unicode letters are kept as they are.
    Empty or whitespace-only inputs yield an empty string.
    """

    if not text:
        return ""
    normalized = _RE_NON_WORD.sub(" ", str(text).lower())
    return _RE_WHITESPACE.sub(" ", normalized).strip()


def compact_key(text: str | None) -> str:
    """Lowercase letters and digits only, e.g. ``"RTX 4060-Ti"`` -> ``"rtx4060ti"``."""

    if not text:
        return ""
    return _RE_COMPACT.sub("", str(text).lower())


def tokenize(text: str | None) -> list[str]:
    """Split *text* into normalized tokens, preserving order and duplicates."""

    normalized = normalize_query(text)
    if not normalized:
        return []
    return [tok for tok in normalized.replace("_", " ").split(" ") if tok]
