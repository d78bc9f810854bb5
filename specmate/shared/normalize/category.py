from __future__ import annotations

"""Canonical PC part categories and the synonym table that maps labels onto them.

Every category-bearing value coming from the catalog payloads, the language
model or the user passes through :func:`normalize_category` before it reaches
retrieval or validation. The synonym table lives in ``categories.yaml`` next to
this module so the retriever alias expansion and the normalizer share a single
source.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, FrozenSet, Tuple

import yaml

from .text import normalize_label

logger = logging.getLogger("specmate.normalize")

CANONICAL_CATEGORIES: Tuple[str, ...] = (
    "case",
    "cpu",
    "vga",
    "ram",
    "ssd",
    "power",
    "mainboard",
    "cooler",
    "hdd",
)
UNKNOWN = "unknown"

CATEGORY_LABELS_KO: Dict[str, str] = {
    "case": "케이스",
    "cpu": "CPU",
    "vga": "그래픽카드",
    "ram": "메모리",
    "ssd": "SSD",
    "power": "파워",
    "mainboard": "메인보드",
    "cooler": "쿨러",
    "hdd": "HDD",
}

SYNONYMS_PATH = Path(__file__).resolve().parent / "categories.yaml"


@lru_cache(maxsize=4)
def load_category_table(path: str = str(SYNONYMS_PATH)) -> Tuple[Dict[str, str], Dict[str, FrozenSet[str]]]:
    """Load ``{label: canonical}`` and ``{canonical: payload aliases}`` from *path*.

    The YAML schema is ``{canonical: [label, ...], aliases: {canonical: [token, ...]}}``.
    Keys outside :data:`CANONICAL_CATEGORIES` are rejected so a typo in the
    table cannot leak a new category downstream.
    """

    content = Path(path).read_text(encoding="utf-8")
    loaded = yaml.safe_load(content) or {}
    if not isinstance(loaded, dict):
        raise ValueError("category synonyms YAML must define a mapping")

    raw_aliases = loaded.pop("aliases", None) or {}
    table: Dict[str, str] = {canon: canon for canon in CANONICAL_CATEGORIES}
    for canon, labels in loaded.items():
        canon_key = normalize_label(str(canon))
        if canon_key not in CANONICAL_CATEGORIES:
            raise ValueError(f"unknown canonical category in synonyms table: {canon!r}")
        for label in labels or []:
            key = normalize_label(str(label))
            if not key:
                continue
            previous = table.get(key)
            if previous is not None and previous != canon_key:
                raise ValueError(f"label {label!r} maps to both {previous!r} and {canon_key!r}")
            table[key] = canon_key

    aliases: Dict[str, FrozenSet[str]] = {}
    for canon in CANONICAL_CATEGORIES:
        extra = raw_aliases.get(canon) or []
        aliases[canon] = frozenset({canon, *(normalize_label(str(tok)) for tok in extra)})
    return table, aliases


def normalize_category(raw: object) -> str:
    """Map a free-form category label to its canonical token.

    ``None`` and blank labels yield :data:`UNKNOWN`. Labels missing from the
    synonym table are returned lowercased and trimmed and logged, so callers
    must tolerate values outside the canonical set.
    """

    if raw is None:
        return UNKNOWN
    label = normalize_label(str(raw))
    if not label:
        return UNKNOWN
    table, _ = load_category_table()
    canonical = table.get(label)
    if canonical is not None:
        return canonical
    # "RTX 그래픽카드" style labels: try the compacted form as well
    canonical = table.get(label.replace(" ", ""))
    if canonical is not None:
        return canonical
    if label != UNKNOWN:
        logger.warning("Unrecognized category label: %r", label)
    return label


def is_canonical(value: object) -> bool:
    return isinstance(value, str) and value in CANONICAL_CATEGORIES


def category_aliases(category: str) -> FrozenSet[str]:
    """Payload category tokens that count as *category* during retrieval (``vga`` -> ``{vga, gpu}``)."""

    canonical = normalize_category(category)
    _, aliases = load_category_table()
    return aliases.get(canonical, frozenset({canonical}))


def category_display_name(category: str) -> str:
    return CATEGORY_LABELS_KO.get(category, category)
