# FUZZY NAME MATCHING FOR CATALOG RECONCILIATION

from difflib import SequenceMatcher
from typing import List, Optional, Sequence, Tuple

from specmate.shared.normalize.text import compact_key, normalize_label, normalize_query, tokenize


def names_equal(a: str, b: str) -> bool:
    """Case-insensitive, whitespace-insensitive equality"""
    left = normalize_label(a)
    return bool(left) and left == normalize_label(b)


def contains_either_way(a: str, b: str) -> bool:
    """Substring containment in either direction on the compacted form.

    Compacting drops spaces and punctuation so "RTX4060" and
    "RTX 4060 Gaming" still contain each other.
    """
    left, right = compact_key(a), compact_key(b)
    if not left or not right:
        return False
    return left in right or right in left


def token_overlap_score(a: str, b: str) -> float:
    """Jaccard similarity over normalized tokens"""
    left, right = set(tokenize(a)), set(tokenize(b))
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def ngram_similarity(a: str, b: str, n: int = 3) -> float:
    """Jaccard similarity over character n-grams of the compacted strings"""
    def grams(text: str) -> set:
        key = compact_key(text)
        if len(key) < n:
            return {key} if key else set()
        return {key[i:i + n] for i in range(len(key) - n + 1)}

    left, right = grams(a), grams(b)
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def combined_similarity(query: str, product_name: str) -> float:
    """
    Blend of three similarity measures, between 0 and 1.

    - Sequence matching on normalized text: 50%
    - Character trigrams: 30%
    - Token overlap: 20%
    """
    sequence_score = SequenceMatcher(None, normalize_query(query), normalize_query(product_name)).ratio()
    ngram_score = ngram_similarity(query, product_name)
    token_score = token_overlap_score(query, product_name)
    return sequence_score * 0.50 + ngram_score * 0.30 + token_score * 0.20


def find_exact_match(query: str, names: Sequence[str]) -> Optional[int]:
    """Index of the first name equal to *query* (case/whitespace-insensitive)"""
    for idx, name in enumerate(names):
        if names_equal(query, name):
            return idx
    return None


def rank_containment_matches(query: str, names: Sequence[str]) -> List[Tuple[int, float]]:
    """
    All names that contain or are contained in *query*, best first.

    Returns (index, score) pairs ordered by combined similarity; equal scores
    keep the input order.
    """
    hits = [
        (idx, combined_similarity(query, name))
        for idx, name in enumerate(names)
        if contains_either_way(query, name)
    ]
    hits.sort(key=lambda item: (-item[1], item[0]))
    return hits


def find_best_match(query: str, names: Sequence[str]) -> Tuple[Optional[int], str]:
    """
    Best candidate index for *query* and how it matched.

    Returns (index, "exact"), (index, "fuzzy") or (None, "none").
    """
    exact = find_exact_match(query, names)
    if exact is not None:
        return exact, "exact"
    ranked = rank_containment_matches(query, names)
    if ranked:
        return ranked[0][0], "fuzzy"
    return None, "none"
