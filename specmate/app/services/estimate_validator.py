from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Mapping, Sequence, Union

from specmate.app.models import (
    CandidateProduct,
    CandidateSet,
    EstimateComponent,
    EstimateResult,
    MatchConfidence,
)
from specmate.shared.fuzzy_matcher import find_best_match
from specmate.shared.normalize.category import normalize_category

logger = logging.getLogger("specmate.validator")

PoolValue = Union[CandidateSet, Sequence[CandidateProduct], None]


def normalize_pool(pool: Mapping[str, PoolValue]) -> Dict[str, List[CandidateProduct]]:
    """Pool keyed by canonical category; labels that normalize alike are merged in order."""
    normalized: Dict[str, List[CandidateProduct]] = {}
    for raw_category, value in (pool or {}).items():
        if value is None:
            continue
        products = list(value.products) if isinstance(value, CandidateSet) else list(value)
        if not products:
            continue
        normalized.setdefault(normalize_category(raw_category), []).extend(products)
    return normalized


def match_candidate(name: str, candidates: Sequence[CandidateProduct]) -> tuple[CandidateProduct, MatchConfidence]:
    """Pick the catalog product a proposed component name refers to.

    Exact (case and whitespace-insensitive) beats containment in either
    direction; with no match at all the first candidate stands in.
    """
    index, how = find_best_match(name, [candidate.name for candidate in candidates])
    if index is None:
        return candidates[0], MatchConfidence.FALLBACK
    if how == "exact":
        return candidates[index], MatchConfidence.EXACT
    return candidates[index], MatchConfidence.FUZZY


def validate_estimate(draft: EstimateResult, pool: Mapping[str, PoolValue]) -> EstimateResult:
    """Reconcile *draft* against the retrieved candidates.

    Returns a new result whose components all name real catalog products
    with their catalog price and image. Components in categories without
    candidates are dropped; the draft itself is left untouched.
    """

    candidates_by_category = normalize_pool(pool)
    if not candidates_by_category:
        logger.warning("empty candidate pool, dropping all %d draft components", len(draft.components))
        return draft.with_components(())

    validated: List[EstimateComponent] = []
    counts = {confidence: 0 for confidence in MatchConfidence}
    dropped: List[str] = []
    for component in draft.components:
        category = normalize_category(component.category)
        candidates = candidates_by_category.get(category)
        if not candidates:
            logger.warning("no candidates for category=%s, dropping %r", category, component.raw_name)
            dropped.append(category)
            continue

        proposed = component.name or component.raw_name
        product, confidence = match_candidate(proposed, candidates)
        if confidence is MatchConfidence.FALLBACK:
            logger.warning(
                "no catalog match for %r in category=%s, substituting %r",
                proposed,
                category,
                product.name,
            )
        counts[confidence] += 1
        validated.append(
            replace(
                component,
                category=category,
                raw_name=component.raw_name or proposed,
                name=product.name,
                price=max(0, product.price or 0),
                image=product.image,
                confidence=confidence,
            )
        )

    logger.info(
        "validated estimate: kept=%d exact=%d fuzzy=%d fallback=%d dropped=%s",
        len(validated),
        counts[MatchConfidence.EXACT],
        counts[MatchConfidence.FUZZY],
        counts[MatchConfidence.FALLBACK],
        dropped or "-",
    )
    return draft.with_components(validated)
