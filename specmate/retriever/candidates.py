"""Per-category candidate retrieval with progressively broader fallbacks.

Stages for one category, stopping at the first usable result:

1. similarity search for ``"<user input> <category>"``
2. drop price-pending and unpriced entries
3. drop accessories, and NAS/enterprise/external drives for ``hdd``
4. keep entries whose payload category matches (``vga`` and ``gpu`` are one category)
5. bare category query, filters 2-4 again (fallback)
6. widened search on the user input, single most popular usable entry (fallback)

A category that survives none of these comes back empty; callers mark it
unavailable instead of inventing a product.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, Iterable, List, Optional, Sequence

from specmate.app.models import CandidateProduct, CandidateSet
from specmate.retriever.vector_store import SearchHit, VectorSearch, candidate_from_hit, has_pending_price
from specmate.shared.normalize.category import CANONICAL_CATEGORIES, category_aliases, normalize_category

logger = logging.getLogger("specmate.retriever")

PRIMARY_TOP_K = 200
CATEGORY_TOP_K = 100
GLOBAL_TOP_K = 300

ACCESSORY_KEYWORDS = (
    "나사", "볼트", "너트", "와셔",
    "케이블", "연장선", "젠더",
    "가이드", "매뉴얼", "설명서",
    "스티커", "라벨",
    "받침대", "거치대",
)
# keyword -> words that make the product a real component after all
ACCESSORY_UNLESS = {
    "브라켓": ("케이스",),
    "스탠드": ("라이저",),
    "방열판": ("지지대",),
}
TOOL_SET_WORDS = ("나사", "볼트", "공구")
OUT_OF_SCOPE_KEYWORDS = ("노트북", "laptop", "서버용", "server")
HDD_DENYLIST = (
    "nas",
    "ironwolf",
    "red plus",
    "red pro",
    "exos",
    "enterprise",
    "ultrastar",
    "surveillance",
    "skyhawk",
    "purple",
    "감시",
    "cctv",
    "외장",
    "external",
    "portable",
    "서버",
)


def is_accessory(name: str) -> bool:
    lowered = (name or "").lower()
    if not lowered:
        return True
    if any(keyword in lowered for keyword in ACCESSORY_KEYWORDS):
        return True
    for keyword, unless in ACCESSORY_UNLESS.items():
        if keyword in lowered and not any(word in lowered for word in unless):
            return True
    if "세트" in lowered and any(word in lowered for word in TOOL_SET_WORDS):
        return True
    return any(keyword in lowered for keyword in OUT_OF_SCOPE_KEYWORDS)


def is_excluded(name: str, category: str) -> bool:
    """Accessory filter for every category plus the hdd denylist."""
    if is_accessory(name):
        return True
    if category == "hdd":
        lowered = name.lower()
        return any(keyword in lowered for keyword in HDD_DENYLIST)
    return False


def pick_most_popular(products: Sequence[CandidateProduct]) -> Optional[CandidateProduct]:
    """Lowest popularity rank wins; unranked entries sort last, ties keep search order."""
    if not products:
        return None
    ranked = sorted(
        enumerate(products),
        key=lambda item: (item[1].popularity_rank is None, item[1].popularity_rank or 0, item[0]),
    )
    return ranked[0][1]


class CandidateRetriever:
    def __init__(
        self,
        search: VectorSearch,
        *,
        primary_top_k: int = PRIMARY_TOP_K,
        category_top_k: int = CATEGORY_TOP_K,
        global_top_k: int = GLOBAL_TOP_K,
        max_workers: int = 4,
    ) -> None:
        self.search = search
        self.primary_top_k = primary_top_k
        self.category_top_k = category_top_k
        self.global_top_k = global_top_k
        self.max_workers = max(1, max_workers)

    def _search(self, query: str, top_k: int, category: str, stage: str) -> List[SearchHit]:
        try:
            return list(self.search.search(query, top_k) or [])
        except Exception as exc:
            logger.warning("vector search failed category=%s stage=%s: %s", category, stage, exc)
            return []

    def _usable(self, hits: Iterable[SearchHit], category: str) -> List[CandidateProduct]:
        aliases = category_aliases(category)
        usable: List[CandidateProduct] = []
        seen = set()
        for hit in hits:
            if has_pending_price(hit):
                continue
            product = candidate_from_hit(hit)
            if not product.name or not product.has_price:
                continue
            if is_excluded(product.name, category):
                continue
            if product.category not in aliases:
                continue
            if product.id in seen:
                continue
            seen.add(product.id)
            usable.append(product)
        return usable

    def retrieve(self, user_input: str, category: str, top_k: int = 5) -> CandidateSet:
        category = normalize_category(category)
        user_input = (user_input or "").strip()
        top_k = max(1, top_k)

        primary = self._usable(
            self._search(f"{user_input} {category}".strip(), self.primary_top_k, category, "primary"),
            category,
        )
        if primary:
            logger.info("retrieved category=%s count=%d", category, len(primary))
            return CandidateSet(category, tuple(primary[:top_k]))

        bare = self._usable(self._search(category, self.category_top_k, category, "category"), category)
        if bare:
            logger.info("retrieved category=%s count=%d (category fallback)", category, len(bare))
            return CandidateSet(category, tuple(bare[:top_k]), fallback=True)

        widened = self._usable(self._search(user_input or category, self.global_top_k, category, "global"), category)
        best = pick_most_popular(widened)
        if best is not None:
            logger.info("retrieved category=%s via popularity fallback: %s", category, best.name)
            return CandidateSet(category, (best,), fallback=True)

        logger.warning("no candidates for category=%s", category)
        return CandidateSet(category)

    def retrieve_all(
        self,
        user_input: str,
        categories: Sequence[str] = CANONICAL_CATEGORIES,
        per_category: int = 5,
        timeout: Optional[float] = None,
    ) -> Dict[str, CandidateSet]:
        """Retrieve every category concurrently; failed or late categories come back empty."""
        wanted: List[str] = []
        for raw in categories:
            category = normalize_category(raw)
            if category not in wanted:
                wanted.append(category)

        results: Dict[str, CandidateSet] = {}
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="specmate-retrieve")
        try:
            futures = {
                executor.submit(self.retrieve, user_input, category, per_category): category
                for category in wanted
            }
            done, pending = wait(futures, timeout=timeout)
            for future in done:
                category = futures[future]
                try:
                    results[category] = future.result()
                except Exception as exc:
                    logger.warning("retrieval failed category=%s: %s", category, exc)
            for future in pending:
                future.cancel()
                logger.warning("retrieval timed out category=%s after %.1fs", futures[future], timeout or 0.0)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return {category: results.get(category, CandidateSet(category)) for category in wanted}
