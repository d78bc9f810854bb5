"""Value types flowing through the estimate pipeline.

Everything here is immutable: a validated estimate is never edited in place,
a new :class:`EstimateResult` supersedes the previous one. Prices are plain
non-negative ``int`` values in KRW; :func:`parse_price` is the single place
where loosely typed price input (strings, floats, nested payloads) is turned
into that form.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from specmate.shared.normalize.category import CANONICAL_CATEGORIES

logger = logging.getLogger("specmate.models")

DEFAULT_BUILD_NAME = "AI 추천 견적"
NO_DATA_NAME = "데이터 없음"
PLACEHOLDER_NAMES = frozenset(
    {"", "-", "미선택", "데이터 없음", "데이터없음", "없음", "n/a", "na", "none", "null", "unknown"}
)
PRICE_PENDING_MARKERS = (
    "가격비교예정",
    "가격비교 예정",
    "가격 비교 예정",
    "가격정보없음",
    "가격 정보 없음",
    "가격문의",
    "price pending",
)

_RE_AMOUNT = re.compile(r"(\d+(?:\.\d+)?)\s*(만)?")


class MatchConfidence(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    FALLBACK = "fallback"
    UNAVAILABLE = "unavailable"


def is_price_pending(value: Any) -> bool:
    """True when *value* carries one of the catalog's "price not yet known" markers."""
    if not isinstance(value, str):
        return False
    lowered = value.strip().lower()
    return any(marker in lowered for marker in PRICE_PENDING_MARKERS)


def parse_price(value: Any) -> int:
    """Coerce *value* into a non-negative integer price.

    Accepts ints, floats, numeric strings with separators and currency
    (``"180,000원"``, ``"₩1,200,000"``, ``"45만원"``) and mappings that hold a
    ``price`` entry. Anything else, including negative numbers, becomes ``0``
    and is logged instead of raising.
    """

    if value is None:
        return 0
    if isinstance(value, Mapping):
        return parse_price(value.get("price"))
    if isinstance(value, bool):
        logger.warning("Unparseable price %r coerced to 0", value)
        return 0
    if isinstance(value, int):
        if value < 0:
            logger.warning("Negative price %r coerced to 0", value)
            return 0
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value) or value < 0:
            logger.warning("Unparseable price %r coerced to 0", value)
            return 0
        return int(round(value))

    text = str(value).strip()
    if not text or is_price_pending(text):
        return 0
    cleaned = text.replace(",", "").replace(" ", "")
    if cleaned.startswith("-"):
        logger.warning("Negative price %r coerced to 0", value)
        return 0
    match = _RE_AMOUNT.search(cleaned)
    if not match:
        logger.warning("Unparseable price %r coerced to 0", value)
        return 0
    amount = float(match.group(1))
    if match.group(2):
        amount *= 10_000
    return int(round(amount))


def optional_price(value: Any) -> Optional[int]:
    """Catalog-side variant of :func:`parse_price`: absent, pending or zero prices yield ``None``."""
    if value is None or is_price_pending(value):
        return None
    price = parse_price(value)
    return price or None


def is_placeholder_name(name: Optional[str]) -> bool:
    return (name or "").strip().lower() in PLACEHOLDER_NAMES


@dataclass(frozen=True)
class CandidateProduct:
    id: str
    name: str
    category: str
    manufacturer: Optional[str] = None
    price: Optional[int] = None
    image: Optional[str] = None
    popularity_rank: Optional[int] = None
    score: float = 0.0

    @property
    def has_price(self) -> bool:
        return bool(self.price and self.price > 0)

    def to_context_record(self) -> Dict[str, Any]:
        return {
            "type": self.category,
            "name": self.name,
            "detail": {"price": str(self.price or 0), "image": self.image or ""},
        }


@dataclass(frozen=True)
class CandidateSet:
    """Ordered candidates for one category; ``fallback`` marks broadened retrieval."""

    category: str
    products: Tuple[CandidateProduct, ...] = ()
    fallback: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.products

    def __len__(self) -> int:
        return len(self.products)


@dataclass(frozen=True)
class EstimateComponent:
    category: str
    raw_name: str
    name: str
    price: int = 0
    description: str = ""
    image: Optional[str] = None
    confidence: MatchConfidence = MatchConfidence.UNAVAILABLE

    @property
    def is_substantive(self) -> bool:
        return not is_placeholder_name(self.name) and self.price > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.category,
            "name": self.name,
            "ai_name": self.raw_name,
            "price": self.price,
            "description": self.description,
            "image": self.image,
            "confidence": self.confidence.value,
        }


@dataclass(frozen=True)
class EstimateResult:
    build_name: str = DEFAULT_BUILD_NAME
    build_description: str = ""
    components: Tuple[EstimateComponent, ...] = ()
    notes: str = ""
    follow_up_questions: Tuple[str, ...] = ()
    declared_total: Optional[int] = None
    estimate_id: Optional[int] = None

    @property
    def total_price(self) -> int:
        return sum(component.price for component in self.components)

    @property
    def is_empty(self) -> bool:
        return not self.components

    @property
    def is_all_defaults(self) -> bool:
        return not any(component.is_substantive for component in self.components)

    @property
    def is_persistable(self) -> bool:
        return not self.is_empty and not self.is_all_defaults

    def with_components(self, components: Sequence[EstimateComponent]) -> "EstimateResult":
        return replace(self, components=tuple(components))

    def categories(self) -> List[str]:
        return [component.category for component in self.components]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estimate_id": self.estimate_id,
            "build_name": self.build_name,
            "build_description": self.build_description,
            "components": [component.to_dict() for component in self.components],
            "total": self.total_price,
            "notes": self.notes,
            "another_input_text": list(self.follow_up_questions),
        }


@dataclass(frozen=True)
class Structured:
    estimate: EstimateResult


@dataclass(frozen=True)
class Freeform:
    message: str


ParseOutcome = Union[Structured, Freeform]


@dataclass(frozen=True)
class RagContext:
    """Per-turn grounding bundle: the candidates and their rendered text."""

    candidates: Dict[str, CandidateSet]
    text: str

    def pool(self) -> Dict[str, List[CandidateProduct]]:
        return {category: list(cset.products) for category, cset in self.candidates.items()}

    @property
    def missing_categories(self) -> Tuple[str, ...]:
        return tuple(
            category
            for category in CANONICAL_CATEGORIES
            if category not in self.candidates or self.candidates[category].is_empty
        )

    @property
    def fallback_categories(self) -> Tuple[str, ...]:
        return tuple(
            category
            for category in CANONICAL_CATEGORIES
            if category in self.candidates and self.candidates[category].fallback
            and not self.candidates[category].is_empty
        )


@dataclass(frozen=True)
class TurnOutcome:
    kind: str  # "estimate" | "conversation"
    message: str
    intent: str
    estimate: Optional[EstimateResult] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.kind == "estimate" and self.estimate is not None:
            return {"type": "estimate", "intent": self.intent, "message": self.message, "data": self.estimate.to_dict()}
        return {"type": "conversation", "intent": self.intent, "data": {"text": self.message}}
