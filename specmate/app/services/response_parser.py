"""Turn a raw language model reply into a draft estimate or a plain message.

The model is asked for JSON but regularly answers with fenced JSON, a JSON
string, a numbered Markdown list or plain prose. :func:`parse_reply` tries a
strict JSON decode first, then a line-oriented Markdown reading, and reports
anything without components as :class:`Freeform`. It never raises.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from specmate.app.models import (
    DEFAULT_BUILD_NAME,
    EstimateComponent,
    EstimateResult,
    Freeform,
    MatchConfidence,
    ParseOutcome,
    Structured,
    parse_price,
)
from specmate.app.utils import clean_json_string, decode_json_object, first_present
from specmate.shared.normalize.category import is_canonical, normalize_category
from specmate.shared.normalize.text import collapse_whitespace

logger = logging.getLogger("specmate.parser")

MAX_COMPONENT_PRICE = 3_500_000

COMPONENT_KEYS = ("components", "products", "parts", "items")
CATEGORY_KEYS = ("type", "category", "product_type")
NAME_KEYS = ("name", "matched_name", "product_name", "ai_name")
IMAGE_KEYS = ("image", "image_url", "img")
DESCRIPTION_KEYS = ("description", "desc", "reason")
BUILD_NAME_KEYS = ("build_name", "buildName", "title")
BUILD_DESCRIPTION_KEYS = ("build_description", "buildDescription", "description", "summary")
TOTAL_KEYS = ("total", "total_price", "totalPrice")
FOLLOW_UP_KEYS = ("another_input_text", "follow_up_questions", "followUpQuestions")
TEXT_KEYS = ("text", "message", "content", "answer")
CONVERSATION_TYPES = {"conversation", "chat", "message", "text"}

_RE_HEADER = re.compile(
    r"^\s*\d+\s*[.)]\s*\*\*(?P<category>[^*]+?)\*\*\s*[:：\-–]?\s*(?P<rest>.*)$"
)
_RE_BOLD = re.compile(r"\*\*(?P<inner>[^*]+?)\*\*")
_RE_LABEL = re.compile(r"^[\s\-*•·]*(?P<label>[^:：]{1,20}?)\s*[:：]\s*(?P<value>.*)$")
_RE_HEADING = re.compile(r"^#+\s*(?P<title>.+)$")

_PRICE_LABELS = ("가격", "price", "금액")
_DESCRIPTION_LABELS = ("설명", "description", "이유", "특징")
_TOTAL_LABELS = ("총 합계", "합계", "총액", "총 가격", "total")


def clamp_price(price: int, *, name: str = "") -> int:
    if price > MAX_COMPONENT_PRICE:
        logger.warning("Price %d for %r exceeds %d, clamped", price, name, MAX_COMPONENT_PRICE)
        return MAX_COMPONENT_PRICE
    return price


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "\n".join(_text(item) for item in value if _text(item))
    return str(value).strip()


def _string_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items = [line.strip(" -•\t") for line in value.splitlines()]
    elif isinstance(value, (list, tuple)):
        items = [_text(item) for item in value]
    else:
        items = [_text(value)]
    return tuple(item for item in items if item)


def _component_from_json(item: Any) -> Optional[EstimateComponent]:
    if not isinstance(item, dict):
        return None
    detail = item.get("detail") if isinstance(item.get("detail"), dict) else {}
    name = collapse_whitespace(_text(first_present(item, NAME_KEYS, "")))
    category = normalize_category(first_present(item, CATEGORY_KEYS))
    if not name and not item.get("type") and not item.get("category"):
        return None
    price_raw = first_present(item, ("price",))
    if price_raw is None:
        price_raw = detail.get("price")
    image = first_present(item, IMAGE_KEYS) or first_present(detail, IMAGE_KEYS)
    return EstimateComponent(
        category=category,
        raw_name=name,
        name=name,
        price=clamp_price(parse_price(price_raw), name=name),
        description=_text(first_present(item, DESCRIPTION_KEYS, "")),
        image=str(image) if image else None,
        confidence=MatchConfidence.UNAVAILABLE,
    )


def _outcome_from_json(obj: Dict[str, Any], raw: str) -> Optional[ParseOutcome]:
    kind = str(obj.get("type") or "").strip().lower()
    data = obj.get("data")
    if kind in CONVERSATION_TYPES:
        if isinstance(data, dict):
            message = _text(first_present(data, TEXT_KEYS, ""))
        else:
            message = _text(data) or _text(first_present(obj, TEXT_KEYS, ""))
        return Freeform(message or raw)
    if isinstance(data, dict) and (kind == "estimate" or any(key in data for key in COMPONENT_KEYS)):
        obj = data

    items = first_present(obj, COMPONENT_KEYS)
    if not isinstance(items, list):
        message = _text(first_present(obj, TEXT_KEYS, ""))
        return Freeform(message) if message else None

    components = [c for c in (_component_from_json(item) for item in items) if c is not None]
    if not components:
        message = _text(first_present(obj, TEXT_KEYS, ""))
        return Freeform(message or raw)

    total_raw = first_present(obj, TOTAL_KEYS)
    estimate = EstimateResult(
        build_name=_text(first_present(obj, BUILD_NAME_KEYS, "")) or DEFAULT_BUILD_NAME,
        build_description=_text(first_present(obj, BUILD_DESCRIPTION_KEYS, "")),
        components=tuple(components),
        notes=_text(obj.get("notes")),
        follow_up_questions=_string_list(first_present(obj, FOLLOW_UP_KEYS)),
        declared_total=parse_price(total_raw) if total_raw is not None else None,
    )
    return Structured(estimate)


def _strip_markup(text: str) -> str:
    return text.replace("**", "").replace("__", "").strip()


def _split_label(line: str) -> Optional[Tuple[str, str]]:
    match = _RE_LABEL.match(_strip_markup(line))
    if not match:
        return None
    return match.group("label").strip().lower(), match.group("value").strip()


def _parse_header(line: str) -> Optional[Tuple[str, str]]:
    match = _RE_HEADER.match(line)
    if not match:
        return None
    category = normalize_category(match.group("category").strip(" :："))
    if not is_canonical(category):
        # numbered questions or notes ("1. **용도**: ...") are not components
        return None
    rest = match.group("rest").strip()
    bold = _RE_BOLD.search(rest)
    if bold:
        name = bold.group("inner")
    else:
        name = rest.split(" - ")[0].split(" (")[0]
    name = collapse_whitespace(_strip_markup(name).strip(" :："))
    if not category or not name:
        return None
    return category, name


def parse_markdown(text: str) -> Optional[EstimateResult]:
    """Line-oriented reading of ``1. **CPU**: **Ryzen 5 5600X**`` style replies."""

    components: List[EstimateComponent] = []
    current: Optional[Dict[str, Any]] = None
    build_name = ""
    build_description = ""
    declared_total: Optional[int] = None

    def flush() -> None:
        if current is None:
            return
        name = current["name"]
        components.append(
            EstimateComponent(
                category=current["category"],
                raw_name=name,
                name=name,
                price=clamp_price(current["price"], name=name),
                description=current["description"],
            )
        )

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        header = _parse_header(line)
        if header is not None:
            flush()
            current = {"category": header[0], "name": header[1], "price": 0, "description": ""}
            continue

        heading = _RE_HEADING.match(line)
        if heading:
            if not build_name:
                build_name = _strip_markup(heading.group("title"))
            continue

        labelled = _split_label(line)
        label, value = labelled if labelled else ("", "")
        lowered = _strip_markup(line).lower()
        if any(token in label for token in _TOTAL_LABELS) or (not labelled and any(t in lowered for t in _TOTAL_LABELS)):
            total = parse_price(value or lowered)
            if total:
                declared_total = total
            continue

        if current is None:
            # first plain sentence before the component list describes the build
            if not build_description and not components and not line.startswith(("*", "-", "•", "|")):
                build_description = _strip_markup(line)
            continue
        if label in _PRICE_LABELS:
            current["price"] = parse_price(value)
        elif any(token in label for token in _DESCRIPTION_LABELS):
            current["description"] = value

    flush()
    if not components:
        return None
    return EstimateResult(
        build_name=build_name or DEFAULT_BUILD_NAME,
        build_description=build_description,
        components=tuple(components),
        declared_total=declared_total,
    )


def parse_reply(raw: Optional[str]) -> ParseOutcome:
    """Parse a model reply; anything without components comes back as :class:`Freeform`."""

    text = raw if isinstance(raw, str) else _text(raw)
    try:
        if not text.strip():
            return Freeform(text)
        decoded = decode_json_object(text)
        if decoded is not None:
            outcome = _outcome_from_json(decoded, text)
            if outcome is not None:
                _log_outcome(outcome, "json")
                return outcome
        estimate = parse_markdown(clean_json_string(text))
        if estimate is None:
            logger.info("reply carries no components, passing through as conversation")
            return Freeform(text)
        outcome = Structured(estimate)
        _log_outcome(outcome, "markdown")
        return outcome
    except Exception:
        logger.exception("reply parsing failed, passing through as conversation")
        return Freeform(text)


def _log_outcome(outcome: ParseOutcome, source: str) -> None:
    if isinstance(outcome, Structured):
        logger.info(
            "parsed %s estimate: %d components, total=%d",
            source,
            len(outcome.estimate.components),
            outcome.estimate.total_price,
        )
    else:
        logger.info("parsed %s conversation reply (%d chars)", source, len(outcome.message))
