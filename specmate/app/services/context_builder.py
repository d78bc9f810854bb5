from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Mapping, Sequence, Union

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from specmate.app.models import NO_DATA_NAME, CandidateProduct, CandidateSet, RagContext
from specmate.shared.normalize.category import (
    CANONICAL_CATEGORIES,
    category_display_name,
    is_canonical,
    normalize_category,
)

logger = logging.getLogger("specmate.pipeline")

TEMPLATES_DIR = Path(__file__).resolve().parents[2] / "templates"
RAG_TEMPLATE = "rag_context.txt.j2"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=StrictUndefined,
)
_env.filters["record"] = lambda value: json.dumps(value, ensure_ascii=False)


def _as_candidate_set(category: str, value: Union[CandidateSet, Sequence[CandidateProduct], None]) -> CandidateSet:
    if value is None:
        return CandidateSet(category)
    if isinstance(value, CandidateSet):
        return CandidateSet(category, tuple(value.products), value.fallback)
    return CandidateSet(category, tuple(value))


def build_rag_context(
    candidates_by_category: Mapping[str, Union[CandidateSet, Sequence[CandidateProduct], None]],
) -> RagContext:
    """Render the grounding context handed to the language model.

    Every canonical category gets a block, either one record per candidate or
    an explicit "데이터 없음" placeholder, followed by the copy-verbatim rules.
    Output depends only on the input.
    """

    merged: Dict[str, CandidateSet] = {}
    for raw_category, value in candidates_by_category.items():
        category = normalize_category(raw_category)
        if not is_canonical(category):
            logger.warning("Ignoring candidates for non-canonical category %r", raw_category)
            continue
        cset = _as_candidate_set(category, value)
        existing = merged.get(category)
        if existing is not None:
            cset = CandidateSet(category, existing.products + cset.products, existing.fallback or cset.fallback)
        merged[category] = cset

    candidates: Dict[str, CandidateSet] = {}
    blocks = []
    for category in CANONICAL_CATEGORIES:
        cset = merged.get(category) or CandidateSet(category)
        candidates[category] = cset
        blocks.append(
            {
                "category": category,
                "label": category_display_name(category),
                "products": list(cset.products),
                "fallback": cset.fallback,
            }
        )

    missing = [category for category in CANONICAL_CATEGORIES if candidates[category].is_empty]
    for block in blocks:
        block["placeholder"] = {
            "type": block["category"],
            "name": NO_DATA_NAME,
            "detail": {"price": "0", "image": ""},
        }
    text = _env.get_template(RAG_TEMPLATE).render(
        blocks=blocks,
        categories=CANONICAL_CATEGORIES,
        missing=missing,
    )
    if missing:
        logger.warning("RAG context without candidates for: %s", ", ".join(missing))
    return RagContext(candidates=candidates, text=text)
