"""Estimate pipeline: one chat turn from user text to a validated, persisted reply.

``submit_user_turn`` classifies the message, and for build requests retrieves
catalog candidates per category, grounds the language model on them, parses
its reply and reconciles the draft against the candidates before storing the
turn. Every per-turn value (candidates, rendered context, draft) is passed
along explicitly; nothing is kept on the context between turns.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from specmate.app.error_messages import (
    llm_failure_message,
    no_estimate_data_message,
    retrieval_empty_message,
    storage_failure_message,
)
from specmate.app.llm import MODE_CONVERSATION, MODE_ESTIMATE, MODE_RECONFIGURE, AssistantRunError
from specmate.app.models import EstimateResult, Freeform, RagContext, TurnOutcome
from specmate.app.services.context_builder import build_rag_context
from specmate.app.services.estimate_validator import validate_estimate
from specmate.app.services.response_parser import parse_reply
from specmate.shared.normalize.category import CANONICAL_CATEGORIES
from specmate.store import chat_store

RECONFIGURE_RE = re.compile(
    r"다시|재구성|수정|바꿔|바꾸|변경|업그레이드|다운그레이드|낮춰|올려"
    r"|\b(?:again|modify|change|upgrade|downgrade|rebuild|swap)\b",
    re.IGNORECASE,
)
ESTIMATE_RE = re.compile(
    r"견적|추천|조립|컴퓨터|본체|사양|(?<![a-z])pc(?![a-z])"
    r"|\b(?:build|estimate|recommend|quote)\b",
    re.IGNORECASE,
)


class ServiceError(Exception):
    """Domain specific error that can be translated to HTTP responses."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class Intent(str, Enum):
    CONVERSATION = "conversation"
    BUILD_NEW = "build_new"
    RECONFIGURE = "reconfigure"


@dataclass
class EstimateServiceContext:
    runner: Any | None
    retriever: Any | None
    store: Any = chat_store
    logger: Any = field(default_factory=lambda: logging.getLogger("specmate.pipeline"))
    categories: Tuple[str, ...] = CANONICAL_CATEGORIES
    per_category: int = 5
    retrieval_timeout: float = 20.0
    history_window: int = 8
    debug: bool = False


def classify_intent(text: str, has_prior_estimate: bool = False) -> Intent:
    """Keyword heuristic: reconfiguration words need a prior estimate, build words start a new one."""
    text = text or ""
    if RECONFIGURE_RE.search(text):
        return Intent.RECONFIGURE if has_prior_estimate else Intent.BUILD_NEW
    if ESTIMATE_RE.search(text):
        return Intent.BUILD_NEW
    return Intent.CONVERSATION


def summarize_estimate(estimate: EstimateResult) -> Dict[str, Any]:
    return {
        "title": estimate.build_name,
        "description": estimate.build_description,
        "totalPrice": estimate.total_price,
        "components": [
            {"type": c.category, "name": c.name, "price": c.price} for c in estimate.components
        ],
    }


def estimate_reply_text(estimate: EstimateResult) -> str:
    lines = [estimate.build_name]
    if estimate.build_description:
        lines.append(estimate.build_description)
    for component in estimate.components:
        lines.append(f"- {component.category}: {component.name} ({component.price:,}원)")
    lines.append(f"총 합계: {estimate.total_price:,}원")
    return "\n".join(lines)


def _require_session(session_id: int, ctx: EstimateServiceContext) -> Dict[str, Any]:
    session = ctx.store.get_session(session_id)
    if session is None:
        raise ServiceError("채팅 세션을 찾을 수 없습니다.", status_code=404)
    return session


def _history(session_id: int, ctx: EstimateServiceContext) -> List[Tuple[str, str]]:
    messages = ctx.store.list_messages(session_id, limit=ctx.history_window)
    return [(m["role"], m["content"]) for m in messages]


def _estimate_turn(
    message: str,
    intent: Intent,
    previous: Optional[EstimateResult],
    history: List[Tuple[str, str]],
    ctx: EstimateServiceContext,
) -> TurnOutcome:
    query = message
    previous_summary = None
    if intent is Intent.RECONFIGURE and previous is not None:
        query = " ".join(p for p in (previous.build_name, previous.build_description, message) if p)
        previous_summary = summarize_estimate(previous)

    candidates = ctx.retriever.retrieve_all(
        query,
        ctx.categories,
        per_category=ctx.per_category,
        timeout=ctx.retrieval_timeout,
    )
    rag: RagContext = build_rag_context(candidates)
    if all(cset.is_empty for cset in rag.candidates.values()):
        ctx.logger.warning("no catalog candidates for any category, skipping LLM call")
        return TurnOutcome("conversation", retrieval_empty_message(), intent.value)
    if rag.fallback_categories:
        ctx.logger.info("fallback candidates for: %s", ", ".join(rag.fallback_categories))

    mode = MODE_RECONFIGURE if previous_summary else MODE_ESTIMATE
    reply = ctx.runner.send(history, message, rag.text, mode=mode, previous=previous_summary)
    if ctx.debug:
        ctx.logger.info("raw LLM reply: %s", reply)

    parsed = parse_reply(reply)
    if isinstance(parsed, Freeform):
        return TurnOutcome("conversation", parsed.message, intent.value)

    validated = validate_estimate(parsed.estimate, rag.pool())
    if not validated.is_persistable:
        ctx.logger.warning(
            "estimate not persistable (components=%d), replying conversationally",
            len(validated.components),
        )
        text = validated.notes or no_estimate_data_message(list(rag.missing_categories))
        return TurnOutcome("conversation", text, intent.value)
    return TurnOutcome("estimate", estimate_reply_text(validated), intent.value, validated)


def submit_user_turn(*, session_id: int, message: str, ctx: EstimateServiceContext) -> TurnOutcome:
    message = (message or "").strip()
    if not message:
        raise ServiceError("message required", status_code=400)
    _require_session(session_id, ctx)
    if ctx.runner is None or ctx.retriever is None:
        raise ServiceError("AI 견적 기능이 현재 비활성화되어 있습니다.", status_code=503)

    previous = ctx.store.get_latest_estimate(session_id)
    intent = classify_intent(message, has_prior_estimate=previous is not None)
    history = _history(session_id, ctx)
    ctx.logger.info("turn session=%s intent=%s", session_id, intent.value)

    try:
        if intent is Intent.CONVERSATION:
            reply = ctx.runner.send(history, message, mode=MODE_CONVERSATION)
            outcome = TurnOutcome("conversation", reply, intent.value)
        else:
            outcome = _estimate_turn(message, intent, previous, history, ctx)
    except AssistantRunError as exc:
        ctx.logger.warning("LLM turn failed session=%s kind=%s: %s", session_id, exc.kind, exc.detail)
        outcome = TurnOutcome("conversation", llm_failure_message(exc.kind), intent.value)

    estimate = outcome.estimate if outcome.kind == "estimate" else None
    try:
        record = ctx.store.record_turn(session_id, message, outcome.message, estimate)
    except Exception:
        # the store rolled the turn back; answer without an estimate
        ctx.logger.exception("turn could not be stored session=%s", session_id)
        return TurnOutcome("conversation", storage_failure_message(), intent.value)
    if estimate is not None:
        outcome = replace(outcome, estimate=replace(estimate, estimate_id=record.estimate_id))
    return outcome


def get_latest_estimate(*, session_id: int, ctx: EstimateServiceContext) -> Optional[Dict[str, Any]]:
    _require_session(session_id, ctx)
    estimate = ctx.store.get_latest_estimate(session_id)
    return estimate.to_dict() if estimate is not None else None


def create_session(*, title: str = "", user_id: Optional[str] = None, ctx: EstimateServiceContext) -> Dict[str, Any]:
    return ctx.store.create_session(title=title, user_id=user_id)


def list_messages(*, session_id: int, ctx: EstimateServiceContext) -> List[Dict[str, Any]]:
    _require_session(session_id, ctx)
    return ctx.store.list_messages(session_id)
