"""User-facing Korean messages for failed or empty turns.

The chat client shows these as regular assistant replies, so every helper
returns short, apologetic plain text and never exposes error details.
"""

from __future__ import annotations

from typing import Iterable

from specmate.shared.normalize.category import category_display_name

LLM_FAILURE_MESSAGES = {
    "server": "OpenAI 서버에서 일시적인 오류가 발생했습니다. 잠시 후 다시 시도해주세요.",
    "start": "AI 요청 생성에 실패했습니다. 잠시 후 다시 시도해주세요.",
    "failed": "AI 처리 중 오류가 발생했습니다. 요청 내용을 확인하고 다시 시도해주세요.",
    "timeout": "AI 응답 대기 시간이 초과되었습니다. 다시 시도해주세요.",
    "malformed": "AI 응답을 이해하지 못했습니다. 질문을 조금 바꿔서 다시 시도해주세요.",
}
DEFAULT_FAILURE_MESSAGE = "죄송합니다. 요청 처리 중 오류가 발생했습니다. 잠시 후 다시 시도해주세요."


def _bullet_list(items: Iterable[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def llm_failure_message(kind: str | None) -> str:
    """Apology matching the kind of language model failure."""
    return LLM_FAILURE_MESSAGES.get((kind or "").strip().lower(), DEFAULT_FAILURE_MESSAGE)


def no_estimate_data_message(missing_categories: list[str]) -> str:
    """Reply when a build request produced no usable components."""
    labels = [category_display_name(c) for c in missing_categories if c and c.strip()]
    if not labels:
        return (
            "죄송합니다. 요청하신 조건에 맞는 제품 정보를 찾지 못해 견적을 만들 수 없었습니다.\n"
            "예산이나 용도를 조금 더 알려주시면 다시 찾아볼게요."
        )
    return (
        "죄송합니다. 아래 부품의 제품 정보를 찾지 못해 견적을 완성하지 못했습니다.\n"
        f"{_bullet_list(labels)}\n\n"
        "예산이나 용도를 조금 더 알려주시면 다시 찾아볼게요."
    )


def retrieval_empty_message() -> str:
    return (
        "사용자의 요청에 맞는 제품을 검색했지만 결과를 찾지 못했습니다.\n"
        "잠시 후 다시 시도하거나 다른 조건으로 요청해주세요."
    )


def storage_failure_message() -> str:
    """Reply when the turn could not be saved; nothing of it was stored."""
    return (
        "죄송합니다. 대화 내용을 저장하는 중 문제가 발생해 이번 요청을 처리하지 못했습니다.\n"
        "잠시 후 다시 시도해주세요."
    )
