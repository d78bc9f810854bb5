import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from textwrap import dedent
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

logger = logging.getLogger("specmate.llm")

MODE_ESTIMATE = "estimate"
MODE_RECONFIGURE = "reconfigure"
MODE_CONVERSATION = "conversation"

RUN_TIMEOUT_SECONDS = 60.0
POLL_INTERVAL_SECONDS = 0.6


def create_chat_llm(
    provider: str,
    model: str,
    temperature: float,
    top_p: float = 1.0,
    api_key: str | None = None,
    base_url: str | None = None,
    seed: int | None = None,
    timeout: float | None = None,
):
    provider = provider.lower()
    if provider == "openai":
        if not api_key:
            raise ValueError("OPENAI_API_KEY가 없습니다. 환경 변수로 설정해주세요.")
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(
            model=model,
            temperature=temperature,
            api_key=api_key,
            seed=seed,
            timeout=timeout,
            max_retries=0,
        )
    elif provider == "ollama":
        from langchain_ollama import ChatOllama
        return ChatOllama(model=model, temperature=temperature, top_p=top_p, base_url=base_url, seed=seed)
    else:
        raise ValueError(f"Unsupported MODEL_PROVIDER: {provider}")


ESTIMATE_SYSTEM_PROMPT = dedent(
    """\
    당신은 "SpecMate"의 PC 견적 구성 전문가입니다.
    사용자 메시지에 포함된 RAG 데이터의 제품만 사용해 사용자의 요구(예산, 용도, 감성)에 맞는 PC 견적을 작성하세요.

    규칙:
    - name, price, image는 RAG 데이터의 값을 그대로 복사하세요. 절대 바꾸거나 새 제품을 만들지 마세요.
    - components[].type은 case, cpu, vga, ram, ssd, power, mainboard, cooler, hdd 중 하나(소문자 영어)만 사용하세요.
    - "데이터 없음"으로 표시된 카테고리는 name "데이터 없음", price "0"으로만 채우세요.
    - description에는 해당 부품을 고른 이유를 사용자 요구에 맞춰 한두 문장으로 쓰세요.
    - build_name은 견적을 한 줄로 요약한 이름, build_description은 견적의 목적과 특징입니다.
    - notes에는 업그레이드/다운그레이드 옵션이나 주의할 점을 한 줄 이상 쓰세요.
    - another_input_text에는 사용자가 이어서 물어볼 만한 질문을 3~5개 넣으세요.
    - JSON 이외의 텍스트는 출력하지 마세요.

    출력 형식:
    {{
      "type": "estimate",
      "data": {{
        "build_name": "...",
        "build_description": "...",
        "components": [
          {{"type": "cpu", "name": "...", "description": "...", "detail": {{"price": "180000", "image": "..."}}}}
        ],
        "total": "...",
        "notes": "...",
        "another_input_text": ["..."]
      }}
    }}
    """
)

CONVERSATION_SYSTEM_PROMPT = dedent(
    """\
    당신은 "SpecMate"의 친절한 PC 하드웨어 상담사입니다.
    PC 부품, 호환성, 성능, 조립에 관한 질문에 한국어로 짧고 정확하게 답하세요.
    견적이 필요해 보이면 예산과 용도를 물어보고, 견적 요청을 하면 추천해드릴 수 있다고 안내하세요.
    제품 가격은 추측하지 마세요.
    """
)


def build_prompts() -> Dict[str, ChatPromptTemplate]:
    """Prompt per mode; every prompt takes ``history`` and ``input``."""
    estimate = ChatPromptTemplate.from_messages(
        [
            ("system", ESTIMATE_SYSTEM_PROMPT),
            MessagesPlaceholder(variable_name="history"),
            ("human", "{input}"),
        ]
    )
    conversation = ChatPromptTemplate.from_messages(
        [
            ("system", CONVERSATION_SYSTEM_PROMPT),
            MessagesPlaceholder(variable_name="history"),
            ("human", "{input}"),
        ]
    )
    return {
        MODE_ESTIMATE: estimate,
        MODE_RECONFIGURE: estimate,
        MODE_CONVERSATION: conversation,
    }


def compose_user_prompt(
    user_message: str,
    grounding_context: Optional[str] = None,
    *,
    mode: str = MODE_ESTIMATE,
    previous: Optional[Dict[str, Any]] = None,
) -> str:
    """Tag the user's text with the request kind and attach the grounding data."""
    if mode == MODE_CONVERSATION:
        return f"[일반 대화/설명 요청]\n입력: {user_message}"
    parts = []
    if mode == MODE_RECONFIGURE:
        parts.append(f"[SpecMate 견적 재구성]\n입력: {user_message}")
        if previous:
            parts.append("이전 견적:\n" + json.dumps(previous, ensure_ascii=False, indent=2))
    else:
        parts.append(f"[SpecMate 견적 생성]\n입력: {user_message}")
    parts.append("RAG 데이터:\n" + (grounding_context or "(검색 결과 없음)"))
    return "\n\n".join(parts)


HistoryItem = Union[BaseMessage, Tuple[str, str], Dict[str, str]]


def to_messages(history: Optional[Iterable[HistoryItem]]) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    for item in history or []:
        if isinstance(item, BaseMessage):
            messages.append(item)
            continue
        if isinstance(item, dict):
            role, content = item.get("role", ""), item.get("content", "")
        else:
            role, content = item
        if not content:
            continue
        if role in ("assistant", "ai"):
            messages.append(AIMessage(content=content))
        else:
            messages.append(HumanMessage(content=content))
    return messages


class AssistantRunError(RuntimeError):
    """Language model turn that did not produce a usable reply.

    ``kind`` is one of ``start``, ``server``, ``failed``, ``timeout`` or ``malformed``.
    """

    def __init__(self, kind: str, detail: str = "") -> None:
        super().__init__(f"{kind}: {detail}" if detail else kind)
        self.kind = kind
        self.detail = detail


def reply_text(reply: Any) -> str:
    content = getattr(reply, "content", reply)
    if isinstance(content, list):
        chunks = []
        for part in content:
            if isinstance(part, str):
                chunks.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                chunks.append(str(part.get("text") or ""))
        content = "".join(chunks)
    if not isinstance(content, str) or not content.strip():
        raise AssistantRunError("malformed", f"unexpected reply payload {type(reply).__name__}")
    return content.strip()


def _failure_kind(exc: BaseException) -> str:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    if isinstance(status, int) and status >= 500:
        return "server"
    return "failed"


class AssistantRunner:
    """Runs one language model turn in a worker thread and polls it until a deadline.

    Failed attempts are retried up to ``max_attempts``; a timeout ends the turn
    at once so the caller's wait stays bounded.
    Conversation turns use ``conversation_llm`` when one is given.
    """

    def __init__(
        self,
        llm: Any,
        *,
        prompts: Optional[Dict[str, ChatPromptTemplate]] = None,
        timeout: float = RUN_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_attempts: int = 2,
        conversation_llm: Any = None,
        max_workers: int = 4,
    ) -> None:
        self.llm = llm
        self.conversation_llm = conversation_llm or llm
        self.prompts = prompts or build_prompts()
        self.timeout = timeout
        self.poll_interval = max(0.01, poll_interval)
        self.max_attempts = max(1, max_attempts)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="specmate-llm")

    def send(
        self,
        history: Optional[Sequence[HistoryItem]],
        user_message: str,
        grounding_context: Optional[str] = None,
        *,
        mode: str = MODE_ESTIMATE,
        previous: Optional[Dict[str, Any]] = None,
    ) -> str:
        prompt = self.prompts.get(mode)
        if prompt is None:
            raise AssistantRunError("start", f"unknown mode {mode!r}")
        try:
            messages = prompt.format_messages(
                history=to_messages(history),
                input=compose_user_prompt(user_message, grounding_context, mode=mode, previous=previous),
            )
        except (KeyError, ValueError) as exc:
            raise AssistantRunError("start", str(exc)) from exc

        llm = self.conversation_llm if mode == MODE_CONVERSATION else self.llm
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                future = self._executor.submit(llm.invoke, messages)
            except RuntimeError as exc:
                raise AssistantRunError("start", str(exc)) from exc

            started = time.monotonic()
            deadline = started + self.timeout
            while not future.done():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    future.cancel()
                    logger.warning("LLM run timed out after %.1fs (mode=%s)", self.timeout, mode)
                    raise AssistantRunError("timeout", f"no reply after {self.timeout:.0f}s")
                wait([future], timeout=min(self.poll_interval, remaining))

            exc = future.exception()
            if exc is None:
                text = reply_text(future.result())
                logger.info(
                    "LLM run ok mode=%s attempt=%d elapsed=%.2fs chars=%d",
                    mode,
                    attempt,
                    time.monotonic() - started,
                    len(text),
                )
                return text
            last_error = exc
            logger.warning("LLM run failed mode=%s attempt=%d/%d: %s", mode, attempt, self.max_attempts, exc)

        kind = _failure_kind(last_error) if last_error is not None else "failed"
        raise AssistantRunError(kind, str(last_error or ""))

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
