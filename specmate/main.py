# main.py
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

BASE_DIR = Path(__file__).resolve().parent

# Load .env before reading any settings
load_dotenv(BASE_DIR / ".env")

from specmate.app import auth, chat_api
from specmate.app.services.estimate_pipeline import EstimateServiceContext
from specmate.retriever.candidates import CandidateRetriever
from specmate.retriever.vector_store import candidate_from_hit
from specmate.shared.normalize.category import CANONICAL_CATEGORIES, normalize_category
from specmate.store import chat_store


# ---------- Logging ----------
logger = logging.getLogger("specmate")
if not logger.handlers:
    logging.basicConfig(level=logging.INFO)

# ---------- ENV ----------
DEBUG = os.getenv("DEBUG", "0") == "1"
MODEL_PROVIDER      = os.getenv("MODEL_PROVIDER", "openai").lower()
MODEL_ESTIMATE      = os.getenv("MODEL_ESTIMATE", "gpt-4o-mini")
MODEL_CONVERSATION  = os.getenv("MODEL_CONVERSATION", MODEL_ESTIMATE)
OPENAI_API_KEY      = (os.getenv("OPENAI_API_KEY") or "").strip() or None
OLLAMA_BASE_URL     = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
SKIP_LLM_SETUP      = os.getenv("SKIP_LLM_SETUP", "0") == "1"
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
LLM_POLL_INTERVAL   = float(os.getenv("LLM_POLL_INTERVAL", "0.6"))
LLM_MAX_ATTEMPTS    = max(1, int(os.getenv("LLM_MAX_ATTEMPTS", "2")))

QDRANT_URL          = os.getenv("QDRANT_URL", "http://localhost:6333")
QDRANT_API_KEY      = (os.getenv("QDRANT_API_KEY") or "").strip() or None
QDRANT_COLLECTION   = os.getenv("QDRANT_COLLECTION", "specmate_products")
QDRANT_VECTOR_NAME  = (os.getenv("QDRANT_VECTOR_NAME") or "").strip() or None

RETRIEVAL_TIMEOUT_SECONDS   = float(os.getenv("RETRIEVAL_TIMEOUT_SECONDS", "20"))
RAG_CANDIDATES_PER_CATEGORY = max(1, int(os.getenv("RAG_CANDIDATES_PER_CATEGORY", "5")))
HISTORY_WINDOW              = max(0, int(os.getenv("HISTORY_WINDOW", "8")))

DB_URL = os.getenv("DB_URL", "").strip()
if DB_URL:
    chat_store.configure(DB_URL)

_DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://test.local",
]
_origins_env = os.getenv("FRONTEND_ORIGINS", "")
ALLOWED_ORIGINS = (
    [origin.strip() for origin in _origins_env.split(",") if origin.strip()]
    if _origins_env.strip()
    else _DEFAULT_ALLOWED_ORIGINS
)

# ---------- LLM + Vector search ----------
RUNNER = None
RETRIEVER: Optional[CandidateRetriever] = None

if not SKIP_LLM_SETUP:
    from specmate.app.llm import AssistantRunner, create_chat_llm
    from specmate.retriever.vector_store import QdrantVectorSearch

    def _chat_llm(model: str):
        return create_chat_llm(
            provider=MODEL_PROVIDER,
            model=model,
            temperature=0.2,
            top_p=0.9,
            seed=42,
            api_key=OPENAI_API_KEY,
            base_url=OLLAMA_BASE_URL,
            timeout=LLM_TIMEOUT_SECONDS,
        )

    llm = _chat_llm(MODEL_ESTIMATE)
    conversation_llm = _chat_llm(MODEL_CONVERSATION) if MODEL_CONVERSATION != MODEL_ESTIMATE else None
    RUNNER = AssistantRunner(
        llm,
        conversation_llm=conversation_llm,
        timeout=LLM_TIMEOUT_SECONDS,
        poll_interval=LLM_POLL_INTERVAL,
        max_attempts=LLM_MAX_ATTEMPTS,
    )
    RETRIEVER = CandidateRetriever(
        QdrantVectorSearch.from_url(
            QDRANT_URL,
            QDRANT_COLLECTION,
            api_key=QDRANT_API_KEY,
            vector_name=QDRANT_VECTOR_NAME,
        )
    )

SERVICE_CONTEXT = EstimateServiceContext(
    runner=RUNNER,
    retriever=RETRIEVER,
    store=chat_store,
    logger=logging.getLogger("specmate.pipeline"),
    categories=CANONICAL_CATEGORIES,
    per_category=RAG_CANDIDATES_PER_CATEGORY,
    retrieval_timeout=RETRIEVAL_TIMEOUT_SECONDS,
    history_window=HISTORY_WINDOW,
    debug=DEBUG,
)


def _ensure_llm_enabled(component: str) -> None:
    """Guards endpoints when SKIP_LLM_SETUP=1 is active (CI smoke tests)."""
    if SKIP_LLM_SETUP or RETRIEVER is None:
        raise HTTPException(
            status_code=503,
            detail=f"{component} 비활성화 상태입니다 (SKIP_LLM_SETUP=1, 헬스 체크만 동작).",
        )


# ---------- FastAPI ----------

@asynccontextmanager
async def _lifespan(_app: FastAPI):
    chat_store.init_db()
    logger.info("Startup")
    logger.info(
        "  MODEL_PROVIDER=%s  MODEL_ESTIMATE=%s  MODEL_CONVERSATION=%s  SKIP_LLM_SETUP=%s",
        MODEL_PROVIDER,
        MODEL_ESTIMATE,
        MODEL_CONVERSATION,
        SKIP_LLM_SETUP,
    )
    logger.info("  QDRANT_URL=%s  COLLECTION=%s", QDRANT_URL, QDRANT_COLLECTION)
    logger.info("  ALLOWED_ORIGINS=%s", ALLOWED_ORIGINS)
    yield
    if RUNNER is not None:
        RUNNER.close()


app = FastAPI(title="SpecMate Backend", lifespan=_lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.estimate_ctx = SERVICE_CONTEXT
app.include_router(chat_api.router)


# Root (Health)
@app.get("/")
def root():
    return {"ok": True, "service": "specmate-backend", "health": "/api/health", "docs": "/docs"}


@app.get("/api/health")
def api_health():
    return {"ok": True, "time": datetime.now(timezone.utc).isoformat(), "llm": not SKIP_LLM_SETUP}


@app.get("/api/catalog/search")
def api_catalog_search(
    q: str = Query(..., min_length=2, description="검색어 (제품명, 용도)"),
    category: Optional[str] = Query(None, description="카테고리 (cpu, vga, ...)"),
    top_k: int = Query(10, ge=1, le=50),
    user: dict = Depends(auth.get_current_user),
):
    _ensure_llm_enabled("카탈로그 검색")
    canonical = normalize_category(category) if category else None
    try:
        hits = RETRIEVER.search.search(q, top_k, category=canonical)
    except Exception as exc:
        logger.warning("catalog search failed q=%r: %s", q, exc)
        raise HTTPException(status_code=502, detail="제품 검색에 실패했습니다.") from exc
    products = [candidate_from_hit(hit) for hit in hits]
    return {
        "query": q,
        "category": canonical,
        "results": [
            {
                "id": p.id,
                "name": p.name,
                "type": p.category,
                "price": p.price,
                "image": p.image,
                "manufacturer": p.manufacturer,
                "score": p.score,
            }
            for p in products
        ],
    }


# ---------- Local start ----------
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("specmate.main:app", host="0.0.0.0", port=port, reload=False)
