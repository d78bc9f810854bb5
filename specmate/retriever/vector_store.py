from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from qdrant_client import QdrantClient
from qdrant_client.models import FieldCondition, Filter, MatchValue

from specmate.app.models import CandidateProduct, is_price_pending, optional_price
from specmate.shared.normalize.category import UNKNOWN, load_category_table
from specmate.shared.normalize.text import normalize_label

logger = logging.getLogger("specmate.retriever")

EMBED_MODEL = os.getenv("EMBED_MODEL", "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2")
EMBED_ATTEMPTS = 3
EMBED_BACKOFF_SECONDS = 1.0

_EMBEDDERS: Dict[str, Any] = {}
_EMBEDDER_LOCK = threading.Lock()


@dataclass(frozen=True)
class SearchHit:
    id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


class VectorSearch(Protocol):
    """Similarity search over the product catalog.

    Empty results and raised errors are both valid outcomes; callers isolate
    them per category.
    """

    def search(self, query_text: str, top_k: int, category: Optional[str] = None) -> List[SearchHit]:
        ...


def _get_embedder(model_name: str = EMBED_MODEL):
    with _EMBEDDER_LOCK:
        embedder = _EMBEDDERS.get(model_name)
        if embedder is None:
            from sentence_transformers import SentenceTransformer

            logger.info("loading embedding model %s", model_name)
            embedder = SentenceTransformer(model_name)
            _EMBEDDERS[model_name] = embedder
        return embedder


def _to_vector(raw) -> List[float]:
    if raw is None:
        return []
    if hasattr(raw, "tolist"):
        raw = raw.tolist()
    return [float(x) for x in raw]


class QdrantVectorSearch:
    """:class:`VectorSearch` backed by a Qdrant collection of product embeddings."""

    def __init__(
        self,
        client: QdrantClient,
        collection: str,
        *,
        embed_model: str = EMBED_MODEL,
        vector_name: Optional[str] = None,
        category_key: str = "type",
        embedder: Any = None,
        attempts: int = EMBED_ATTEMPTS,
        backoff_seconds: float = EMBED_BACKOFF_SECONDS,
    ) -> None:
        self._client = client
        self.collection = collection
        self.embed_model = embed_model
        self.vector_name = vector_name or None
        self.category_key = category_key
        self._embedder = embedder
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds

    @classmethod
    def from_url(cls, url: str, collection: str, *, api_key: Optional[str] = None, **kwargs: Any) -> "QdrantVectorSearch":
        client = QdrantClient(url=url, api_key=api_key or None)
        return cls(client, collection, **kwargs)

    def embed(self, text: str) -> List[float]:
        """Embed *text*, retrying with exponential backoff before giving up."""
        delay = self.backoff_seconds
        attempt = 1
        while True:
            try:
                embedder = self._embedder or _get_embedder(self.embed_model)
                return _to_vector(embedder.encode(text, normalize_embeddings=True))
            except Exception as exc:
                if attempt >= self.attempts:
                    raise
                logger.warning("embedding attempt %d/%d failed: %s", attempt, self.attempts, exc)
                time.sleep(delay)
                delay *= 2
                attempt += 1

    def _category_filter(self, category: Optional[str]) -> Optional[Filter]:
        if not category:
            return None
        return Filter(must=[FieldCondition(key=self.category_key, match=MatchValue(value=category))])

    def search(self, query_text: str, top_k: int, category: Optional[str] = None) -> List[SearchHit]:
        vector = self.embed(query_text)
        res = self._client.query_points(
            collection_name=self.collection,
            query=vector,
            using=self.vector_name,
            limit=top_k,
            query_filter=self._category_filter(category),
            with_payload=True,
            with_vectors=False,
        )
        points = getattr(res, "points", res)
        hits: List[SearchHit] = []
        for point in points or []:
            payload = dict(getattr(point, "payload", None) or {})
            hits.append(
                SearchHit(
                    id=str(getattr(point, "id", "")),
                    score=float(getattr(point, "score", 0.0) or 0.0),
                    payload=payload,
                )
            )
        logger.debug("qdrant query=%r top_k=%d category=%s -> %d hits", query_text, top_k, category, len(hits))
        return hits


def payload_category(raw: Any) -> str:
    """Canonical category of a catalog payload without logging unknown labels."""
    label = normalize_label(str(raw)) if raw is not None else ""
    if not label:
        return UNKNOWN
    table, _ = load_category_table()
    return table.get(label, label)


def _payload_rank(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _payload_price(payload: Dict[str, Any]) -> Optional[int]:
    raw = payload.get("price")
    if raw is None:
        raw = payload.get("lowest_price")
    if isinstance(raw, dict):
        raw = raw.get("price")
    return optional_price(raw)


def candidate_from_hit(hit: SearchHit) -> CandidateProduct:
    payload = hit.payload or {}
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    merged = {**metadata, **{k: v for k, v in payload.items() if k != "metadata"}}
    image = merged.get("image") or merged.get("image_url") or merged.get("img")
    return CandidateProduct(
        id=str(merged.get("id") or merged.get("product_id") or hit.id),
        name=str(merged.get("name") or merged.get("title") or "").strip(),
        category=payload_category(merged.get("type") or merged.get("category")),
        manufacturer=merged.get("manufacturer") or merged.get("brand"),
        price=_payload_price(merged),
        image=str(image) if image else None,
        popularity_rank=_payload_rank(merged.get("pop_rank", merged.get("popularity_rank"))),
        score=hit.score,
    )


def has_pending_price(hit: SearchHit) -> bool:
    payload = hit.payload or {}
    return is_price_pending(payload.get("price")) or is_price_pending(payload.get("price_status"))
