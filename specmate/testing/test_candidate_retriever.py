from __future__ import annotations

import threading
from typing import Dict, List, Optional

import pytest

from specmate.retriever import CandidateRetriever, SearchHit, candidate_from_hit, is_excluded, pick_most_popular
from specmate.retriever.vector_store import QdrantVectorSearch


def _hit(pid: str, name: str, category: str, price="100000", rank=None, **extra) -> SearchHit:
    payload = {"name": name, "type": category, "price": price, "image": f"http://img/{pid}.jpg"}
    if rank is not None:
        payload["pop_rank"] = rank
    payload.update(extra)
    return SearchHit(id=pid, score=0.5, payload=payload)


class FakeSearch:
    """Answers by exact query text; unknown queries return nothing."""

    def __init__(self, responses: Dict[str, List[SearchHit]], fail_on=()):
        self.responses = responses
        self.fail_on = set(fail_on)
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def search(self, query_text: str, top_k: int, category: Optional[str] = None) -> List[SearchHit]:
        with self._lock:
            self.calls.append((query_text, top_k))
        if query_text in self.fail_on:
            raise ConnectionError("qdrant unavailable")
        return list(self.responses.get(query_text, []))


def test_primary_search_filters_and_truncates():
    search = FakeSearch(
        {
            "게이밍 cpu": [
                _hit("1", "AMD 라이젠5 5600X", "cpu"),
                _hit("2", "인텔 i5-13400F", "cpu", price="가격비교예정"),
                _hit("3", "CPU 쿨러 브라켓", "cpu"),
                _hit("4", "RTX 4060", "vga"),
                _hit("5", "인텔 i5-14400F", "cpu", price=None),
                _hit("1", "AMD 라이젠5 5600X", "cpu"),
                _hit("6", "AMD 라이젠7 7700", "CPU"),
                _hit("7", "인텔 i7-14700K", "cpu"),
            ]
        }
    )
    retriever = CandidateRetriever(search)
    cset = retriever.retrieve("게이밍", "cpu", top_k=2)

    assert not cset.fallback
    assert [p.name for p in cset.products] == ["AMD 라이젠5 5600X", "AMD 라이젠7 7700"]
    assert all(p.has_price for p in cset.products)
    assert search.calls == [("게이밍 cpu", retriever.primary_top_k)]


def test_gpu_payloads_count_as_vga():
    search = FakeSearch({"게이밍 vga": [_hit("1", "MSI RTX 4060", "gpu"), _hit("2", "ZOTAC RTX 4070", "그래픽카드")]})
    cset = CandidateRetriever(search).retrieve("게이밍", "그래픽카드")
    assert cset.category == "vga"
    assert len(cset) == 2


def test_falls_back_to_bare_category_query():
    search = FakeSearch({"hdd": [_hit("9", "WD BLUE 2TB", "hdd")]})
    cset = CandidateRetriever(search).retrieve("영상 편집", "hdd")
    assert cset.fallback
    assert [p.name for p in cset.products] == ["WD BLUE 2TB"]


def test_hdd_denylist_then_popularity_fallback():
    search = FakeSearch(
        {
            "nas hdd": [_hit("1", "Seagate IronWolf 4TB NAS", "hdd"), _hit("2", "WD Red Plus 4TB", "hdd")],
            "hdd": [_hit("3", "WD Purple 감시용 2TB", "hdd"), _hit("4", "Seagate 외장하드 1TB", "hdd")],
            "nas": [
                _hit("5", "Seagate Exos 8TB", "hdd", rank=1),
                _hit("6", "Seagate BarraCuda 2TB", "hdd", rank=30),
                _hit("7", "WD BLUE 1TB", "hdd", rank=12),
                _hit("8", "Toshiba P300 2TB", "hdd"),
            ],
        }
    )
    cset = CandidateRetriever(search).retrieve("nas", "hdd")
    assert cset.fallback
    assert [p.name for p in cset.products] == ["WD BLUE 1TB"]


def test_exhausted_category_is_empty():
    cset = CandidateRetriever(FakeSearch({})).retrieve("무소음", "cooler")
    assert cset.is_empty
    assert not cset.fallback


def test_search_errors_are_isolated_per_category():
    search = FakeSearch(
        {
            "게이밍 cpu": [_hit("1", "AMD 라이젠5 5600X", "cpu")],
            "게이밍 ram": [_hit("2", "삼성 DDR5 16GB", "ram")],
        },
        fail_on={"게이밍 vga", "vga", "게이밍"},
    )
    results = CandidateRetriever(search).retrieve_all("게이밍", ["cpu", "그래픽카드", "ram"], per_category=3, timeout=5)
    assert list(results) == ["cpu", "vga", "ram"]
    assert results["vga"].is_empty
    assert [p.name for p in results["cpu"].products] == ["AMD 라이젠5 5600X"]
    assert [p.name for p in results["ram"].products] == ["삼성 DDR5 16GB"]


def test_retrieval_timeout_leaves_category_empty():
    release = threading.Event()

    class SlowSearch(FakeSearch):
        def search(self, query_text, top_k, category=None):
            if "ssd" in query_text:
                release.wait(2)
            return super().search(query_text, top_k, category)

    search = SlowSearch({"사무용 cpu": [_hit("1", "인텔 i3-13100", "cpu")]})
    try:
        results = CandidateRetriever(search).retrieve_all("사무용", ["cpu", "ssd"], timeout=0.3)
    finally:
        release.set()
    assert not results["cpu"].is_empty
    assert results["ssd"].is_empty


def test_accessory_and_hdd_exclusion_rules():
    assert is_excluded("케이스 전용 나사 세트", "case")
    assert is_excluded("SATA 케이블", "ssd")
    assert not is_excluded("리안리 O11 브라켓 포함 케이스", "case")
    assert is_excluded("VGA 지지대 브라켓", "vga")
    assert is_excluded("삼성 노트북용 DDR5", "ram")
    assert is_excluded("Seagate IronWolf 4TB", "hdd")
    assert not is_excluded("Seagate IronWolf 4TB", "ssd")
    assert not is_excluded("WD BLUE 2TB", "hdd")


def test_pick_most_popular_prefers_ranked_entries():
    products = [
        candidate_from_hit(_hit("1", "A", "ssd")),
        candidate_from_hit(_hit("2", "B", "ssd", rank=5)),
        candidate_from_hit(_hit("3", "C", "ssd", rank=5)),
    ]
    assert pick_most_popular(products).name == "B"
    assert pick_most_popular([]) is None


def test_candidate_from_hit_reads_nested_payloads():
    hit = SearchHit(
        id="42",
        score=0.8,
        payload={
            "metadata": {"name": "SK하이닉스 P41 1TB", "category": "SSD", "brand": "SK하이닉스"},
            "lowest_price": {"price": "129,000원"},
            "image_url": "http://img/p41.jpg",
            "popularity_rank": "3",
        },
    )
    product = candidate_from_hit(hit)
    assert product.id == "42"
    assert product.category == "ssd"
    assert product.price == 129000
    assert product.image == "http://img/p41.jpg"
    assert product.manufacturer == "SK하이닉스"
    assert product.popularity_rank == 3


class FakeEmbedder:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0

    def encode(self, text, normalize_embeddings=True):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("model not ready")
        return [0.1, 0.2, 0.3]


class FakePoint:
    def __init__(self, pid, score, payload):
        self.id = pid
        self.score = score
        self.payload = payload


class FakeQdrant:
    def __init__(self):
        self.kwargs = None

    def query_points(self, **kwargs):
        self.kwargs = kwargs

        class Result:
            points = [FakePoint(7, 0.91, {"name": "인텔 i5-13400F", "type": "cpu", "price": 210000})]

        return Result()


def test_qdrant_search_passes_category_filter(monkeypatch):
    monkeypatch.setattr("specmate.retriever.vector_store.time.sleep", lambda _: None)
    client = FakeQdrant()
    embedder = FakeEmbedder(failures=1)
    search = QdrantVectorSearch(client, "products", embedder=embedder, vector_name="dense")

    hits = search.search("사무용 cpu", 10, category="cpu")

    assert embedder.calls == 2
    assert hits == [SearchHit(id="7", score=0.91, payload={"name": "인텔 i5-13400F", "type": "cpu", "price": 210000})]
    assert client.kwargs["limit"] == 10
    assert client.kwargs["using"] == "dense"
    assert client.kwargs["query"] == [0.1, 0.2, 0.3]
    condition = client.kwargs["query_filter"].must[0]
    assert condition.key == "type"
    assert condition.match.value == "cpu"


def test_qdrant_embedding_gives_up_after_attempts(monkeypatch):
    monkeypatch.setattr("specmate.retriever.vector_store.time.sleep", lambda _: None)
    search = QdrantVectorSearch(FakeQdrant(), "products", embedder=FakeEmbedder(failures=5), attempts=3)
    with pytest.raises(RuntimeError, match="model not ready"):
        search.search("cpu", 5)
