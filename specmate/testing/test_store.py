from datetime import datetime
from pathlib import Path

import pytest

from specmate.app.models import EstimateComponent, EstimateResult, MatchConfidence
from specmate.store import chat_store


def _configure_store(tmp_path: Path):
    chat_store.configure(f"sqlite:///{tmp_path / 'test.db'}")
    chat_store.init_db()
    return chat_store


def _estimate() -> EstimateResult:
    return EstimateResult(
        build_name="게이밍 PC",
        build_description="FHD 게이밍",
        components=(
            EstimateComponent("cpu", "ryzen 5600x", "Ryzen 5 5600X", 180000, "6코어", "http://img/c1.jpg", MatchConfidence.FUZZY),
            EstimateComponent("vga", "RTX 4060", "RTX 4060", 450000, confidence=MatchConfidence.EXACT),
        ),
        notes="파워 650W 권장",
        follow_up_questions=("모니터는?",),
        declared_total=999999,
    )


def test_session_and_messages(tmp_path):
    store = _configure_store(tmp_path)
    session = store.create_session(title="", user_id="user-1")
    assert store.get_session(session["id"])["user_id"] == "user-1"
    assert store.get_session(9999) is None

    store.record_turn(session["id"], "안녕하세요", "무엇을 도와드릴까요?")
    store.record_turn(session["id"], "DDR5 차이?", "DDR5가 더 빠릅니다.")

    messages = store.list_messages(session["id"])
    assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]
    assert messages[0]["content"] == "안녕하세요"
    recent = store.list_messages(session["id"], limit=2)
    assert [m["content"] for m in recent] == ["DDR5 차이?", "DDR5가 더 빠릅니다."]
    assert store.get_session(session["id"])["title"] == "안녕하세요"


def test_estimate_round_trip(tmp_path):
    store = _configure_store(tmp_path)
    session = store.create_session(title="견적")
    assert store.get_latest_estimate(session["id"]) is None

    record = store.record_turn(session["id"], "게이밍 견적", "견적입니다", _estimate())
    assert record.estimate_id is not None

    latest = store.get_latest_estimate(session["id"])
    assert latest.estimate_id == record.estimate_id
    assert latest.build_name == "게이밍 PC"
    assert latest.categories() == ["cpu", "vga"]
    assert latest.components[0].raw_name == "ryzen 5600x"
    assert latest.components[0].confidence is MatchConfidence.FUZZY
    assert latest.total_price == 630000
    assert latest.declared_total == 630000
    assert latest.follow_up_questions == ("모니터는?",)

    messages = store.list_messages(session["id"])
    assert messages[1]["estimate_id"] == record.estimate_id
    assert messages[0]["estimate_id"] is None


def test_latest_estimate_is_newest(tmp_path):
    store = _configure_store(tmp_path)
    session = store.create_session()
    store.record_turn(session["id"], "견적", "1", _estimate())
    cheaper = _estimate().with_components(_estimate().components[:1])
    second = store.record_turn(session["id"], "더 싸게", "2", cheaper)
    latest = store.get_latest_estimate(session["id"])
    assert latest.estimate_id == second.estimate_id
    assert latest.total_price == 180000


def test_failed_turn_is_rolled_back(tmp_path):
    store = _configure_store(tmp_path)
    session = store.create_session()

    # confidence without .value fails after the estimate header was flushed
    bad = _estimate().with_components([EstimateComponent("cpu", "x", "x", 1, confidence="not-an-enum")])
    with pytest.raises(AttributeError):
        store.record_turn(session["id"], "견적", "실패", bad)

    assert store.list_messages(session["id"]) == []
    assert store.get_latest_estimate(session["id"]) is None


def test_unknown_session_is_rejected(tmp_path):
    store = _configure_store(tmp_path)
    with pytest.raises(chat_store.SessionNotFound):
        store.record_turn(404, "안녕", "응답")


def test_timestamps_are_timezone_aware(tmp_path):
    store = _configure_store(tmp_path)
    assert chat_store.ChatSession(title="x").created_at.tzinfo is not None
    assert chat_store.ChatMessage(session_id=1, role="user", content="x").created_at.tzinfo is not None

    session = store.create_session(title="시간")
    store.record_turn(session["id"], "안녕", "네", _estimate())

    stored = store.get_session(session["id"])
    created = datetime.fromisoformat(stored["created_at"])
    updated = datetime.fromisoformat(stored["updated_at"])
    assert updated >= created
    for message in store.list_messages(session["id"]):
        datetime.fromisoformat(message["created_at"])
