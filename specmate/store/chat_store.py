from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from specmate.app.models import EstimateComponent, EstimateResult, MatchConfidence

logger = logging.getLogger("specmate.store")

_DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "var" / "specmate.db"
DB_URL = os.getenv("DB_URL") or os.getenv("SPECMATE_DB_URL") or f"sqlite:///{_DEFAULT_DB_PATH}"
_engine = None
_engine_url = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionNotFound(LookupError):
    pass


class ChatSession(SQLModel, table=True):
    __tablename__ = "chat_sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[str] = Field(default=None, index=True)
    title: str = Field(default="")
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True), index=True)


class ChatMessage(SQLModel, table=True):
    __tablename__ = "chat_messages"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="chat_sessions.id", index=True)
    role: str  # user | assistant
    content: str
    estimate_id: Optional[int] = Field(default=None, foreign_key="ai_estimates.id")
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))


class AiEstimate(SQLModel, table=True):
    __tablename__ = "ai_estimates"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="chat_sessions.id", index=True)
    build_name: str
    build_description: str = Field(default="")
    total_price: int = Field(default=0)
    notes: str = Field(default="")
    follow_up_json: str = Field(default="[]")
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True), index=True)


class EstimateComponentRow(SQLModel, table=True):
    __tablename__ = "estimate_components"

    id: Optional[int] = Field(default=None, primary_key=True)
    estimate_id: int = Field(foreign_key="ai_estimates.id", index=True)
    position: int
    category: str = Field(index=True)
    raw_name: str = Field(default="")
    name: str
    price: int = Field(default=0)
    description: str = Field(default="")
    image: Optional[str] = Field(default=None)
    confidence: str = Field(default=MatchConfidence.UNAVAILABLE.value)


@dataclass(frozen=True)
class TurnRecord:
    session_id: int
    user_message_id: int
    assistant_message_id: int
    estimate_id: Optional[int] = None


def _ensure_sqlite_dir(url: str) -> None:
    if not url.startswith("sqlite:///"):
        return
    filename = url.replace("sqlite:///", "", 1)
    if filename in ("", ":memory:"):
        return
    Path(filename).parent.mkdir(parents=True, exist_ok=True)


def configure(db_url: str) -> None:
    """Point the store at *db_url*; the next call opens a fresh engine."""
    global DB_URL, _engine, _engine_url
    DB_URL = db_url
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _engine_url = None


def _get_engine():
    global _engine, _engine_url
    if _engine is None or _engine_url != DB_URL:
        kwargs: Dict[str, Any] = {"echo": False}
        if DB_URL.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if DB_URL in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            else:
                _ensure_sqlite_dir(DB_URL)
        _engine = create_engine(DB_URL, **kwargs)
        _engine_url = DB_URL
    return _engine


def _session() -> Session:
    return Session(_get_engine())


def init_db() -> None:
    SQLModel.metadata.create_all(_get_engine())


def _session_dict(row: ChatSession) -> Dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "title": row.title,
        "created_at": row.created_at.isoformat(),
        "updated_at": row.updated_at.isoformat(),
    }


def create_session(title: str = "", user_id: Optional[str] = None) -> Dict[str, Any]:
    with _session() as session:
        row = ChatSession(title=(title or "").strip(), user_id=user_id)
        session.add(row)
        session.commit()
        session.refresh(row)
        logger.info("chat session created id=%s", row.id)
        return _session_dict(row)


def get_session(session_id: int) -> Optional[Dict[str, Any]]:
    with _session() as session:
        row = session.get(ChatSession, session_id)
        return _session_dict(row) if row is not None else None


def list_messages(session_id: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Messages of a session, oldest first; *limit* keeps only the most recent ones."""
    with _session() as session:
        stmt = select(ChatMessage).where(ChatMessage.session_id == session_id).order_by(ChatMessage.id.desc())
        if limit is not None:
            stmt = stmt.limit(max(0, limit))
        rows = list(session.exec(stmt).all())
    rows.reverse()
    return [
        {
            "id": row.id,
            "role": row.role,
            "content": row.content,
            "estimate_id": row.estimate_id,
            "created_at": row.created_at.isoformat(),
        }
        for row in rows
    ]


def record_turn(
    session_id: int,
    user_text: str,
    assistant_text: str,
    estimate: Optional[EstimateResult] = None,
) -> TurnRecord:
    """Store one chat turn atomically.

    User message, assistant message, estimate header and its components are
    committed together; any failure rolls the whole turn back.
    """

    with _session() as session:
        try:
            chat = session.get(ChatSession, session_id)
            if chat is None:
                raise SessionNotFound(f"chat session {session_id} not found")

            user_row = ChatMessage(session_id=session_id, role="user", content=user_text)
            session.add(user_row)

            estimate_row = None
            if estimate is not None:
                estimate_row = AiEstimate(
                    session_id=session_id,
                    build_name=estimate.build_name,
                    build_description=estimate.build_description,
                    total_price=estimate.total_price,
                    notes=estimate.notes,
                    follow_up_json=json.dumps(list(estimate.follow_up_questions), ensure_ascii=False),
                )
                session.add(estimate_row)
                session.flush()
                for position, component in enumerate(estimate.components):
                    session.add(
                        EstimateComponentRow(
                            estimate_id=estimate_row.id,
                            position=position,
                            category=component.category,
                            raw_name=component.raw_name,
                            name=component.name,
                            price=component.price,
                            description=component.description,
                            image=component.image,
                            confidence=component.confidence.value,
                        )
                    )

            assistant_row = ChatMessage(
                session_id=session_id,
                role="assistant",
                content=assistant_text,
                estimate_id=estimate_row.id if estimate_row is not None else None,
            )
            session.add(assistant_row)
            if not chat.title:
                chat.title = user_text.strip()[:40]
            chat.updated_at = _utcnow()
            session.add(chat)
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("turn persistence rolled back session=%s", session_id)
            raise

        record = TurnRecord(
            session_id=session_id,
            user_message_id=user_row.id,
            assistant_message_id=assistant_row.id,
            estimate_id=estimate_row.id if estimate_row is not None else None,
        )
    logger.info(
        "turn stored session=%s messages=%s/%s estimate=%s",
        session_id,
        record.user_message_id,
        record.assistant_message_id,
        record.estimate_id,
    )
    return record


def _estimate_from_rows(row: AiEstimate, components: List[EstimateComponentRow]) -> EstimateResult:
    try:
        follow_ups = tuple(str(q) for q in json.loads(row.follow_up_json or "[]"))
    except ValueError:
        follow_ups = ()
    return EstimateResult(
        build_name=row.build_name,
        build_description=row.build_description,
        components=tuple(
            EstimateComponent(
                category=c.category,
                raw_name=c.raw_name,
                name=c.name,
                price=c.price,
                description=c.description,
                image=c.image,
                confidence=MatchConfidence(c.confidence),
            )
            for c in components
        ),
        notes=row.notes,
        follow_up_questions=follow_ups,
        declared_total=row.total_price,
        estimate_id=row.id,
    )


def get_latest_estimate(session_id: int) -> Optional[EstimateResult]:
    with _session() as session:
        stmt = (
            select(AiEstimate)
            .where(AiEstimate.session_id == session_id)
            .order_by(AiEstimate.id.desc())
            .limit(1)
        )
        row = session.exec(stmt).first()
        if row is None:
            return None
        components = list(
            session.exec(
                select(EstimateComponentRow)
                .where(EstimateComponentRow.estimate_id == row.id)
                .order_by(EstimateComponentRow.position)
            ).all()
        )
        return _estimate_from_rows(row, components)
