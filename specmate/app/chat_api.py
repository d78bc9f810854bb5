"""
Chat API - sessions, user turns and the latest estimate of a session
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from specmate.app.auth import get_current_user
from specmate.app.services.estimate_pipeline import (
    EstimateServiceContext,
    ServiceError,
    create_session,
    get_latest_estimate,
    list_messages,
    submit_user_turn,
)

router = APIRouter(prefix="/api/chat", tags=["chat"])


# --- Models ---

class CreateSessionRequest(BaseModel):
    title: Optional[str] = None


class UserTurnRequest(BaseModel):
    message: str


# --- Dependencies ---

def get_service_context(request: Request) -> EstimateServiceContext:
    ctx = getattr(request.app.state, "estimate_ctx", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="서비스가 아직 준비되지 않았습니다.")
    return ctx


def _user_id(claims: Dict[str, Any]) -> Optional[str]:
    subject = claims.get("sub") or claims.get("user_id")
    return str(subject) if subject is not None else None


# --- Endpoints ---

@router.post("/sessions")
def api_create_session(
    payload: Optional[CreateSessionRequest] = None,
    user: dict = Depends(get_current_user),
    ctx: EstimateServiceContext = Depends(get_service_context),
):
    return create_session(title=(payload.title if payload else None) or "", user_id=_user_id(user), ctx=ctx)


@router.post("/sessions/{session_id}/messages")
def api_submit_turn(
    session_id: int,
    payload: UserTurnRequest,
    user: dict = Depends(get_current_user),
    ctx: EstimateServiceContext = Depends(get_service_context),
):
    try:
        outcome = submit_user_turn(session_id=session_id, message=payload.message, ctx=ctx)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return outcome.to_dict()


@router.get("/sessions/{session_id}/messages")
def api_list_messages(
    session_id: int,
    user: dict = Depends(get_current_user),
    ctx: EstimateServiceContext = Depends(get_service_context),
):
    try:
        return {"session_id": session_id, "messages": list_messages(session_id=session_id, ctx=ctx)}
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.get("/sessions/{session_id}/estimates/latest")
def api_latest_estimate(
    session_id: int,
    user: dict = Depends(get_current_user),
    ctx: EstimateServiceContext = Depends(get_service_context),
):
    try:
        return {"session_id": session_id, "estimate": get_latest_estimate(session_id=session_id, ctx=ctx)}
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
