from .chat_store import (
    SessionNotFound,
    TurnRecord,
    configure,
    create_session,
    get_latest_estimate,
    get_session,
    init_db,
    list_messages,
    record_turn,
)

__all__ = [
    "SessionNotFound",
    "TurnRecord",
    "configure",
    "create_session",
    "get_latest_estimate",
    "get_session",
    "init_db",
    "list_messages",
    "record_turn",
]
