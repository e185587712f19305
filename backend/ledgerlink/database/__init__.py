from ledgerlink.database.session import (
    SessionLocal,
    get_engine,
    get_db_session,
    get_db_session_sync,
    init_db,
)

__all__ = [
    "SessionLocal",
    "get_engine",
    "get_db_session",
    "get_db_session_sync",
    "init_db",
]
