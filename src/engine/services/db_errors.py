from __future__ import annotations

import asyncpg
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

_DISCONNECT_MARKERS: tuple[str, ...] = (
    "connection is closed",
    "connection was closed",
    "connection does not exist",
    "connection refused",
    "connect call failed",
    "no address associated with hostname",
    "the database system is starting up",
    "closed in the middle of operation",
)


def is_db_disconnect(exc: BaseException) -> bool:
    """Ошибка означает потерю соединения с Postgres, а не сбой данных цикла."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and getattr(exc, "connection_invalidated", False):
        return True

    msg = str(exc).lower()
    if isinstance(exc, (asyncpg.PostgresError, OSError)):
        return any(marker in msg for marker in _DISCONNECT_MARKERS)

    return "no address associated with hostname" in msg
