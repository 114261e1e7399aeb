"""Connection helpers shared by the PostgreSQL repositories."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

from psycopg2.extensions import connection as PgConnection

from ..app_context import get_conn


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None) -> Iterator[Tuple[PgConnection, bool]]:
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()
