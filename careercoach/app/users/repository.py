"""User directory access: protocol plus the PostgreSQL implementation."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional, Protocol

import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..db import managed_connection
from ..exceptions import NotFoundError
from .models import UsageCounter, User, UserRole, UserSubscriptionSnapshot, UserUsage


class UserDirectory(Protocol):
    """Persistence operations the entitlement core needs on user records."""

    def get_user(self, user_id: str) -> User:
        """Return the user or raise :class:`NotFoundError`."""

    def save_user(self, user: User) -> User:
        """Persist role and subscription snapshot; usage counters are left untouched."""

    def increment_usage(self, user_id: str, counter: UsageCounter, *, limit: int) -> bool:
        """Add one to ``counter`` only while it is below ``limit``; report success."""

    def reset_usage(
        self,
        user_id: str,
        *,
        observed_reset_date: datetime,
        reset_at: datetime,
    ) -> bool:
        """Zero the embedded counters if the anchor still equals ``observed_reset_date``."""


def _row_to_user(row: dict) -> User:
    return User(
        user_id=str(row["id"]),
        email=row.get("email"),
        full_name=row.get("full_name"),
        role=UserRole(row["role"]),
        usage=UserUsage(
            resume_analysis_count=int(row.get("resume_analysis_count") or 0),
            interview_sessions_count=int(row.get("interview_sessions_count") or 0),
            last_reset_date=row["usage_last_reset_date"],
        ),
        subscription=UserSubscriptionSnapshot.model_validate(row.get("subscription") or {}),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresUserDirectory:
    """Reads and writes the entitlement-related columns of the ``users`` table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def get_user(self, user_id: str) -> User:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM users
                WHERE id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            if not row:
                raise NotFoundError(f"User not found: {user_id}")
            return _row_to_user(row)

    def save_user(self, user: User) -> User:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET role = %(role)s,
                    subscription = %(subscription)s,
                    updated_at = NOW()
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {
                    "user_id": user.user_id,
                    "role": user.role.value,
                    "subscription": psycopg2.extras.Json(
                        user.subscription.model_dump(by_alias=True, mode="json")
                    ),
                },
            )
            row = cursor.fetchone()
            if not row:
                raise NotFoundError(f"User not found: {user.user_id}")
            return _row_to_user(row)

    def increment_usage(self, user_id: str, counter: UsageCounter, *, limit: int) -> bool:
        column = sql.Identifier(UsageCounter(counter).value)
        query = sql.SQL(
            """
            UPDATE users
            SET {column} = {column} + 1,
                updated_at = NOW()
            WHERE id = %(user_id)s
              AND (%(limit)s = -1 OR {column} < %(limit)s)
            RETURNING {column}
            """
        ).format(column=column)
        with self._cursor() as cursor:
            cursor.execute(query, {"user_id": user_id, "limit": limit})
            return cursor.rowcount > 0

    def reset_usage(
        self,
        user_id: str,
        *,
        observed_reset_date: datetime,
        reset_at: datetime,
    ) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET resume_analysis_count = 0,
                    interview_sessions_count = 0,
                    usage_last_reset_date = %(reset_at)s,
                    updated_at = NOW()
                WHERE id = %(user_id)s
                  AND usage_last_reset_date = %(observed)s
                """,
                {"user_id": user_id, "reset_at": reset_at, "observed": observed_reset_date},
            )
            return cursor.rowcount > 0
