import uuid
from typing import Any, Dict, List, Optional

from psycopg2 import sql as pgsql

from outbox_pipeline.adapters.postgres.db import fetch_all, fetch_one
from outbox_pipeline.domain.errors import ConflictError
from outbox_pipeline.domain.models.users import User, UserPreferences, flatten_changes

USER_COLUMNS = "id::text AS id, username, email, email_notifications, push_notifications, created_at"


def row_to_user(row: Dict) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        email=row["email"],
        preferences=UserPreferences(
            email_notifications=row["email_notifications"],
            push_notifications=row["push_notifications"],
        ),
        created_at=row["created_at"],
    )


def _valid_id(user_id: str) -> bool:
    try:
        uuid.UUID(str(user_id))
    except ValueError:
        return False
    return True


def get_user(conn, user_id: str) -> Optional[User]:
    if not _valid_id(user_id):
        return None
    row = fetch_one(conn, f"SELECT {USER_COLUMNS} FROM users WHERE id = %s;", (user_id,))
    return row_to_user(row) if row else None


def list_users(conn) -> List[User]:
    return [row_to_user(row) for row in fetch_all(conn, f"SELECT {USER_COLUMNS} FROM users ORDER BY created_at;")]


class PostgresUserRepository:
    """User writes bound to one open transaction; never commits on its own."""

    def __init__(self, conn):
        self.conn = conn

    def create(self, username: str, email: str, preferences: Optional[Dict[str, bool]] = None) -> User:
        prefs = UserPreferences(**(preferences or {}))
        sql = f"""
        INSERT INTO users (username, email, email_notifications, push_notifications)
        VALUES (%s, %s, %s, %s)
        RETURNING {USER_COLUMNS};
        """
        row = fetch_one(self.conn, sql, (username, email, prefs.email_notifications, prefs.push_notifications))
        return row_to_user(row)

    def update(self, user_id: str, changes: Dict[str, Any]) -> User:
        columns = flatten_changes(changes)
        if not _valid_id(user_id):
            raise ConflictError(f"user {user_id} not found")
        if not columns:
            user = self.find_by_id(user_id)
            if user is None:
                raise ConflictError(f"user {user_id} not found")
            return user

        query = pgsql.SQL("UPDATE users SET {assignments} WHERE id = %s RETURNING {columns};").format(
            assignments=pgsql.SQL(", ").join(
                pgsql.SQL("{} = %s").format(pgsql.Identifier(name)) for name in columns
            ),
            columns=pgsql.SQL(USER_COLUMNS),
        )
        row = fetch_one(self.conn, query, tuple(columns.values()) + (user_id,))
        if row is None:
            raise ConflictError(f"user {user_id} not found")
        return row_to_user(row)

    def delete(self, user_id: str) -> User:
        if not _valid_id(user_id):
            raise ConflictError(f"user {user_id} not found")
        row = fetch_one(self.conn, f"DELETE FROM users WHERE id = %s RETURNING {USER_COLUMNS};", (user_id,))
        if row is None:
            raise ConflictError(f"user {user_id} not found")
        return row_to_user(row)

    def find_by_id(self, user_id: str) -> Optional[User]:
        return get_user(self.conn, user_id)
