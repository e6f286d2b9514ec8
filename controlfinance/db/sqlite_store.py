"""SQLite store for users, categories, transactions and import sessions."""
import sqlite3
import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple
from contextlib import contextmanager

from .schema import SCHEMA_SQL


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Format as ``2026-04-01T10:00:00.000Z``.

    Fixed width, so string order in SQL equals chronological order.
    """
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Inverse of ``format_timestamp``."""
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


class SQLiteStore:
    """SQLite storage for the import pipeline and its supporting tables.

    One connection is shared by every request thread; a re-entrant lock
    serialises access to it, and ``transaction()`` wraps multi-statement
    writes in ``BEGIN IMMEDIATE`` so the database itself also serialises
    writers from other processes.
    """

    def __init__(self, db_path: Path):
        """Initialize the store with database path."""
        self.db_path = db_path
        self._lock = threading.RLock()
        self._in_transaction = False
        # Autocommit mode; explicit transactions go through transaction().
        self.conn = sqlite3.connect(
            str(db_path), check_same_thread=False, isolation_level=None
        )
        self.conn.row_factory = sqlite3.Row
        # Enable WAL mode for better concurrency
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self._lock:
            self.conn.executescript(SCHEMA_SQL)

    def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    @contextmanager
    def transaction(self):
        """Run the enclosed statements atomically.

        Nested use joins the outer transaction.
        """
        with self._lock:
            if self._in_transaction:
                yield self
                return

            self.conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield self
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")
            finally:
                self._in_transaction = False

    def get_tables(self) -> List[str]:
        """Get list of tables in the database."""
        with self._lock:
            cursor = self.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            )
            return [row[0] for row in cursor.fetchall()]

    # === User Methods ===

    def add_user(self, email: str, password_hash: str, created_at: str) -> int:
        """Add a user. Raises sqlite3.IntegrityError on duplicate email."""
        with self._lock:
            cursor = self.conn.execute(
                "INSERT INTO users (email, password_hash, created_at) VALUES (?, ?, ?)",
                (email, password_hash, created_at)
            )
            return cursor.lastrowid

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT id, email, created_at FROM users WHERE id = ?", (user_id,)
            ).fetchone()
            return dict(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM users WHERE email = ?", (email,)
            ).fetchone()
            return dict(row) if row else None

    def add_auth_token(self, token_hash: str, user_id: int, created_at: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO auth_tokens (token_hash, user_id, created_at) VALUES (?, ?, ?)",
                (token_hash, user_id, created_at)
            )

    def get_user_id_for_token(self, token_hash: str) -> Optional[int]:
        with self._lock:
            row = self.conn.execute(
                "SELECT user_id FROM auth_tokens WHERE token_hash = ?", (token_hash,)
            ).fetchone()
            return row[0] if row else None

    # === Category Methods ===

    def add_category(
        self,
        user_id: int,
        name: str,
        normalized_name: str,
        created_at: str
    ) -> int:
        """Add a category. Raises sqlite3.IntegrityError when an active
        category with the same normalized name already exists."""
        with self._lock:
            cursor = self.conn.execute(
                """INSERT INTO categories (user_id, name, normalized_name, created_at)
                   VALUES (?, ?, ?, ?)""",
                (user_id, name, normalized_name, created_at)
            )
            return cursor.lastrowid

    def get_categories(self, user_id: int, include_deleted: bool = False) -> List[Dict[str, Any]]:
        """Get the user's categories ordered by name, active ones only by default."""
        query = """SELECT id, name, created_at, deleted_at FROM categories WHERE user_id = ?"""
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        query += " ORDER BY normalized_name, id"
        with self._lock:
            cursor = self.conn.execute(query, (user_id,))
            return [dict(row) for row in cursor.fetchall()]

    def get_category(self, user_id: int, category_id: int) -> Optional[Dict[str, Any]]:
        """Get one of the user's categories, deleted or not."""
        with self._lock:
            row = self.conn.execute(
                """SELECT id, name, normalized_name, created_at, deleted_at FROM categories
                   WHERE id = ? AND user_id = ?""",
                (category_id, user_id)
            ).fetchone()
            return dict(row) if row else None

    def rename_category(
        self,
        user_id: int,
        category_id: int,
        name: str,
        normalized_name: str
    ) -> bool:
        """Rename an active category. Returns False if not found.

        Raises sqlite3.IntegrityError when the new name is taken.
        """
        with self._lock:
            cursor = self.conn.execute(
                """UPDATE categories SET name = ?, normalized_name = ?
                   WHERE id = ? AND user_id = ? AND deleted_at IS NULL""",
                (name, normalized_name, category_id, user_id)
            )
            return cursor.rowcount > 0

    def restore_category(self, user_id: int, category_id: int) -> bool:
        """Clear deleted_at on a deleted category. Returns False if there was none.

        Raises sqlite3.IntegrityError when an active category took the name.
        """
        with self._lock:
            cursor = self.conn.execute(
                """UPDATE categories SET deleted_at = NULL
                   WHERE id = ? AND user_id = ? AND deleted_at IS NOT NULL""",
                (category_id, user_id)
            )
            return cursor.rowcount > 0

    def soft_delete_category(self, user_id: int, category_id: int, deleted_at: str) -> bool:
        """Mark an active category as deleted. Returns False if not found."""
        with self._lock:
            cursor = self.conn.execute(
                """UPDATE categories SET deleted_at = ?
                   WHERE id = ? AND user_id = ? AND deleted_at IS NULL""",
                (deleted_at, category_id, user_id)
            )
            return cursor.rowcount > 0

    def get_category_map(self, user_id: int) -> Dict[str, int]:
        """Normalized name -> id for the user's non-deleted categories."""
        with self._lock:
            cursor = self.conn.execute(
                """SELECT id, normalized_name FROM categories
                   WHERE user_id = ? AND deleted_at IS NULL""",
                (user_id,)
            )
            return {row["normalized_name"]: row["id"] for row in cursor.fetchall()}

    # === Transaction Methods ===

    def add_transactions(
        self,
        user_id: int,
        rows: List[Dict[str, Any]],
        created_at: str
    ) -> List[int]:
        """Insert normalized import rows as transactions. Returns new IDs."""
        ids = []
        with self.transaction():
            for row in rows:
                cursor = self.conn.execute(
                    """INSERT INTO transactions
                       (user_id, date, type, value, description, notes, category_id, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        user_id,
                        row["date"],
                        row["type"],
                        row["value"],
                        row["description"],
                        row.get("notes") or "",
                        row.get("categoryId"),
                        created_at,
                    )
                )
                ids.append(cursor.lastrowid)
        return ids

    def get_transactions(
        self,
        user_id: int,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Get a page of the user's transactions plus the total count."""
        with self._lock:
            total = self.conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE user_id = ?", (user_id,)
            ).fetchone()[0]
            cursor = self.conn.execute(
                """SELECT id, date, type, value, description, notes, category_id, created_at
                   FROM transactions WHERE user_id = ?
                   ORDER BY date ASC, id ASC
                   LIMIT ? OFFSET ?""",
                (user_id, limit, offset)
            )
            return [dict(row) for row in cursor.fetchall()], total

    def get_transaction(self, user_id: int, transaction_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                """SELECT id, date, type, value, description, notes, category_id, created_at
                   FROM transactions WHERE id = ? AND user_id = ?""",
                (transaction_id, user_id)
            ).fetchone()
            return dict(row) if row else None

    def delete_transaction(self, user_id: int, transaction_id: int) -> Optional[Dict[str, Any]]:
        """Delete a transaction and return it, or None if the user has no such row."""
        with self.transaction():
            removed = self.get_transaction(user_id, transaction_id)
            if removed:
                self.conn.execute(
                    "DELETE FROM transactions WHERE id = ? AND user_id = ?",
                    (transaction_id, user_id)
                )
            return removed

    # === Import Session Methods ===

    def add_import_session(
        self,
        import_id: str,
        user_id: int,
        payload: Dict[str, Any],
        created_at: str,
        expires_at: str
    ) -> None:
        with self._lock:
            self.conn.execute(
                """INSERT INTO transaction_import_sessions
                   (id, user_id, payload_json, created_at, expires_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (import_id, user_id, json.dumps(payload), created_at, expires_at)
            )

    def get_import_session(self, user_id: int, import_id: str) -> Optional[Dict[str, Any]]:
        """Get a session owned by ``user_id``; other users' sessions are None."""
        with self._lock:
            row = self.conn.execute(
                """SELECT * FROM transaction_import_sessions
                   WHERE id = ? AND user_id = ?""",
                (import_id, user_id)
            ).fetchone()
        if not row:
            return None
        session = dict(row)
        session["payload"] = json.loads(session.pop("payload_json"))
        return session

    def claim_import_session(self, user_id: int, import_id: str, now: str) -> bool:
        """Mark a pending, unexpired session as committed.

        Returns True only for the single caller whose update took effect.
        """
        with self._lock:
            cursor = self.conn.execute(
                """UPDATE transaction_import_sessions
                   SET committed_at = ?
                   WHERE id = ? AND user_id = ?
                     AND committed_at IS NULL
                     AND expires_at > ?""",
                (now, import_id, user_id, now)
            )
            return cursor.rowcount == 1

    def list_import_sessions(
        self,
        user_id: int,
        limit: int,
        offset: int
    ) -> List[Dict[str, Any]]:
        """Get the user's sessions, newest first."""
        with self._lock:
            cursor = self.conn.execute(
                """SELECT id, payload_json, created_at, expires_at, committed_at
                   FROM transaction_import_sessions
                   WHERE user_id = ?
                   ORDER BY created_at DESC, id DESC
                   LIMIT ? OFFSET ?""",
                (user_id, limit, offset)
            )
            rows = cursor.fetchall()

        sessions = []
        for row in rows:
            session = dict(row)
            session["payload"] = json.loads(session.pop("payload_json") or "{}")
            sessions.append(session)
        return sessions

    def get_import_metrics(self, user_id: int, since: str) -> Dict[str, Any]:
        """Session count overall and since ``since``, plus the newest creation time."""
        with self._lock:
            row = self.conn.execute(
                """SELECT COUNT(*) AS total,
                          COALESCE(SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END), 0) AS recent,
                          MAX(created_at) AS last_created_at
                   FROM transaction_import_sessions
                   WHERE user_id = ?""",
                (since, user_id)
            ).fetchone()
            return dict(row)

    def cleanup_import_sessions(self, now: datetime, keep_committed_days: int) -> int:
        """Delete uncommitted sessions past expiry and committed sessions
        older than the retention window. Returns the number deleted."""
        cutoff = format_timestamp(now - timedelta(days=keep_committed_days))
        with self._lock:
            cursor = self.conn.execute(
                """DELETE FROM transaction_import_sessions
                   WHERE (committed_at IS NULL AND expires_at <= ?)
                      OR (committed_at IS NOT NULL AND committed_at < ?)""",
                (format_timestamp(now), cutoff)
            )
            return cursor.rowcount
