"""Tests for SQLite store."""
import sqlite3
from datetime import datetime, timezone

import pytest

from controlfinance.db.sqlite_store import SQLiteStore, format_timestamp, parse_timestamp


CREATED = "2026-03-10T12:00:00.000Z"
EXPIRES = "2026-03-10T12:30:00.000Z"


class TestTimestamps:

    def test_format_is_fixed_width_utc_millis(self):
        moment = datetime(2026, 3, 1, 9, 5, 7, 123456, tzinfo=timezone.utc)
        assert format_timestamp(moment) == "2026-03-01T09:05:07.123Z"

    def test_parse_inverts_format(self):
        moment = datetime(2026, 3, 1, 9, 5, 7, 123000, tzinfo=timezone.utc)
        assert parse_timestamp(format_timestamp(moment)) == moment


class TestSQLiteStore:
    """Test cases for SQLiteStore class."""

    def test_init_creates_tables(self, temp_db_path):
        """Store should create all required tables on initialization."""
        store = SQLiteStore(temp_db_path)

        tables = store.get_tables()
        assert "users" in tables
        assert "categories" in tables
        assert "transactions" in tables
        assert "transaction_import_sessions" in tables
        store.close()

    def test_reopen_keeps_data(self, temp_db_path):
        with SQLiteStore(temp_db_path) as store:
            user_id = store.add_user("ana@example.com", "hash", CREATED)

        with SQLiteStore(temp_db_path) as store:
            assert store.get_user(user_id)["email"] == "ana@example.com"

    def test_duplicate_email_raises(self, store, user_id):
        with pytest.raises(sqlite3.IntegrityError):
            store.add_user("ana@example.com", "hash", CREATED)

    def test_tokens_resolve_to_users(self, store, user_id):
        store.add_auth_token("digest", user_id, CREATED)
        assert store.get_user_id_for_token("digest") == user_id
        assert store.get_user_id_for_token("other") is None

    # === Categories ===

    def test_category_map_uses_normalized_names(self, store, user_id, food_category_id):
        assert store.get_category_map(user_id) == {"alimentacao": food_category_id}

    def test_active_normalized_names_are_unique_per_user(self, store, user_id, other_user_id,
                                                         food_category_id):
        with pytest.raises(sqlite3.IntegrityError):
            store.add_category(user_id, "alimentacao", "alimentacao", CREATED)

        # Another user may reuse the name
        assert store.add_category(other_user_id, "Alimentação", "alimentacao", CREATED)

    def test_soft_deleted_category_frees_the_name(self, store, user_id, food_category_id):
        assert store.soft_delete_category(user_id, food_category_id, CREATED) is True
        assert store.get_category_map(user_id) == {}
        assert store.get_categories(user_id) == []

        new_id = store.add_category(user_id, "Alimentacao", "alimentacao", CREATED)
        assert new_id != food_category_id

    def test_soft_delete_is_owner_scoped(self, store, other_user_id, food_category_id):
        assert store.soft_delete_category(other_user_id, food_category_id, CREATED) is False

    def test_rename_and_restore_category(self, store, user_id, food_category_id):
        assert store.rename_category(user_id, food_category_id, "Mercado", "mercado") is True
        assert store.get_category(user_id, food_category_id)["name"] == "Mercado"

        store.soft_delete_category(user_id, food_category_id, CREATED)
        assert store.rename_category(user_id, food_category_id, "Feira", "feira") is False
        assert [c["id"] for c in store.get_categories(user_id, include_deleted=True)] == [
            food_category_id
        ]

        assert store.restore_category(user_id, food_category_id) is True
        assert store.restore_category(user_id, food_category_id) is False
        assert store.get_category_map(user_id) == {"mercado": food_category_id}

    def test_restore_clashing_with_active_name_raises(self, store, user_id, food_category_id):
        store.soft_delete_category(user_id, food_category_id, CREATED)
        store.add_category(user_id, "Alimentacao", "alimentacao", CREATED)
        with pytest.raises(sqlite3.IntegrityError):
            store.restore_category(user_id, food_category_id)

    def test_get_category_is_owner_scoped(self, store, other_user_id, food_category_id):
        assert store.get_category(other_user_id, food_category_id) is None

    # === Transactions ===

    def test_add_and_page_transactions(self, store, user_id):
        rows = [
            {"date": "2026-03-02", "type": "Saida", "value": 20.0, "description": "B",
             "notes": "", "categoryId": None},
            {"date": "2026-03-01", "type": "Entrada", "value": 10.0, "description": "A",
             "notes": "n", "categoryId": None},
        ]
        ids = store.add_transactions(user_id, rows, CREATED)
        assert len(ids) == 2

        page, total = store.get_transactions(user_id, limit=1, offset=0)
        assert total == 2
        assert page[0]["description"] == "A"

    def test_transaction_rolls_back_on_error(self, store, user_id):
        rows = [
            {"date": "2026-03-01", "type": "Entrada", "value": 10.0, "description": "A"},
            {"date": "2026-03-01", "type": "Outro", "value": 10.0, "description": "B"},
        ]
        with pytest.raises(sqlite3.IntegrityError):
            store.add_transactions(user_id, rows, CREATED)

        _, total = store.get_transactions(user_id)
        assert total == 0

    def test_delete_transaction_returns_the_row(self, store, user_id, other_user_id):
        row = {"date": "2026-03-01", "type": "Entrada", "value": 10.0, "description": "A"}
        [transaction_id] = store.add_transactions(user_id, [row], CREATED)

        assert store.delete_transaction(other_user_id, transaction_id) is None
        removed = store.delete_transaction(user_id, transaction_id)
        assert removed["description"] == "A"
        assert store.get_transaction(user_id, transaction_id) is None
        assert store.delete_transaction(user_id, transaction_id) is None

    # === Import Sessions ===

    def test_session_round_trip_is_owner_scoped(self, store, user_id, other_user_id):
        payload = {"normalizedRows": [], "summary": {"totalRows": 0}}
        store.add_import_session("abc", user_id, payload, CREATED, EXPIRES)

        session = store.get_import_session(user_id, "abc")
        assert session["payload"] == payload
        assert session["committed_at"] is None
        assert store.get_import_session(other_user_id, "abc") is None

    def test_claim_succeeds_once(self, store, user_id):
        store.add_import_session("abc", user_id, {}, CREATED, EXPIRES)

        assert store.claim_import_session(user_id, "abc", "2026-03-10T12:01:00.000Z") is True
        assert store.claim_import_session(user_id, "abc", "2026-03-10T12:02:00.000Z") is False
        assert store.get_import_session(user_id, "abc")["committed_at"] == "2026-03-10T12:01:00.000Z"

    def test_claim_rejects_expired_and_foreign(self, store, user_id, other_user_id):
        store.add_import_session("abc", user_id, {}, CREATED, EXPIRES)

        assert store.claim_import_session(other_user_id, "abc", CREATED) is False
        assert store.claim_import_session(user_id, "abc", EXPIRES) is False

    def test_list_sessions_newest_first(self, store, user_id):
        store.add_import_session("a", user_id, {}, "2026-03-01T00:00:00.000Z", EXPIRES)
        store.add_import_session("b", user_id, {}, "2026-03-03T00:00:00.000Z", EXPIRES)
        store.add_import_session("c", user_id, {}, "2026-03-02T00:00:00.000Z", EXPIRES)

        sessions = store.list_import_sessions(user_id, limit=2, offset=0)
        assert [s["id"] for s in sessions] == ["b", "c"]
        assert [s["id"] for s in store.list_import_sessions(user_id, 2, 2)] == ["a"]

    def test_import_metrics(self, store, user_id):
        store.add_import_session("a", user_id, {}, "2026-01-01T00:00:00.000Z", EXPIRES)
        store.add_import_session("b", user_id, {}, "2026-03-05T00:00:00.000Z", EXPIRES)

        metrics = store.get_import_metrics(user_id, "2026-02-01T00:00:00.000Z")
        assert metrics == {"total": 2, "recent": 1, "last_created_at": "2026-03-05T00:00:00.000Z"}

    def test_import_metrics_empty(self, store, user_id):
        metrics = store.get_import_metrics(user_id, CREATED)
        assert metrics == {"total": 0, "recent": 0, "last_created_at": None}

    def test_cleanup_keeps_recent_committed_sessions(self, store, user_id):
        now = datetime(2026, 3, 20, tzinfo=timezone.utc)
        store.add_import_session("expired", user_id, {}, CREATED, EXPIRES)
        store.add_import_session("pending", user_id, {}, CREATED, "2026-03-21T00:00:00.000Z")
        store.add_import_session("recent", user_id, {}, CREATED, EXPIRES)
        store.add_import_session("old", user_id, {}, CREATED, EXPIRES)
        store.claim_import_session(user_id, "recent", "2026-03-10T12:10:00.000Z")
        store.claim_import_session(user_id, "old", "2026-03-10T12:10:00.000Z")
        store.conn.execute(
            "UPDATE transaction_import_sessions SET committed_at = ? WHERE id = 'recent'",
            ("2026-03-18T00:00:00.000Z",)
        )

        assert store.cleanup_import_sessions(now, keep_committed_days=7) == 2

        remaining = {s["id"] for s in store.list_import_sessions(user_id, 10, 0)}
        assert remaining == {"pending", "recent"}
