"""Finance service - main orchestration layer."""
from pathlib import Path
from typing import List, Dict, Any, Optional
import logging
import sqlite3

from controlfinance.config import DB_PATH, ensure_data_dir
from controlfinance.api.auth_service import AuthService
from controlfinance.api.errors import AppError
from controlfinance.api.import_service import ImportService, parse_pagination_value
from controlfinance.db.sqlite_store import SQLiteStore, format_timestamp, utc_now
from controlfinance.ingestion.normalize import normalize_category_key, normalize_category_name
from controlfinance.ingestion.row_normalizer import (
    normalize_date,
    normalize_description,
    normalize_notes,
    normalize_type,
    normalize_value,
)


logger = logging.getLogger(__name__)

CATEGORY_NAME_REQUIRED = "Nome da categoria e obrigatorio."
CATEGORY_EXISTS = "Categoria ja existe."
CATEGORY_NOT_FOUND = "Categoria nao encontrada."
TRANSACTION_NOT_FOUND = "Transacao nao encontrada."


class FinanceService:
    """Main service for the finance API.

    Owns the store and wires the auth and import services to it.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        import_service_options: Optional[Dict[str, Any]] = None
    ):
        """Initialize the finance service.

        Args:
            db_path: Path to SQLite database (default: ~/.controlfinance/controlfinance.db)
            import_service_options: Extra keyword arguments for ImportService
        """
        if db_path is None:
            ensure_data_dir()
        self.db_path = db_path or DB_PATH

        self.store = SQLiteStore(self.db_path)
        self.auth = AuthService(self.store)
        self.imports = ImportService(self.store, **(import_service_options or {}))

    def close(self):
        """Close all connections."""
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # === Categories ===

    def get_categories(self, user_id: int, include_deleted: bool = False) -> List[Dict[str, Any]]:
        return self.store.get_categories(user_id, include_deleted=include_deleted)

    @staticmethod
    def _category_name(name: Any) -> str:
        display_name = normalize_category_name(name)
        if not display_name:
            raise AppError(400, CATEGORY_NAME_REQUIRED)
        return display_name

    def create_category(self, user_id: int, name: Any) -> Dict[str, Any]:
        """Create a category; names equal after normalization conflict."""
        display_name = self._category_name(name)

        try:
            category_id = self.store.add_category(
                user_id,
                display_name,
                normalize_category_key(display_name),
                format_timestamp(utc_now())
            )
        except sqlite3.IntegrityError:
            raise AppError(409, CATEGORY_EXISTS)

        logger.info(f"Created category {category_id} for user {user_id}")
        return {"id": category_id, "name": display_name}

    def rename_category(self, user_id: int, category_id: int, name: Any) -> Dict[str, Any]:
        """Rename an active category."""
        display_name = self._category_name(name)

        try:
            renamed = self.store.rename_category(
                user_id, category_id, display_name, normalize_category_key(display_name)
            )
        except sqlite3.IntegrityError:
            raise AppError(409, CATEGORY_EXISTS)

        if not renamed:
            raise AppError(404, CATEGORY_NOT_FOUND)
        return {"id": category_id, "name": display_name}

    def delete_category(self, user_id: int, category_id: int) -> None:
        if not self.store.soft_delete_category(user_id, category_id, format_timestamp(utc_now())):
            raise AppError(404, CATEGORY_NOT_FOUND)

    def restore_category(self, user_id: int, category_id: int) -> Dict[str, Any]:
        """Bring back a soft-deleted category so imports resolve it again.

        Restoring an active category is a no-op.
        """
        category = self.store.get_category(user_id, category_id)
        if category is None:
            raise AppError(404, CATEGORY_NOT_FOUND)

        if category["deleted_at"]:
            try:
                self.store.restore_category(user_id, category_id)
            except sqlite3.IntegrityError:
                raise AppError(409, CATEGORY_EXISTS)
            logger.info(f"Restored category {category_id} for user {user_id}")

        return {"id": category["id"], "name": category["name"]}

    # === Transactions ===

    @staticmethod
    def _transaction_to_dict(row: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "date": row["date"],
            "type": row["type"],
            "value": row["value"],
            "description": row["description"],
            "notes": row["notes"],
            "categoryId": row["category_id"],
        }

    def get_transactions(self, user_id: int, limit: Any = None, offset: Any = None) -> Dict[str, Any]:
        """Get a page of the user's ledger."""
        limit = parse_pagination_value(limit, 20, 1, 100)
        offset = parse_pagination_value(offset, 0, 0, None)
        rows, total = self.store.get_transactions(user_id, limit, offset)
        data = [self._transaction_to_dict(row) for row in rows]
        return {"data": data, "meta": {"total": total, "limit": limit, "offset": offset}}

    def create_transaction(
        self,
        user_id: int,
        transaction_type: Any,
        value: Any,
        description: Any,
        date: Any = None,
        notes: Any = None,
        category_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Add one transaction by hand, validated like an imported row.

        An empty date means today (UTC).
        """
        now = utc_now()
        if date is None or (isinstance(date, str) and not date.strip()):
            date = now.date().isoformat()

        results = [
            normalize_date(date),
            normalize_type(transaction_type),
            normalize_value(value),
            normalize_description(description),
        ]
        for result in results:
            if not result.ok:
                raise AppError(400, result.error)

        if category_id is not None:
            category = self.store.get_category(user_id, category_id)
            if category is None or category["deleted_at"]:
                raise AppError(404, CATEGORY_NOT_FOUND)

        row = {
            "date": results[0].value,
            "type": results[1].value,
            "value": results[2].value,
            "description": results[3].value,
            "notes": normalize_notes(notes).value,
            "categoryId": category_id,
        }
        [transaction_id] = self.store.add_transactions(
            user_id, [row], created_at=format_timestamp(now)
        )
        logger.info(f"Created transaction {transaction_id} for user {user_id}")
        return self._transaction_to_dict(self.store.get_transaction(user_id, transaction_id))

    def delete_transaction(self, user_id: int, transaction_id: int) -> Dict[str, Any]:
        """Delete a transaction and return it."""
        removed = self.store.delete_transaction(user_id, transaction_id)
        if removed is None:
            raise AppError(404, TRANSACTION_NOT_FOUND)
        return self._transaction_to_dict(removed)
