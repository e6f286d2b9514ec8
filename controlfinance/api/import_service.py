"""CSV import service: dry-run, commit, history and metrics."""
import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from controlfinance.api.errors import AppError
from controlfinance.api.import_counters import ImportCounters, import_counters
from controlfinance.config import IMPORT_MAX_ROWS, IMPORT_TTL_MINUTES
from controlfinance.db.sqlite_store import (
    SQLiteStore,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from controlfinance.ingestion.csv_parser import parse_csv_rows
from controlfinance.ingestion.row_normalizer import (
    TYPE_ENTRY,
    TYPE_EXIT,
    normalize_row,
    summarize_rows,
)


logger = logging.getLogger(__name__)

IMPORT_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
PAGINATION_DEFAULT_LIMIT = 20
PAGINATION_MAX_LIMIT = 100
METRICS_RECENT_DAYS = 30

IMPORT_ID_REQUIRED = "importId e obrigatorio."
IMPORT_ID_INVALID = "importId invalido."
SESSION_NOT_FOUND = "Sessao de importacao nao encontrada."
SESSION_ALREADY_COMMITTED = "Importacao ja confirmada."
SESSION_EXPIRED = "Sessao de importacao expirada."
PAGINATION_INVALID = "Paginacao invalida."


def parse_pagination_value(value: Any, default: int, minimum: int, maximum: Optional[int]) -> int:
    """Parse a limit/offset that may arrive as an int or a query string."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise AppError(400, PAGINATION_INVALID)
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and value.strip().isdecimal():
        number = int(value.strip())
    else:
        raise AppError(400, PAGINATION_INVALID)

    if number < minimum or (maximum is not None and number > maximum):
        raise AppError(400, PAGINATION_INVALID)
    return number


def _truncate_to_millis(moment: datetime) -> datetime:
    return moment.replace(microsecond=moment.microsecond // 1000 * 1000)


class ImportService:
    """Two-phase CSV import.

    ``dry_run`` validates a file and stores the valid rows in a pending
    session; ``commit`` moves those rows into the ledger exactly once.
    """

    def __init__(
        self,
        store: SQLiteStore,
        clock: Callable[[], datetime] = utc_now,
        counters: ImportCounters = import_counters,
        ttl_minutes: int = IMPORT_TTL_MINUTES,
        max_rows: int = IMPORT_MAX_ROWS
    ):
        """Initialize the import service.

        Args:
            store: Database store
            clock: Returns the current aware UTC datetime
            counters: Activity counters to update
            ttl_minutes: Lifetime of a pending session
            max_rows: Maximum number of data rows per file
        """
        self.store = store
        self.clock = clock
        self.counters = counters
        self.ttl = timedelta(minutes=ttl_minutes)
        self.max_rows = max_rows

    def _now(self) -> datetime:
        return _truncate_to_millis(self.clock())

    # === Dry-run ===

    def dry_run(self, user_id: int, content: bytes) -> Dict[str, Any]:
        """Validate a CSV file and persist a pending import session.

        Invalid rows are reported back but are not stored in the session.

        Returns:
            Dict with importId, expiresAt, summary and per-row detail
        """
        parsed_rows = parse_csv_rows(content, max_rows=self.max_rows)
        category_map = self.store.get_category_map(user_id)

        rows = []
        for parsed in parsed_rows:
            result = normalize_row(parsed["raw"], category_map)
            rows.append({
                "line": parsed["line"],
                "status": result["status"],
                "raw": parsed["raw"],
                "normalized": result["normalized"],
                "errors": result["errors"],
            })

        summary = summarize_rows(rows)
        normalized_rows = [
            row["normalized"] for row in rows
            if row["status"] == "valid" and row["normalized"]
        ]

        now = self._now()
        expires_at = format_timestamp(now + self.ttl)
        import_id = str(uuid.uuid4())
        self.store.add_import_session(
            import_id,
            user_id,
            {"normalizedRows": normalized_rows, "summary": summary},
            created_at=format_timestamp(now),
            expires_at=expires_at,
        )

        self.counters.track_dry_run(summary["totalRows"])
        logger.info(
            f"dry_run.completed import_id={import_id} user_id={user_id} "
            f"rows={summary['totalRows']} valid={summary['validRows']} "
            f"invalid={summary['invalidRows']} metrics={self.counters.snapshot()}"
        )

        return {
            "importId": import_id,
            "expiresAt": expires_at,
            "summary": summary,
            "rows": rows,
        }

    # === Commit ===

    @staticmethod
    def validate_import_id(import_id: Any) -> str:
        """Return the trimmed import id or raise a 400."""
        if import_id is None or (isinstance(import_id, str) and not import_id.strip()):
            raise AppError(400, IMPORT_ID_REQUIRED)
        if not isinstance(import_id, str) or not IMPORT_ID_PATTERN.match(import_id.strip()):
            raise AppError(400, IMPORT_ID_INVALID)
        return import_id.strip().lower()

    @staticmethod
    def _ensure_committable(session: Optional[Dict[str, Any]], now: datetime) -> None:
        """Raise the error matching the session's state, if any.

        Already committed takes precedence over expired.
        """
        if session is None:
            raise AppError(404, SESSION_NOT_FOUND)
        if session["committed_at"]:
            raise AppError(409, SESSION_ALREADY_COMMITTED)
        if parse_timestamp(session["expires_at"]) <= now:
            raise AppError(410, SESSION_EXPIRED)

    def commit(self, user_id: int, import_id: Any) -> Dict[str, Any]:
        """Insert a pending session's rows into the ledger.

        Raises:
            AppError: 400 bad id, 404 unknown or foreign session,
                409 already committed, 410 expired
        """
        self.counters.track_commit_attempt()
        try:
            result = self._commit(user_id, import_id)
        except AppError as e:
            self.counters.track_commit_failure()
            logger.warning(
                f"commit.failed import_id={import_id} user_id={user_id} "
                f"status={e.status_code} metrics={self.counters.snapshot()}"
            )
            raise

        self.counters.track_commit_success(result["imported"])
        logger.info(
            f"commit.completed import_id={import_id} user_id={user_id} "
            f"imported={result['imported']} metrics={self.counters.snapshot()}"
        )
        return result

    def _commit(self, user_id: int, import_id: Any) -> Dict[str, Any]:
        import_id = self.validate_import_id(import_id)
        now = self._now()

        session = self.store.get_import_session(user_id, import_id)
        self._ensure_committable(session, now)

        rows: List[Dict[str, Any]] = session["payload"].get("normalizedRows") or []
        now_str = format_timestamp(now)

        with self.store.transaction():
            if not self.store.claim_import_session(user_id, import_id, now_str):
                # Lost a race: report the state the winner left behind.
                self._ensure_committable(self.store.get_import_session(user_id, import_id), now)
                raise AppError(409, SESSION_ALREADY_COMMITTED)
            self.store.add_transactions(user_id, rows, created_at=now_str)

        income = round(sum(r["value"] for r in rows if r["type"] == TYPE_ENTRY), 2)
        expense = round(sum(r["value"] for r in rows if r["type"] == TYPE_EXIT), 2)
        return {
            "imported": len(rows),
            "summary": {
                "income": income,
                "expense": expense,
                "balance": round(income - expense, 2),
            },
        }

    # === History ===

    def list_sessions(self, user_id: int, limit: Any = None, offset: Any = None) -> Dict[str, Any]:
        """Get the user's import sessions, newest first."""
        limit = parse_pagination_value(limit, PAGINATION_DEFAULT_LIMIT, 1, PAGINATION_MAX_LIMIT)
        offset = parse_pagination_value(offset, 0, 0, None)

        items = []
        for session in self.store.list_import_sessions(user_id, limit, offset):
            summary = session["payload"].get("summary") or {}
            valid_rows = int(summary.get("validRows") or 0)
            items.append({
                "id": session["id"],
                "createdAt": session["created_at"],
                "expiresAt": session["expires_at"],
                "committedAt": session["committed_at"],
                "summary": {
                    "totalRows": int(summary.get("totalRows") or 0),
                    "validRows": valid_rows,
                    "invalidRows": int(summary.get("invalidRows") or 0),
                    "income": summary.get("income") or 0,
                    "expense": summary.get("expense") or 0,
                    "imported": valid_rows if session["committed_at"] else 0,
                },
            })

        return {"items": items, "pagination": {"limit": limit, "offset": offset}}

    def get_metrics(self, user_id: int) -> Dict[str, Any]:
        """Session totals for the user."""
        since = format_timestamp(self._now() - timedelta(days=METRICS_RECENT_DAYS))
        metrics = self.store.get_import_metrics(user_id, since)
        return {
            "total": metrics["total"],
            "last30Days": metrics["recent"],
            "lastImportAt": metrics["last_created_at"],
        }

    def cleanup(self, keep_committed_days: int) -> int:
        """Delete expired and long-committed sessions."""
        deleted = self.store.cleanup_import_sessions(self._now(), keep_committed_days)
        logger.info(f"Removed {deleted} import sessions")
        return deleted
