"""In-process counters for CSV import activity."""
import threading
from typing import Dict


class ImportCounters:
    """Thread-safe counters for dry-runs and commits.

    Values live in process memory and restart from zero with the process.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._dry_run_total = 0
            self._commit_total = 0
            self._commit_success_total = 0
            self._commit_fail_total = 0
            self._rows_total = 0
            self._rows_samples = 0

    def _observe_rows(self, rows: int) -> None:
        self._rows_total += max(int(rows), 0)
        self._rows_samples += 1

    def track_dry_run(self, rows: int) -> None:
        with self._lock:
            self._dry_run_total += 1
            self._observe_rows(rows)

    def track_commit_attempt(self) -> None:
        with self._lock:
            self._commit_total += 1

    def track_commit_success(self, rows_imported: int) -> None:
        with self._lock:
            self._commit_success_total += 1
            self._observe_rows(rows_imported)

    def track_commit_failure(self) -> None:
        with self._lock:
            self._commit_fail_total += 1

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            rows_avg = (
                round(self._rows_total / self._rows_samples, 2)
                if self._rows_samples else 0
            )
            return {
                "import_dry_run_total": self._dry_run_total,
                "import_commit_total": self._commit_total,
                "import_commit_success_total": self._commit_success_total,
                "import_commit_fail_total": self._commit_fail_total,
                "import_rows_avg": rows_avg,
            }


# Shared by every ImportService in the process
import_counters = ImportCounters()
