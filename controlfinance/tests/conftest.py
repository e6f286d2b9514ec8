"""
Pytest configuration and shared fixtures.
"""
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


SAMPLE_CSV = (
    "date,type,value,description,notes,category\n"
    "2026-03-01,Entrada,1000,Salario,,\n"
    "2026-03-02,Saida,220.50,Mercado,semana,Alimentacao\n"
    "2026-02-31,Saida,10,Data ruim,,\n"
    "2026-03-03,Saida,0,Valor zero,,\n"
)


class FakeClock:
    """Controllable replacement for ``utc_now``."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def temp_db_path(tmp_path) -> Path:
    """Path to a throwaway database file."""
    return tmp_path / "test.db"


@pytest.fixture
def store(temp_db_path):
    from controlfinance.db.sqlite_store import SQLiteStore

    with SQLiteStore(temp_db_path) as store:
        yield store


@pytest.fixture
def counters():
    from controlfinance.api.import_counters import ImportCounters

    return ImportCounters()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def import_service(store, clock, counters):
    from controlfinance.api.import_service import ImportService

    return ImportService(store, clock=clock, counters=counters)


@pytest.fixture
def user_id(store) -> int:
    return store.add_user("ana@example.com", "unused", "2026-03-01T00:00:00.000Z")


@pytest.fixture
def other_user_id(store) -> int:
    return store.add_user("bruno@example.com", "unused", "2026-03-01T00:00:00.000Z")


@pytest.fixture
def food_category_id(store, user_id) -> int:
    return store.add_category(user_id, "Alimentação", "alimentacao", "2026-03-01T00:00:00.000Z")


@pytest.fixture
def sample_csv() -> bytes:
    """Two valid rows (one income, one expense) and two invalid ones."""
    return SAMPLE_CSV.encode("utf-8")


@pytest.fixture
def make_csv():
    """Build CSV bytes from lines."""
    def build(*lines: str, bom: bool = False) -> bytes:
        text = "\n".join(lines) + "\n"
        return (b"\xef\xbb\xbf" if bom else b"") + text.encode("utf-8")
    return build
