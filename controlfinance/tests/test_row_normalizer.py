"""Tests for per-row validation of imported CSV rows."""
import pytest

from controlfinance.ingestion.normalize import normalize_category_key, normalize_category_name
from controlfinance.ingestion.row_normalizer import (
    CATEGORY_ERROR,
    DATE_ERROR,
    TYPE_ERROR,
    VALUE_ERROR,
    normalize_date,
    normalize_row,
    normalize_type,
    normalize_value,
    parse_decimal,
    resolve_category,
    summarize_rows,
)


def raw_row(**overrides):
    row = {
        "date": "2026-03-01",
        "type": "Entrada",
        "value": "100",
        "description": "Salario",
        "notes": "",
        "category": "",
    }
    row.update(overrides)
    return row


class TestFieldValidators:

    @pytest.mark.parametrize("value,expected", [
        ("220.50", 220.5),
        ("1.234,56", 1234.56),
        ("1,234.56", 1234.56),
        ("10,5", 10.5),
        (" 1 000,00 ", 1000.0),
        ("3.14159", 3.14),
        ("10.125", 10.13),
        ("0,125", 0.13),
        ("2.675", 2.68),
        ("1.234,565", 1234.57),
    ])
    def test_value_accepts_decimal_formats(self, value, expected):
        result = normalize_value(value)
        assert result.ok
        assert result.value == expected

    @pytest.mark.parametrize("value", [
        "0", "-5", "", "abc", "1_000", "inf", "nan", "R$ 10", "0.004", "1e100"
    ])
    def test_value_rejects_non_positive_or_malformed(self, value):
        result = normalize_value(value)
        assert not result.ok
        assert result.error == VALUE_ERROR

    def test_parse_decimal_returns_none_for_garbage(self):
        assert parse_decimal("12abc") is None
        assert parse_decimal(None) is None

    @pytest.mark.parametrize("value", ["2026-03-01", " 2024-02-29 "])
    def test_date_accepts_real_days(self, value):
        assert normalize_date(value).ok

    @pytest.mark.parametrize("value", ["2026-02-31", "2026-2-1", "01/03/2026", "2025-02-29", ""])
    def test_date_rejects_invalid(self, value):
        assert normalize_date(value).error == DATE_ERROR

    @pytest.mark.parametrize("value,expected", [
        ("Entrada", "Entrada"),
        ("entrada", "Entrada"),
        (" SAIDA ", "Saida"),
        ("Saída", "Saida"),
    ])
    def test_type_is_canonicalized(self, value, expected):
        assert normalize_type(value).value == expected

    @pytest.mark.parametrize("value", ["Income", "", "Saidas"])
    def test_type_rejects_unknown(self, value):
        assert normalize_type(value).error == TYPE_ERROR

    def test_category_lookup_ignores_case_accents_and_spacing(self):
        category_map = {"cafe": 1, "alimentacao": 2}
        assert resolve_category("Café", category_map).value == 1
        assert resolve_category(" alimentacao ", category_map).value == 2
        assert resolve_category("ALIMENTAÇÃO", category_map).value == 2

    def test_empty_category_means_uncategorized(self):
        result = resolve_category("  ", {"cafe": 1})
        assert result.ok
        assert result.value is None

    def test_unknown_category_is_an_error(self):
        assert resolve_category("Viagem", {"cafe": 1}).error == CATEGORY_ERROR


class TestCategoryNames:

    def test_display_name_collapses_whitespace(self):
        assert normalize_category_name("  Casa   e  Lazer ") == "Casa e Lazer"

    def test_key_matches_accent_variants(self):
        assert normalize_category_key("Alimentação") == normalize_category_key(" alimentacao ")


class TestNormalizeRow:

    def test_valid_row(self):
        result = normalize_row(
            raw_row(value="1.234,56", notes="  nota ", category="Café", type="saída"),
            {"cafe": 7}
        )
        assert result["status"] == "valid"
        assert result["errors"] == []
        assert result["normalized"] == {
            "date": "2026-03-01",
            "type": "Saida",
            "value": 1234.56,
            "description": "Salario",
            "notes": "nota",
            "categoryId": 7,
        }

    def test_collects_every_field_error(self):
        result = normalize_row(
            raw_row(date="2026-02-31", type="x", value="0", description=" ", category="Nada"),
            {}
        )
        assert result["status"] == "invalid"
        assert result["normalized"] is None
        assert [e["field"] for e in result["errors"]] == [
            "date", "type", "value", "description", "category"
        ]

    def test_missing_fields_are_invalid(self):
        result = normalize_row({}, {})
        assert result["status"] == "invalid"
        assert {e["field"] for e in result["errors"]} == {"date", "type", "value", "description"}


class TestSummarizeRows:

    def test_counts_partition_total_and_sums_by_type(self):
        category_map = {}
        raws = [
            raw_row(type="Entrada", value="1000"),
            raw_row(type="Saida", value="220.50"),
            raw_row(type="Saida", value="0.1"),
            raw_row(type="Saida", value="0.2"),
            raw_row(date="2026-02-31"),
            raw_row(value="-5"),
        ]
        rows = [normalize_row(raw, category_map) for raw in raws]
        summary = summarize_rows(rows)

        assert summary["totalRows"] == 6
        assert summary["validRows"] == 4
        assert summary["invalidRows"] == 2
        assert summary["validRows"] + summary["invalidRows"] == summary["totalRows"]
        assert summary["income"] == 1000.0
        assert summary["expense"] == 220.8

    def test_empty(self):
        assert summarize_rows([]) == {
            "totalRows": 0, "validRows": 0, "invalidRows": 0, "income": 0.0, "expense": 0.0
        }
