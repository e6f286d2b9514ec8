"""Per-row validation and normalization of imported CSV rows.

Every field validator is a pure function returning a ``FieldResult``; a row
collects all field failures instead of stopping at the first one.
"""
import re
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, NamedTuple, Optional

from controlfinance.ingestion.normalize import normalize_category_key, strip_diacritics


TYPE_ENTRY = "Entrada"
TYPE_EXIT = "Saida"

ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
WHITESPACE = re.compile(r"\s+")
CENTS = Decimal("0.01")

DATE_ERROR = "Data invalida. Use YYYY-MM-DD."
TYPE_ERROR = "Tipo invalido. Use Entrada ou Saida."
VALUE_ERROR = "Valor invalido. Informe um numero maior que zero."
DESCRIPTION_ERROR = "Descricao e obrigatoria."
CATEGORY_ERROR = "Categoria nao encontrada."


class FieldResult(NamedTuple):
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def normalize_date(value: Any) -> FieldResult:
    """Accept only ``YYYY-MM-DD`` strings naming a real calendar day."""
    text = _text(value).strip()
    if not ISO_DATE.match(text):
        return FieldResult(error=DATE_ERROR)
    try:
        parsed = date.fromisoformat(text)
    except ValueError:
        return FieldResult(error=DATE_ERROR)
    return FieldResult(parsed.isoformat())


def normalize_type(value: Any) -> FieldResult:
    key = strip_diacritics(_text(value).strip()).lower()
    if key == "entrada":
        return FieldResult(TYPE_ENTRY)
    if key == "saida":
        return FieldResult(TYPE_EXIT)
    return FieldResult(error=TYPE_ERROR)


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse a number written with ``.`` or ``,`` as decimal mark.

    When both appear the right-most one is the decimal mark and the other
    is a thousands separator: "1.234,56" -> 1234.56, "1,234.56" -> 1234.56.
    """
    compact = WHITESPACE.sub("", _text(value).strip())
    if not compact or "_" in compact:
        return None

    has_comma = "," in compact
    has_dot = "." in compact
    if has_comma and has_dot:
        if compact.rfind(",") > compact.rfind("."):
            compact = compact.replace(".", "").replace(",", ".", 1)
        else:
            compact = compact.replace(",", "")
    elif has_comma:
        compact = compact.replace(",", ".", 1)

    try:
        number = Decimal(compact)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def normalize_value(value: Any) -> FieldResult:
    """Positive amount rounded half away from zero to cents."""
    number = parse_decimal(value)
    if number is None or number <= 0:
        return FieldResult(error=VALUE_ERROR)
    try:
        cents = number.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return FieldResult(error=VALUE_ERROR)
    if cents <= 0:
        return FieldResult(error=VALUE_ERROR)
    return FieldResult(float(cents))


def normalize_description(value: Any) -> FieldResult:
    text = _text(value).strip()
    if not text:
        return FieldResult(error=DESCRIPTION_ERROR)
    return FieldResult(text)


def normalize_notes(value: Any) -> FieldResult:
    return FieldResult(_text(value).strip())


def resolve_category(value: Any, category_map: Dict[str, int]) -> FieldResult:
    """Map a category name onto the user's category id; empty means none."""
    key = normalize_category_key(value)
    if not key:
        return FieldResult(None)
    category_id = category_map.get(key)
    if category_id is None:
        return FieldResult(error=CATEGORY_ERROR)
    return FieldResult(category_id)


def normalize_row(raw: Dict[str, str], category_map: Dict[str, int]) -> Dict[str, Any]:
    """Validate one raw CSV row.

    Returns:
        ``{"status": "valid", "normalized": {...}, "errors": []}`` or
        ``{"status": "invalid", "normalized": None, "errors": [{field, message}, ...]}``
    """
    results = {
        "date": normalize_date(raw.get("date")),
        "type": normalize_type(raw.get("type")),
        "value": normalize_value(raw.get("value")),
        "description": normalize_description(raw.get("description")),
        "category": resolve_category(raw.get("category"), category_map),
    }

    errors: List[Dict[str, str]] = [
        {"field": field, "message": result.error}
        for field, result in results.items()
        if not result.ok
    ]
    if errors:
        return {"status": "invalid", "normalized": None, "errors": errors}

    return {
        "status": "valid",
        "normalized": {
            "date": results["date"].value,
            "type": results["type"].value,
            "value": results["value"].value,
            "description": results["description"].value,
            "notes": normalize_notes(raw.get("notes")).value,
            "categoryId": results["category"].value,
        },
        "errors": [],
    }


def summarize_rows(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Counts and monetary totals over normalized rows."""
    summary = {
        "totalRows": len(rows),
        "validRows": 0,
        "invalidRows": 0,
        "income": 0.0,
        "expense": 0.0,
    }
    for row in rows:
        if row["status"] != "valid":
            summary["invalidRows"] += 1
            continue
        summary["validRows"] += 1
        normalized = row["normalized"]
        if normalized["type"] == TYPE_ENTRY:
            summary["income"] += normalized["value"]
        elif normalized["type"] == TYPE_EXIT:
            summary["expense"] += normalized["value"]

    summary["income"] = round(summary["income"], 2)
    summary["expense"] = round(summary["expense"], 2)
    return summary
