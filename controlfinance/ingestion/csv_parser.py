"""CSV parser and header validator for transaction import."""
import io
import warnings
from typing import List, Dict, Any

import pandas as pd

from controlfinance.api.errors import AppError
from controlfinance.config import IMPORT_MAX_ROWS


REQUIRED_HEADERS = ["date", "type", "value", "description"]
OPTIONAL_HEADERS = ["notes", "category"]
ALLOWED_HEADERS = set(REQUIRED_HEADERS + OPTIONAL_HEADERS)
RAW_FIELDS = REQUIRED_HEADERS + OPTIONAL_HEADERS

HEADER_ERROR_MESSAGE = (
    "CSV invalido. Cabecalho esperado: date,type,value,description,notes,category"
)
INVALID_FILE_MESSAGE = "Arquivo invalido. Envie um CSV."


def _normalize_header(value: Any) -> str:
    return str(value if value is not None else "").strip().lower()


def _read_records(content: bytes) -> pd.DataFrame:
    """Tokenize raw bytes into a DataFrame of strings, one row per record."""
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise AppError(400, INVALID_FILE_MESSAGE)

    try:
        with warnings.catch_warnings():
            # Rows longer than the first record are truncated by pandas.
            warnings.simplefilter("ignore", pd.errors.ParserWarning)
            df = pd.read_csv(
                io.StringIO(text),
                header=None,
                index_col=False,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                engine="python",
                on_bad_lines=lambda fields: fields,
            )
    except pd.errors.EmptyDataError:
        raise AppError(400, HEADER_ERROR_MESSAGE)
    except (pd.errors.ParserError, ValueError):
        raise AppError(400, INVALID_FILE_MESSAGE)

    # Short rows are padded with NaN.
    return df.fillna("")


def validate_headers(header_row: List[Any]) -> List[str]:
    """Validate the header record and return the normalized column names.

    Order is irrelevant; every column must be known, non-empty and unique,
    and all required columns must be present.
    """
    headers = [_normalize_header(h) for h in header_row]
    unique = set(headers)

    if (
        not headers
        or len(unique) != len(headers)
        or any(not h or h not in ALLOWED_HEADERS for h in headers)
    ):
        raise AppError(400, HEADER_ERROR_MESSAGE)

    if any(required not in unique for required in REQUIRED_HEADERS):
        raise AppError(400, HEADER_ERROR_MESSAGE)

    return headers


def build_raw_row(values: Dict[str, Any]) -> Dict[str, str]:
    """Project a header->cell mapping onto the six import fields."""
    raw = {}
    for field in RAW_FIELDS:
        value = values.get(field)
        raw[field] = "" if value is None else str(value)
    return raw


def parse_csv_rows(content: bytes, max_rows: int = IMPORT_MAX_ROWS) -> List[Dict[str, Any]]:
    """Parse an uploaded CSV into ``{"line", "raw"}`` records.

    Args:
        content: Raw file bytes (UTF-8, optional BOM)
        max_rows: Maximum number of data rows accepted

    Returns:
        One dict per data row; the first data row is line 2.

    Raises:
        AppError: 400 for undecodable content, a bad header or too many rows
    """
    df = _read_records(content)

    if df.empty:
        raise AppError(400, HEADER_ERROR_MESSAGE)

    records = df.values.tolist()
    headers = validate_headers(records[0])
    data_rows = records[1:]

    if len(data_rows) > max_rows:
        raise AppError(400, f"CSV excede o limite de {max_rows} linhas.")

    parsed = []
    for index, values in enumerate(data_rows):
        cells = {
            header: values[position] if position < len(values) else ""
            for position, header in enumerate(headers)
        }
        parsed.append({"line": index + 2, "raw": build_raw_row(cells)})

    return parsed
