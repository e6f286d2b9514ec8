"""Text normalization shared by category storage and CSV import."""
import re
import unicodedata

MULTIPLE_SPACES = re.compile(r"\s+")


def strip_diacritics(value: str) -> str:
    """Remove combining marks ("Alimentação" -> "Alimentacao")."""
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_category_name(value) -> str:
    """Display form of a category name: trimmed, single-spaced."""
    return MULTIPLE_SPACES.sub(" ", str(value or "").strip())


def normalize_category_key(value) -> str:
    """Lookup key for a category name.

    Two names that differ only in case, accents or spacing share a key.
    """
    return strip_diacritics(normalize_category_name(value)).lower()
