"""Configuration settings for the Control Finance API."""
import os
from pathlib import Path
from typing import Dict


def _env_positive_int(name: str, default: int) -> int:
    """Read a positive integer from the environment, falling back to default."""
    raw = os.environ.get(name, "")
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


# Paths
DATA_DIR = Path(os.environ.get("CONTROLFINANCE_DATA_DIR", Path.home() / ".controlfinance"))
DB_PATH = Path(os.environ.get("CONTROLFINANCE_DB", DATA_DIR / "controlfinance.db"))

# Server
HOST = os.environ.get("CONTROLFINANCE_HOST", "127.0.0.1")
PORT = _env_positive_int("CONTROLFINANCE_PORT", 8000)
VERSION = "1.0.0"

# CSV import
IMPORT_TTL_MINUTES = 30
IMPORT_MAX_ROWS = _env_positive_int("CONTROLFINANCE_IMPORT_MAX_ROWS", 2000)
IMPORT_MAX_FILE_BYTES = 2 * 1024 * 1024
IMPORT_SESSION_KEEP_COMMITTED_DAYS = _env_positive_int(
    "CONTROLFINANCE_IMPORT_SESSION_KEEP_COMMITTED_DAYS", 7
)

# Rate limiting (seconds)
IMPORT_RATE_LIMIT_WINDOW = _env_positive_int("CONTROLFINANCE_IMPORT_RATE_LIMIT_WINDOW", 60)
IMPORT_RATE_LIMIT_MAX = _env_positive_int("CONTROLFINANCE_IMPORT_RATE_LIMIT_MAX", 10)
AUTH_RATE_LIMIT_WINDOW = _env_positive_int("CONTROLFINANCE_AUTH_RATE_LIMIT_WINDOW", 15 * 60)
AUTH_RATE_LIMIT_MAX = _env_positive_int("CONTROLFINANCE_AUTH_RATE_LIMIT_MAX", 20)

# Login brute-force protection (seconds)
BRUTE_FORCE_WINDOW = _env_positive_int("CONTROLFINANCE_BRUTE_FORCE_WINDOW", 15 * 60)
BRUTE_FORCE_MAX_ATTEMPTS = _env_positive_int("CONTROLFINANCE_BRUTE_FORCE_MAX_ATTEMPTS", 5)
BRUTE_FORCE_LOCK = _env_positive_int("CONTROLFINANCE_BRUTE_FORCE_LOCK", 15 * 60)

# Passwords
PASSWORD_MIN_LENGTH = 6
# bcrypt only reads the first 72 bytes
PASSWORD_MAX_BYTES = 72

# Entitlements granted when no billing collaborator is wired in
DEFAULT_PLAN_FEATURES: Dict[str, bool] = {
    "csv_import": True,
    "csv_export": True,
}


def ensure_data_dir() -> Path:
    """Ensure the data directory exists."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    return DATA_DIR
