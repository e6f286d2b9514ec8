"""Password registration, login and bearer-token lookup."""
import hashlib
import logging
import secrets
import sqlite3
from typing import Any, Dict, Optional

import bcrypt

from controlfinance.api.errors import AppError
from controlfinance.config import PASSWORD_MAX_BYTES, PASSWORD_MIN_LENGTH
from controlfinance.db.sqlite_store import SQLiteStore, format_timestamp, utc_now


logger = logging.getLogger(__name__)

CREDENTIALS_REQUIRED = "Email e senha sao obrigatorios."
PASSWORD_TOO_SHORT = f"A senha deve ter no minimo {PASSWORD_MIN_LENGTH} caracteres."
PASSWORD_TOO_LONG = f"A senha deve ter no maximo {PASSWORD_MAX_BYTES} bytes."
USER_EXISTS = "Usuario ja cadastrado."
INVALID_CREDENTIALS = "Credenciais invalidas."


def normalize_email(email: Any) -> str:
    return email.strip().lower() if isinstance(email, str) else ""


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or an over-long password
        return False


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthService:
    """Issues opaque bearer tokens for email/password users."""

    def __init__(self, store: SQLiteStore):
        self.store = store

    def register(self, email: Any, password: Any) -> Dict[str, Any]:
        """Create a user. Raises AppError 400 on bad input, 409 on duplicates."""
        email = normalize_email(email)
        if not email or not isinstance(password, str) or not password:
            raise AppError(400, CREDENTIALS_REQUIRED)
        if len(password) < PASSWORD_MIN_LENGTH:
            raise AppError(400, PASSWORD_TOO_SHORT)
        if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
            raise AppError(400, PASSWORD_TOO_LONG)

        try:
            user_id = self.store.add_user(
                email, hash_password(password), format_timestamp(utc_now())
            )
        except sqlite3.IntegrityError:
            raise AppError(409, USER_EXISTS)

        logger.info(f"Registered user {user_id}")
        return {"id": user_id, "email": email}

    def authenticate(self, email: Any, password: Any) -> Dict[str, Any]:
        """Check credentials and issue a token.

        Returns:
            Dict with token and user
        """
        email = normalize_email(email)
        if not email or not isinstance(password, str) or not password:
            raise AppError(400, CREDENTIALS_REQUIRED)

        user = self.store.get_user_by_email(email)
        if not user or not verify_password(password, user["password_hash"]):
            raise AppError(401, INVALID_CREDENTIALS)

        token = secrets.token_urlsafe(32)
        self.store.add_auth_token(hash_token(token), user["id"], format_timestamp(utc_now()))
        return {"token": token, "user": {"id": user["id"], "email": user["email"]}}

    def resolve_token(self, token: str) -> Optional[int]:
        """Get the user id a bearer token belongs to."""
        if not token:
            return None
        return self.store.get_user_id_for_token(hash_token(token))
