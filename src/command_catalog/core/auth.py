from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from .storage import Storage
from .utils import access_ttl_minutes, now_iso, refresh_ttl_hours

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200_000
SALT_BYTES = 16
ACCESS_TOKEN_PREFIX = "cca_"
REFRESH_TOKEN_PREFIX = "ccr_"
ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class AuthUser:
    user_id: int
    email: str
    name: str | None
    is_admin: bool


class AuthError(Exception):
    """Credentials or token rejected."""


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_password(password: str) -> str:
    salt = secrets.token_bytes(SALT_BYTES)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return "pbkdf2_sha256${}${}${}".format(
        PBKDF2_ITERATIONS,
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(dk).decode("ascii"),
    )


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, iter_s, salt_b64, hash_b64 = encoded.split("$", 3)
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    try:
        iterations = int(iter_s)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected = base64.b64decode(hash_b64.encode("ascii"))
    except (ValueError, binascii.Error):
        return False
    computed = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(computed, expected)


def generate_token(kind: str) -> str:
    prefix = ACCESS_TOKEN_PREFIX if kind == ACCESS else REFRESH_TOKEN_PREFIX
    return prefix + secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _expires_at(kind: str) -> str:
    if kind == ACCESS:
        delta = timedelta(minutes=access_ttl_minutes())
    else:
        delta = timedelta(hours=refresh_ttl_hours())
    return (datetime.now(timezone.utc) + delta).isoformat()


def _is_expired(expires_at: str | None) -> bool:
    if not expires_at:
        return True
    try:
        return datetime.fromisoformat(expires_at) <= datetime.now(timezone.utc)
    except ValueError:
        return True


def _issue(storage: Storage, user_id: int, kind: str) -> str:
    token = generate_token(kind)
    storage.create_token(user_id, kind, hash_token(token), now_iso(), _expires_at(kind))
    return token


def _auth_user_from_row(row: dict[str, Any]) -> AuthUser:
    return AuthUser(
        user_id=int(row["user_id"]),
        email=str(row["email"]),
        name=row.get("name"),
        is_admin=bool(row.get("is_admin")),
    )


def obtain_token_pair(storage: Storage, email: str, password: str) -> dict[str, str]:
    user = storage.fetch_user_by_email(normalize_email(email))
    if not user or user.get("disabled_at") or not verify_password(password, user["password_hash"]):
        logger.warning("rejected credentials for %s", normalize_email(email))
        raise AuthError("No active account found with the given credentials")
    user_id = int(user["user_id"])
    return {"access": _issue(storage, user_id, ACCESS), "refresh": _issue(storage, user_id, REFRESH)}


def _lookup(storage: Storage, token: str, kind: str) -> dict[str, Any] | None:
    row = storage.fetch_token_by_hash(hash_token(token), kind)
    if not row or row.get("revoked_at") or row.get("disabled_at"):
        return None
    if _is_expired(row.get("expires_at")):
        return None
    return row


def refresh_access_token(storage: Storage, refresh_token: str) -> dict[str, str]:
    row = _lookup(storage, refresh_token, REFRESH)
    if row is None:
        logger.warning("rejected refresh token")
        raise AuthError("Token is invalid or expired")
    return {"access": _issue(storage, int(row["user_id"]), ACCESS)}


def authenticate_access_token(storage: Storage, token: str) -> AuthUser | None:
    row = _lookup(storage, token, ACCESS)
    if row is None:
        return None
    return _auth_user_from_row(row)
