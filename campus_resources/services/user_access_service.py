from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any


SESSION_TTL_SECONDS = 60 * 60 * 12
MIN_SECRET_LENGTH = 32

ROLES = ("admin", "teacher", "staff", "student")
DEFAULT_ROLE = "student"
RESERVATION_ROLES = {"admin", "teacher"}
REPORT_ROLES = {"admin", "teacher"}


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: str
    display_name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def owns(self, user_id: int | None) -> bool:
        return user_id is not None and int(user_id) == self.user_id


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().lower()
    if role in ROLES:
        return role
    return DEFAULT_ROLE


def require_session_secret(raw: str | None) -> bytes:
    value = (raw or "").strip()
    if len(value) < MIN_SECRET_LENGTH:
        raise RuntimeError(f"SESSION_SIGNING_SECRET must be set and at least {MIN_SECRET_LENGTH} characters long.")
    return value.encode("utf-8")


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(encoded: str) -> bytes:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def create_session(payload: dict[str, Any], secret: bytes, ttl_seconds: int = SESSION_TTL_SECONDS) -> str:
    session_payload = dict(payload)
    session_payload["expiresAt"] = time.time() + max(int(ttl_seconds), 1)
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    signature = hmac.new(secret, encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_b64encode(signature)}"


def get_session(token: str | None, secret: bytes) -> dict[str, Any] | None:
    if not token:
        return None
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(secret, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            return None
        decoded = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError, TypeError):
        return None

    if not isinstance(decoded, dict):
        return None
    try:
        expires_at = float(decoded.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return None
    if time.time() >= expires_at:
        return None
    return decoded


def actor_from_session(session: dict[str, Any] | None) -> Actor | None:
    if not session:
        return None
    try:
        user_id = int(session.get("userId") or 0)
    except (TypeError, ValueError):
        return None
    if user_id <= 0:
        return None
    return Actor(
        user_id=user_id,
        role=normalize_role(session.get("role")),
        display_name=str(session.get("displayName") or f"User #{user_id}"),
    )


def extract_bearer_token(authorization: str | None, session_token: str | None = None) -> str | None:
    raw = (authorization or "").strip()
    if raw.lower().startswith("bearer "):
        token = raw[7:].strip()
        if token:
            return token
    token = (session_token or "").strip()
    return token or None
