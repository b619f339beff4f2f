"""
Single-use email tokens and the email dispatcher.

Only the sha256 of a token is stored. Redeeming marks the token used in the
same conditional update that finds it, so a token works exactly once.
"""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import structlog

from config import APP_BASE_URL, EXPOSE_EMAIL_LINKS
from database import create_document, utcnow
from errors import ValidationError
from schemas import AuthToken

logger = structlog.get_logger(__name__)

VERIFY_EMAIL = "verify_email"
RESET_PASSWORD = "reset_password"


def _hash(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


def _as_utc(value: datetime) -> datetime:
    # pymongo hands back naive UTC datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def issue_token(db, user_id: str, purpose: str, ttl: timedelta) -> str:
    raw = secrets.token_urlsafe(32)
    token = AuthToken(
        user_id=user_id,
        purpose=purpose,
        token_hash=_hash(raw),
        expires_at=utcnow() + ttl,
    )
    create_document(db, "auth_token", token)
    return raw


def redeem_token(db, raw: str, purpose: str) -> str:
    """Consume a token and return the user id it was issued for."""
    if not raw:
        raise ValidationError.for_field("token", "Missing token")
    doc = db["auth_token"].find_one_and_update(
        {"token_hash": _hash(raw), "purpose": purpose, "used_at": None},
        {"$set": {"used_at": utcnow()}},
    )
    if doc is None:
        raise ValidationError.for_field("token", "Invalid or already used token")
    if _as_utc(doc["expires_at"]) < utcnow():
        raise ValidationError.for_field("token", "Token has expired")
    return doc["user_id"]


def revoke_tokens(db, user_id: str, purpose: str) -> None:
    db["auth_token"].update_many(
        {"user_id": user_id, "purpose": purpose, "used_at": None},
        {"$set": {"used_at": utcnow()}},
    )


class EmailDispatcher:
    """Builds verification/reset links and hands them to the mail transport.

    There is no SMTP transport yet, so messages are written to the log.
    """

    def __init__(self, base_url: str = APP_BASE_URL, expose_links: bool = EXPOSE_EMAIL_LINKS):
        self.base_url = base_url
        self.expose_links = expose_links

    def _link(self, path: str, token: str) -> str:
        return f"{self.base_url}{path}?{urlencode({'token': token})}"

    def _send(self, to: str, subject: str, link: str) -> Optional[str]:
        logger.info("email_dispatched", to=to, subject=subject, link=link)
        return link if self.expose_links else None

    def send_verification(self, to: str, token: str) -> Optional[str]:
        return self._send(to, "Verify your email", self._link("/auth/verify", token))

    def send_password_reset(self, to: str, token: str) -> Optional[str]:
        return self._send(to, "Reset your password", self._link("/auth/reset", token))
