"""
Content-addressed image store.

Images are stored once per sha256 hash. Retrieval URLs carry a short-lived
signature bound to the hash.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from jose import JWTError, jwt
from pymongo.errors import DuplicateKeyError

from config import API_BASE_URL, JWT_ALGORITHM, JWT_SECRET, MEDIA_MAX_BYTES, MEDIA_URL_TTL_SECONDS
from database import create_document
from errors import NotFoundError, ValidationError
from schemas import Media

logger = structlog.get_logger(__name__)

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif", "image/avif"}


def store_blob(db, data: bytes, content_type: Optional[str]) -> str:
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationError.for_field("file", f"Unsupported content type: {content_type}")
    if not data:
        raise ValidationError.for_field("file", "Empty file")
    if len(data) > MEDIA_MAX_BYTES:
        raise ValidationError.for_field("file", f"File exceeds {MEDIA_MAX_BYTES} bytes")
    digest = hashlib.sha256(data).hexdigest()
    if db["media"].find_one({"hash": digest}, {"_id": 1}):
        return digest
    try:
        create_document(db, "media", Media(hash=digest, content_type=content_type, size=len(data), data=data))
    except DuplicateKeyError:
        pass  # stored concurrently under the same hash
    logger.info("media_stored", hash=digest, size=len(data))
    return digest


def load_blob(db, digest: str) -> Dict[str, Any]:
    doc = db["media"].find_one({"hash": digest})
    if not doc:
        raise NotFoundError("media", digest)
    return doc


def _signature(digest: str, ttl_seconds: int) -> str:
    expire = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
    return jwt.encode({"media": digest, "exp": expire}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def sign_media_url(db, digest: str, ttl_seconds: int = MEDIA_URL_TTL_SECONDS) -> str:
    if not db["media"].find_one({"hash": digest}, {"_id": 1}):
        raise NotFoundError("media", digest)
    return f"{API_BASE_URL}/media/{digest}?sig={_signature(digest, ttl_seconds)}"


def verify_media_signature(digest: str, sig: Optional[str]) -> bool:
    if not sig:
        return False
    try:
        payload = jwt.decode(sig, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return False
    return payload.get("media") == digest
