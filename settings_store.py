"""
Typed key/value settings, grouped by category for the admin console.

Checkout reads settings straight from the database. Storefront read paths
go through SettingsCache, which may be stale for up to its TTL and is
invalidated after every admin write.
"""

import json
import math
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import structlog

from database import get_documents, serialize_doc, utcnow
from errors import ForbiddenError, NotFoundError, ValidationError
from schemas import Setting

logger = structlog.get_logger(__name__)

DEFAULT_SETTINGS: List[Setting] = [
    Setting(key="min_order_value", value=0, type="number", category="checkout",
            label="Minimum order value", description="Subtotal required to place an order (0 disables)",
            public=True),
    Setting(key="delivery_fee", value=50, type="number", category="delivery",
            label="Delivery fee", public=True),
    Setting(key="free_delivery_threshold", value=0, type="number", category="delivery",
            label="Free delivery above", description="Subtotal at which delivery is free (0 disables)",
            public=True),
    Setting(key="surge_fee", value=0, type="number", category="fees",
            label="Surge fee"),
    Setting(key="store_name", value="Storefront", type="string", category="business",
            label="Store name", public=True),
    Setting(key="store_phone", value="", type="string", category="business",
            label="Store phone", public=True),
    Setting(key="currency", value="INR", type="string", category="business",
            label="Currency", editable=False, public=True),
    Setting(key="loyalty_enabled", value=False, type="boolean", category="loyalty",
            label="Loyalty program enabled"),
    Setting(key="loyalty_points_per_100", value=1, type="number", category="loyalty",
            label="Points per 100 spent"),
    Setting(key="order_email_notifications", value=True, type="boolean", category="notifications",
            label="Email customers on order updates"),
]

FALSY_STRINGS = {"", "0", "false", "no", "off"}


def seed_defaults(db) -> int:
    """Insert any default setting that is missing; never overwrite admin values."""
    inserted = 0
    for setting in DEFAULT_SETTINGS:
        now = utcnow()
        res = db["setting"].update_one(
            {"key": setting.key},
            {"$setOnInsert": {**setting.model_dump(), "created_at": now, "updated_at": now}},
            upsert=True,
        )
        if res.upserted_id is not None:
            inserted += 1
    if inserted:
        logger.info("settings_seeded", inserted=inserted)
    return inserted


def _present(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(doc)
    out.pop("id", None)
    return out


def list_settings(db, public_only: bool = False) -> List[Dict[str, Any]]:
    query = {"public": True} if public_only else {}
    cursor = db["setting"].find(query).sort([("category", 1), ("key", 1)])
    return [_present(d) for d in cursor]


def get_setting(db, key: str) -> Dict[str, Any]:
    doc = db["setting"].find_one({"key": key})
    if not doc:
        raise NotFoundError("setting", key)
    return _present(doc)


def get_value(db, key: str, default: Any = None) -> Any:
    doc = db["setting"].find_one({"key": key}, {"value": 1})
    if not doc:
        return default
    return doc.get("value", default)


def coerce_value(setting_type: str, value: Any) -> Any:
    if setting_type == "number":
        if isinstance(value, bool):
            raise ValidationError.for_field("value", "Value must be a number")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError.for_field("value", "Value must be a number")
        if not math.isfinite(number):
            raise ValidationError.for_field("value", "Value must be a finite number")
        return int(number) if number.is_integer() else number
    if setting_type == "boolean":
        if isinstance(value, str):
            return value.strip().lower() not in FALSY_STRINGS
        return bool(value)
    if setting_type == "json":
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                raise ValidationError.for_field("value", "Value must be valid JSON")
        return value
    if value is None:
        return ""
    return str(value)


def update_setting(db, key: str, value: Any, cache: Optional["SettingsCache"] = None) -> Dict[str, Any]:
    current = db["setting"].find_one({"key": key})
    if not current:
        raise NotFoundError("setting", key)
    if not current.get("editable", True):
        raise ForbiddenError(f"Setting {key} is not editable")
    coerced = coerce_value(current["type"], value)
    db["setting"].update_one({"key": key}, {"$set": {"value": coerced, "updated_at": utcnow()}})
    if cache is not None:
        cache.invalidate()
    logger.info("setting_updated", key=key, value=coerced)
    return get_setting(db, key)


class SettingsCache:
    """Process-wide snapshot of setting values with a TTL.

    ``loader`` returns the full ``{key: value}`` mapping. A failed load is
    logged and the last snapshot (or the caller's default) is served; the next
    call retries.
    """

    def __init__(self, loader: Callable[[], Dict[str, Any]], ttl_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._values: Optional[Dict[str, Any]] = None
        self._loaded_at = 0.0
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        values = self._snapshot()
        if values is None:
            return default
        return values.get(key, default)

    def all(self) -> Dict[str, Any]:
        return dict(self._snapshot() or {})

    def invalidate(self) -> None:
        with self._lock:
            self._values = None
            self._loaded_at = 0.0

    def _snapshot(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            now = self._clock()
            if self._values is not None and now - self._loaded_at <= self._ttl:
                return self._values
            try:
                self._values = self._loader()
            except Exception:
                logger.exception("settings_cache_load_failed")
                return self._values
            self._loaded_at = now
            return self._values


def public_loader(db) -> Callable[[], Dict[str, Any]]:
    def load() -> Dict[str, Any]:
        return {d["key"]: d.get("value") for d in get_documents(db, "setting", {"public": True})}
    return load
