"""
Order lifecycle: checkout and fulfilment status.

Checkout re-validates the client's cart against the live catalog, prices
every line at the current effective price and then, as one unit, reserves
tracked stock and writes the order. If any step fails every reservation
already taken is released, so no order exists without its stock decrement
and no stock is decremented without an order.

Prices on an order are a snapshot and are never recomputed.
"""

from typing import Any, Dict, List, Optional, Tuple

import structlog
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

import catalog
import pricing
import settings_store
from database import create_document, serialize_doc, to_object_id, utcnow
from errors import (
    ConflictError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    MinimumOrderError,
    NotFoundError,
    ValidationError,
)
from schemas import Order as OrderSchema, OrderItem, StatusChange

logger = structlog.get_logger(__name__)

PLACED = "placed"
CONFIRMED = "confirmed"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"

# Fulfilment order; cancelled sits outside it.
PROGRESSION = [PLACED, CONFIRMED, SHIPPED, DELIVERED]
STATUSES = PROGRESSION + [CANCELLED]
TERMINAL = {DELIVERED, CANCELLED}


def can_transition(current: str, new: str) -> bool:
    """Any forward move or a cancel is allowed until the order is terminal."""
    if current in TERMINAL or new not in STATUSES:
        return False
    if new == CANCELLED:
        return True
    return PROGRESSION.index(new) > PROGRESSION.index(current)


def order_totals_consistent(order: Dict[str, Any]) -> bool:
    subtotal = sum(i["unit_price"] * i["quantity"] for i in order["items"])
    return subtotal == order["subtotal"] and subtotal + order["delivery_fee"] == order["total"]


def _merge_lines(items: List[Dict[str, Any]]) -> List[Tuple[str, int]]:
    quantities: Dict[str, int] = {}
    for item in items:
        slug = item["slug"]
        quantities[slug] = quantities.get(slug, 0) + int(item["quantity"])
    return list(quantities.items())


def expected_delivery_fee(db, subtotal: float) -> float:
    fee = float(settings_store.get_value(db, "delivery_fee", 0) or 0)
    threshold = float(settings_store.get_value(db, "free_delivery_threshold", 0) or 0)
    if threshold > 0 and subtotal >= threshold:
        return 0.0
    return fee


def _insert_order(db, order: OrderSchema) -> str:
    return create_document(db, "order", order.model_dump(exclude_none=True))


def _find_by_idempotency_key(db, key: str, user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    existing = db["order"].find_one({"idempotency_key": key})
    if existing is None:
        return None
    if existing["user_id"] != user["id"]:
        raise ConflictError("Idempotency key already used")
    logger.info("order_replayed", order_id=str(existing["_id"]), user_id=user["id"])
    return serialize_doc(existing)


def create_order(
    db,
    user: Dict[str, Any],
    items: List[Dict[str, Any]],
    address: str,
    phone: str,
    delivery_fee: Optional[float] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    if not items:
        raise ValidationError.for_field("items", "Cart is empty")
    address = (address or "").strip()
    phone = (phone or "").strip()
    if not address:
        raise ValidationError.for_field("address", "Please enter your delivery address")
    if not phone:
        raise ValidationError.for_field("phone", "Please enter your phone number")
    for item in items:
        if int(item.get("quantity", 0)) < 1:
            raise ValidationError.for_field("items", f"Quantity for {item.get('slug')} must be at least 1")

    if idempotency_key:
        existing = _find_by_idempotency_key(db, idempotency_key, user)
        if existing is not None:
            return existing

    # Validate and price every line before touching stock.
    lines: List[Tuple[Dict[str, Any], int]] = []
    for slug, quantity in _merge_lines(items):
        product = db["product"].find_one({"slug": slug, "published": True})
        if not product:
            raise NotFoundError("product", slug)
        inventory = product.get("inventory") or {}
        if inventory.get("track") and inventory.get("stock", 0) < quantity:
            logger.warning("checkout_rejected_stock", slug=slug, available=inventory.get("stock", 0), requested=quantity)
            raise InsufficientStockError(slug, inventory.get("stock", 0), quantity)
        lines.append((product, quantity))

    order_items = []
    for product, quantity in lines:
        order_items.append(OrderItem(
            product_id=str(product["_id"]),
            slug=product["slug"],
            name=product["name"],
            quantity=quantity,
            base_price=product["price"],
            unit_price=pricing.effective_price(product["price"], product.get("discount")),
        ))
    subtotal = sum(i.unit_price * i.quantity for i in order_items)

    minimum = float(settings_store.get_value(db, "min_order_value", 0) or 0)
    if minimum > 0 and subtotal < minimum:
        logger.warning("checkout_rejected_minimum", subtotal=subtotal, minimum=minimum)
        raise MinimumOrderError(subtotal, minimum)

    fee = expected_delivery_fee(db, subtotal)
    if delivery_fee is not None and delivery_fee != fee:
        raise ValidationError(
            f"Delivery fee has changed to {pricing.format_price(fee)}",
            {"fieldErrors": {"deliveryFee": "Delivery fee has changed"}, "deliveryFee": fee},
        )

    now = utcnow()
    order = OrderSchema(
        user_id=user["id"],
        user_email=user.get("email"),
        items=order_items,
        subtotal=subtotal,
        delivery_fee=fee,
        total=subtotal + fee,
        status=PLACED,
        address=address,
        phone=phone,
        idempotency_key=idempotency_key or None,
        status_history=[StatusChange(status=PLACED, at=now, by=user["id"])],
    )

    reserved: List[Tuple[str, int]] = []
    try:
        for product, quantity in lines:
            if not (product.get("inventory") or {}).get("track"):
                continue
            if not catalog.reserve_stock(db, product["slug"], quantity):
                # Re-read: the product may have been removed or stopped tracking stock.
                inventory = catalog.get_product_doc(db, product["slug"]).get("inventory") or {}
                if not inventory.get("track"):
                    continue
                available = int(inventory.get("stock", 0))
                logger.warning("checkout_rejected_stock", slug=product["slug"], available=available, requested=quantity)
                raise InsufficientStockError(product["slug"], available, quantity)
            reserved.append((product["slug"], quantity))
        order_id = _insert_order(db, order)
    except Exception as exc:
        _release(db, reserved)
        if isinstance(exc, DuplicateKeyError) and idempotency_key:
            existing = _find_by_idempotency_key(db, idempotency_key, user)
            if existing is not None:
                return existing
        raise

    _prefill_profile(db, user, address, phone)
    logger.info("order_placed", order_id=order_id, user_id=user["id"], total=order.total, lines=len(order_items))
    return get_order(db, order_id, user)


def _release(db, reserved: List[Tuple[str, int]]) -> None:
    for slug, quantity in reserved:
        try:
            catalog.release_stock(db, slug, quantity)
        except Exception:
            logger.exception("stock_release_failed", slug=slug, quantity=quantity)


def _prefill_profile(db, user: Dict[str, Any], address: str, phone: str) -> None:
    updates = {}
    if not user.get("address"):
        updates["address"] = address
    if not user.get("phone"):
        updates["phone"] = phone
    if updates:
        db["user"].update_one({"_id": to_object_id(user["id"], "user")}, {"$set": updates})


def get_order(db, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    """Owners see their orders, admins see all; anyone else gets not found."""
    doc = db["order"].find_one({"_id": to_object_id(order_id, "order")})
    if not doc:
        raise NotFoundError("order", order_id)
    if user.get("role") != "admin" and doc.get("user_id") != user["id"]:
        raise NotFoundError("order", order_id)
    return serialize_doc(doc)


def list_orders(db, status: Optional[str] = None, user_id: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if status:
        if status not in STATUSES:
            raise ValidationError.for_field("status", f"Unknown status: {status}")
        query["status"] = status
    if user_id:
        query["user_id"] = user_id
    cursor = db["order"].find(query).sort("created_at", DESCENDING).limit(limit)
    return [serialize_doc(d) for d in cursor]


def transition_status(db, order_id: str, new_status: str, actor: Dict[str, Any]) -> Dict[str, Any]:
    """Move an order to a new status. Cancelling does not restock."""
    if new_status not in STATUSES:
        raise ValidationError.for_field("status", f"Unknown status: {new_status}")
    oid = to_object_id(order_id, "order")
    doc = db["order"].find_one({"_id": oid})
    if not doc:
        raise NotFoundError("order", order_id)
    current = doc["status"]
    if not can_transition(current, new_status):
        raise InvalidStatusTransitionError(current, new_status)

    now = utcnow()
    change = StatusChange(status=new_status, at=now, by=actor["id"]).model_dump()
    # Compare-and-set on the status read above.
    res = db["order"].update_one(
        {"_id": oid, "status": current},
        {"$set": {"status": new_status, "updated_at": now}, "$push": {"status_history": change}},
    )
    if res.matched_count == 0:
        latest = db["order"].find_one({"_id": oid}, {"status": 1})
        raise InvalidStatusTransitionError(latest["status"] if latest else current, new_status)
    logger.info("order_status_changed", order_id=order_id, old=current, new=new_status, by=actor["id"])
    return serialize_doc(db["order"].find_one({"_id": oid}))
