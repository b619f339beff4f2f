"""
Catalog store: products, categories and stock reservation.

Products and categories are addressed by slug. Stock is only ever changed
through reserve_stock / release_stock, each a single conditional update.
"""

import re
from typing import Any, Dict, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

import pricing
from database import create_document, serialize_doc, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Category as CategorySchema, Product as ProductSchema

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100

SORTS = {
    "newest": [("created_at", DESCENDING)],
    "price_asc": [("price", ASCENDING)],
    "price_desc": [("price", DESCENDING)],
}


def _validation_error(exc: PydanticValidationError) -> ValidationError:
    field_errors = {".".join(str(p) for p in err["loc"]) or "body": err["msg"] for err in exc.errors()}
    return ValidationError("Invalid data", {"fieldErrors": field_errors})


def present_product(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a product and attach its display pricing."""
    out = serialize_doc(doc)
    price = out.get("price", 0)
    discount = out.get("discount")
    out["effective_price"] = pricing.effective_price(price, discount)
    out["discount_amount"] = pricing.discount_amount(price, discount)
    out["has_discount"] = pricing.has_active_discount(discount)
    return out


# Categories

def list_categories(db):
    return [serialize_doc(d) for d in db["category"].find({}).sort("name", ASCENDING)]


def get_category(db, slug: str) -> Dict[str, Any]:
    doc = db["category"].find_one({"slug": slug})
    if not doc:
        raise NotFoundError("category", slug)
    return serialize_doc(doc)


def create_category(db, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        category = CategorySchema(**data)
    except PydanticValidationError as exc:
        raise _validation_error(exc)
    if db["category"].find_one({"slug": category.slug}):
        raise ConflictError(f"Slug already exists: {category.slug}")
    try:
        create_document(db, "category", category)
    except DuplicateKeyError:
        raise ConflictError(f"Slug already exists: {category.slug}")
    logger.info("category_created", slug=category.slug)
    return get_category(db, category.slug)


def delete_category(db, slug: str) -> None:
    in_use = db["product"].count_documents({"category": slug})
    if in_use:
        raise ConflictError(
            f"Category {slug} is used by {in_use} product(s)",
            {"slug": slug, "products": in_use},
        )
    res = db["category"].delete_one({"slug": slug})
    if res.deleted_count == 0:
        raise NotFoundError("category", slug)
    logger.info("category_deleted", slug=slug)


# Products

def _require_category(db, slug: str) -> None:
    if not db["category"].find_one({"slug": slug}):
        raise ValidationError.for_field("category", f"Unknown category: {slug}")


def get_product_doc(db, slug: str, include_unpublished: bool = False) -> Dict[str, Any]:
    query: Dict[str, Any] = {"slug": slug}
    if not include_unpublished:
        query["published"] = True
    doc = db["product"].find_one(query)
    if not doc:
        raise NotFoundError("product", slug)
    return doc


def get_product(db, slug: str, include_unpublished: bool = False) -> Dict[str, Any]:
    return present_product(get_product_doc(db, slug, include_unpublished))


def list_products(
    db,
    q: Optional[str] = None,
    category: Optional[str] = None,
    published: Optional[bool] = True,
    sort: str = "newest",
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if q:
        query["name"] = {"$regex": re.escape(q), "$options": "i"}
    if category:
        query["category"] = category
    if published is not None:
        query["published"] = published
    if sort not in SORTS:
        raise ValidationError.for_field("sort", f"Unknown sort: {sort}")

    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort(SORTS[sort]).skip((page - 1) * limit).limit(limit)
    items = [present_product(d) for d in cursor]
    return {"items": items, "total": total, "page": page, "limit": limit}


def create_product(db, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        product = ProductSchema(**data)
    except PydanticValidationError as exc:
        raise _validation_error(exc)
    _require_category(db, product.category)
    if db["product"].find_one({"slug": product.slug}):
        raise ConflictError(f"Slug already exists: {product.slug}")
    try:
        create_document(db, "product", product)
    except DuplicateKeyError:
        raise ConflictError(f"Slug already exists: {product.slug}")
    logger.info("product_created", slug=product.slug, price=product.price)
    return get_product(db, product.slug, include_unpublished=True)


def update_product(db, slug: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a partial update. Existing orders keep their price snapshot."""
    if not updates:
        raise ValidationError("No fields to update")
    current = get_product_doc(db, slug, include_unpublished=True)
    merged = {k: v for k, v in current.items() if k in ProductSchema.model_fields}
    for key, value in updates.items():
        if key == "inventory" and isinstance(value, dict):
            merged[key] = {**(current.get("inventory") or {}), **value}
        else:
            merged[key] = value
    try:
        product = ProductSchema(**merged)
    except PydanticValidationError as exc:
        raise _validation_error(exc)
    if "category" in updates:
        _require_category(db, product.category)
    if product.slug != slug and db["product"].find_one({"slug": product.slug}):
        raise ConflictError(f"Slug already exists: {product.slug}")

    changes = {k: v for k, v in product.model_dump().items() if k in updates}
    changes["updated_at"] = utcnow()
    try:
        db["product"].update_one({"_id": current["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise ConflictError(f"Slug already exists: {product.slug}")
    logger.info("product_updated", slug=slug, fields=sorted(updates))
    return get_product(db, product.slug, include_unpublished=True)


def delete_product(db, slug: str) -> None:
    res = db["product"].delete_one({"slug": slug})
    if res.deleted_count == 0:
        raise NotFoundError("product", slug)
    logger.info("product_deleted", slug=slug)


# Stock

def reserve_stock(db, slug: str, quantity: int) -> bool:
    """Decrement tracked stock only if enough is left at write time."""
    doc = db["product"].find_one_and_update(
        {"slug": slug, "inventory.track": True, "inventory.stock": {"$gte": quantity}},
        {"$inc": {"inventory.stock": -quantity}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        return False
    logger.info("stock_reserved", slug=slug, quantity=quantity, remaining=doc["inventory"]["stock"])
    return True


def release_stock(db, slug: str, quantity: int) -> None:
    db["product"].update_one(
        {"slug": slug, "inventory.track": True},
        {"$inc": {"inventory.stock": quantity}},
    )
    logger.info("stock_released", slug=slug, quantity=quantity)
