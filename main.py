from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

import auth
import catalog
import database
import media
import orders
import settings_store
from config import PORT, SETTINGS_CACHE_TTL_SECONDS
from database import get_db
from errors import AppError, ForbiddenError, ValidationError
from logs import configure_logging
from schemas import Discount, Inventory, Product as ProductSchema, ProductImage

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if database.db is not None:
        database.ensure_indexes(database.db)
        settings_store.seed_defaults(database.db)
    else:
        logger.warning("database_not_configured")
    yield


app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Errors

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    field_errors: Dict[str, str] = {}
    for err in exc.errors():
        loc = [str(p) for p in err["loc"] if p not in ("body", "query", "path", "header")]
        field_errors[".".join(loc) or "body"] = err["msg"]
    error = ValidationError("Invalid data", {"fieldErrors": field_errors})
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# Settings cache

_settings_cache: Optional[settings_store.SettingsCache] = None


def get_settings_cache(db=Depends(get_db)) -> settings_store.SettingsCache:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = settings_store.SettingsCache(settings_store.public_loader(db), SETTINGS_CACHE_TTL_SECONDS)
    return _settings_cache


# Routes
@app.get("/")
def read_root():
    return {"message": "Storefront API", "payment_methods": ["COD"]}


@app.get("/health")
def health(db=Depends(get_db)):
    response = {"backend": "running", "database": db.name, "collections": []}
    try:
        response["collections"] = db.list_collection_names()
        response["connection_status"] = "Connected"
    except Exception as e:
        response["connection_status"] = f"Error: {str(e)[:80]}"
    return response


# Auth
@app.post("/auth/register", status_code=201)
def register(payload: auth.RegisterInput, db=Depends(get_db)):
    return auth.register(db, payload)


@app.post("/auth/login")
def login(payload: auth.LoginInput, db=Depends(get_db)):
    return auth.login(db, payload)


@app.get("/auth/me")
def me(current_user: dict = Depends(auth.get_current_user)):
    return {"user": current_user}


@app.get("/auth/verify")
def verify_email(token: str = "", db=Depends(get_db)):
    auth.verify_email(db, token)
    return {"ok": True, "message": "Email verified"}


@app.post("/auth/resend")
def resend_verification(payload: auth.EmailInput, db=Depends(get_db)):
    return auth.resend_verification(db, payload.email)


@app.post("/auth/forgot")
def forgot_password(payload: auth.EmailInput, db=Depends(get_db)):
    return auth.forgot_password(db, payload.email)


@app.post("/auth/reset")
def reset_password(payload: auth.ResetInput, db=Depends(get_db)):
    auth.reset_password(db, payload)
    return {"ok": True}


# Profile
@app.get("/profile")
def get_profile(current_user: dict = Depends(auth.get_current_user)):
    return {"profile": current_user}


@app.put("/profile")
def update_profile(payload: auth.ProfileUpdate, current_user: dict = Depends(auth.get_current_user), db=Depends(get_db)):
    return {"profile": auth.update_profile(db, current_user, payload)}


@app.get("/profile/orders")
def my_orders(current_user: dict = Depends(auth.get_current_user), db=Depends(get_db)):
    return {"orders": orders.list_orders(db, user_id=current_user["id"])}


@app.post("/profile/change-password")
def change_password(payload: auth.ChangePasswordInput, current_user: dict = Depends(auth.get_current_user), db=Depends(get_db)):
    auth.change_password(db, current_user, payload)
    return {"ok": True}


# Catalog
class ProductUpdate(BaseModel):
    slug: Optional[str] = None
    name: Optional[str] = None
    price: Optional[float] = None
    description: Optional[str] = None
    images: Optional[List[ProductImage]] = None
    published: Optional[bool] = None
    inventory: Optional[Inventory] = None
    discount: Optional[Discount] = None
    category: Optional[str] = None


class CategoryIn(BaseModel):
    slug: str
    name: str


@app.get("/catalog/products")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    published: Optional[bool] = None,
    sort: str = "newest",
    page: int = 1,
    limit: int = 20,
    current_user: Optional[dict] = Depends(auth.get_optional_user),
    db=Depends(get_db),
):
    # Only admins may look past the published filter.
    if not auth.is_admin(current_user):
        published = True
    return catalog.list_products(db, q=q, category=category, published=published, sort=sort, page=page, limit=limit)


@app.get("/catalog/products/{slug}")
def get_product(slug: str, current_user: Optional[dict] = Depends(auth.get_optional_user), db=Depends(get_db)):
    return {"product": catalog.get_product(db, slug, include_unpublished=auth.is_admin(current_user))}


@app.post("/catalog/products", status_code=201)
def create_product(data: ProductSchema, current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    return {"product": catalog.create_product(db, data.model_dump())}


@app.put("/catalog/products/{slug}")
def update_product(slug: str, data: ProductUpdate, current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    return {"product": catalog.update_product(db, slug, data.model_dump(exclude_unset=True))}


@app.delete("/catalog/products/{slug}")
def delete_product(slug: str, current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    catalog.delete_product(db, slug)
    return {"ok": True}


@app.get("/catalog/categories")
def list_categories(db=Depends(get_db)):
    return {"items": catalog.list_categories(db)}


@app.post("/catalog/categories", status_code=201)
def create_category(data: CategoryIn, current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    return {"category": catalog.create_category(db, data.model_dump())}


@app.delete("/catalog/categories/{slug}")
def delete_category(slug: str, current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    catalog.delete_category(db, slug)
    return {"ok": True}


# Orders (COD)
class CartLine(BaseModel):
    slug: str
    quantity: int = Field(..., ge=1)


class OrderCreate(BaseModel):
    items: List[CartLine]
    address: Optional[str] = None
    phone: Optional[str] = None
    deliveryFee: Optional[float] = Field(None, ge=0, allow_inf_nan=False)


class OrderStatusUpdate(BaseModel):
    status: str


@app.post("/orders", status_code=201)
def create_order(
    payload: OrderCreate,
    idempotency_key: Optional[str] = Header(default=None),
    current_user: dict = Depends(auth.get_current_user),
    db=Depends(get_db),
):
    order = orders.create_order(
        db,
        current_user,
        [line.model_dump() for line in payload.items],
        payload.address,
        payload.phone,
        delivery_fee=payload.deliveryFee,
        idempotency_key=idempotency_key,
    )
    return {"order": order}


@app.get("/orders")
def list_own_orders(current_user: dict = Depends(auth.get_current_user), db=Depends(get_db)):
    return {"orders": orders.list_orders(db, user_id=current_user["id"])}


@app.get("/orders/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(auth.get_current_user), db=Depends(get_db)):
    return {"order": orders.get_order(db, order_id, current_user)}


@app.get("/admin/orders")
def admin_list_orders(status: Optional[str] = None, current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    return {"orders": orders.list_orders(db, status=status)}


@app.get("/admin/orders/{order_id}")
def admin_get_order(order_id: str, current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    return {"order": orders.get_order(db, order_id, current_user)}


@app.patch("/admin/orders/{order_id}")
def admin_update_order(order_id: str, payload: OrderStatusUpdate, current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    return {"order": orders.transition_status(db, order_id, payload.status, current_user)}


# Settings
class SettingUpdate(BaseModel):
    value: Any = None


@app.get("/settings")
def public_settings(cache: settings_store.SettingsCache = Depends(get_settings_cache)):
    return {"settings": cache.all()}


@app.get("/admin/settings")
def admin_list_settings(current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    return {"settings": settings_store.list_settings(db)}


@app.get("/admin/settings/{key}")
def admin_get_setting(key: str, current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    return {"setting": settings_store.get_setting(db, key)}


@app.put("/admin/settings/{key}")
def admin_update_setting(
    key: str,
    payload: SettingUpdate,
    current_user: dict = Depends(auth.require_admin),
    db=Depends(get_db),
    cache: settings_store.SettingsCache = Depends(get_settings_cache),
):
    return {"setting": settings_store.update_setting(db, key, payload.value, cache=cache)}


# Admin account
@app.post("/admin/bootstrap", status_code=201)
def bootstrap_admin(x_admin_bootstrap_token: Optional[str] = Header(default=None), db=Depends(get_db)):
    return {"ok": True, "admin": auth.bootstrap_admin(db, x_admin_bootstrap_token)}


@app.post("/admin/account")
def update_admin_account(payload: auth.AdminAccountUpdate, current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    return {"ok": True, "user": auth.update_admin_account(db, current_user, payload)}


# Media
@app.post("/upload/image", status_code=201)
async def upload_image(file: UploadFile = File(...), current_user: dict = Depends(auth.require_admin), db=Depends(get_db)):
    data = await file.read()
    return {"hash": media.store_blob(db, data, file.content_type)}


@app.get("/media/sign/{digest}")
def sign_media(digest: str, db=Depends(get_db)):
    return {"url": media.sign_media_url(db, digest)}


@app.get("/media/{digest}")
def get_media(digest: str, sig: Optional[str] = None, db=Depends(get_db)):
    if not media.verify_media_signature(digest, sig):
        raise ForbiddenError("Invalid or expired media signature")
    doc = media.load_blob(db, digest)
    return Response(content=bytes(doc["data"]), media_type=doc["content_type"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
