"""
Authentication and access control.

Callers are anonymous, users or admins. The role is always read from the
user document; the role claim inside the token is informational only.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from bson import ObjectId
from fastapi import Depends, Header
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field, field_validator
from pymongo.errors import DuplicateKeyError

import notifications
from config import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    ADMIN_BOOTSTRAP_TOKEN,
    ADMIN_DEFAULT_EMAIL,
    ADMIN_DEFAULT_NAME,
    ADMIN_DEFAULT_PASSWORD,
    JWT_ALGORITHM,
    JWT_SECRET,
    RESET_TOKEN_TTL_MINUTES,
    VERIFY_TOKEN_TTL_MINUTES,
)
from database import create_document, get_db, serialize_doc, utcnow
from errors import ConflictError, ForbiddenError, UnauthorizedError, ValidationError
from schemas import User as UserSchema

logger = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

dispatcher = notifications.EmailDispatcher()


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise UnauthorizedError("Invalid or expired token")


def token_for(user: Dict[str, Any]) -> str:
    return create_access_token({"sub": user["id"], "role": user["role"], "email": user["email"]})


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(doc)
    # Never send password hash
    user.pop("password_hash", None)
    return user


# Request models

class RegisterInput(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    address: Optional[str] = None


class LoginInput(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)


class EmailInput(BaseModel):
    email: EmailStr


class ResetInput(BaseModel):
    token: str
    password: str = Field(..., min_length=6)


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2)
    phone: Optional[str] = None
    address: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_not_null(cls, value: Optional[str]) -> str:
        if value is None:
            raise ValueError("name cannot be empty")
        return value


class ChangePasswordInput(BaseModel):
    currentPassword: str
    newPassword: str = Field(..., min_length=6)


class AdminAccountUpdate(BaseModel):
    email: Optional[EmailStr] = None
    currentPassword: Optional[str] = None
    newPassword: Optional[str] = Field(None, min_length=6)


# Dependencies

def load_user(db, user_id: Optional[str]) -> Dict[str, Any]:
    if not user_id or not ObjectId.is_valid(user_id):
        raise UnauthorizedError("Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise UnauthorizedError("User not found")
    return public_user(user)


def get_current_user(authorization: Optional[str] = Header(default=None), db=Depends(get_db)):
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthorizedError("Not authenticated")
    token = authorization.split(" ", 1)[1]
    payload = decode_token(token)
    return load_user(db, payload.get("sub"))


def get_optional_user(authorization: Optional[str] = Header(default=None), db=Depends(get_db)):
    if not authorization:
        return None
    return get_current_user(authorization, db)


def require_admin(current_user: dict = Depends(get_current_user)):
    if current_user.get("role") != "admin":
        raise ForbiddenError("Admins only")
    return current_user


def is_admin(user: Optional[Dict[str, Any]]) -> bool:
    return bool(user) and user.get("role") == "admin"


# Flows

def register(db, payload: RegisterInput) -> Dict[str, Any]:
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise ConflictError("Email already registered")
    user_model = UserSchema(
        name=payload.name,
        email=email,
        password_hash=hash_password(payload.password),
        role="user",
        phone=payload.phone,
        address=payload.address,
    )
    try:
        user_id = create_document(db, "user", user_model)
    except DuplicateKeyError:
        raise ConflictError("Email already registered")
    raw = notifications.issue_token(
        db, user_id, notifications.VERIFY_EMAIL, timedelta(minutes=VERIFY_TOKEN_TTL_MINUTES)
    )
    link = dispatcher.send_verification(email, raw)
    logger.info("user_registered", user_id=user_id)
    result = {"ok": True, "message": "Check your email to verify your account"}
    if link:
        result["verificationLink"] = link
    return result


def login(db, payload: LoginInput) -> Dict[str, Any]:
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise UnauthorizedError("Invalid email or password")
    if not user.get("is_verified"):
        raise ForbiddenError("Email not verified")
    user = public_user(user)
    logger.info("user_logged_in", user_id=user["id"])
    return {"token": token_for(user), "user": user}


def verify_email(db, token: str) -> None:
    user_id = notifications.redeem_token(db, token, notifications.VERIFY_EMAIL)
    db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": {"is_verified": True, "updated_at": utcnow()}})
    logger.info("email_verified", user_id=user_id)


def resend_verification(db, email: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {"ok": True, "message": "If this account exists and is unverified, a new link has been sent."}
    user = db["user"].find_one({"email": email.lower()})
    if not user or user.get("is_verified"):
        return result
    user_id = str(user["_id"])
    notifications.revoke_tokens(db, user_id, notifications.VERIFY_EMAIL)
    raw = notifications.issue_token(
        db, user_id, notifications.VERIFY_EMAIL, timedelta(minutes=VERIFY_TOKEN_TTL_MINUTES)
    )
    link = dispatcher.send_verification(user["email"], raw)
    if link:
        result["verificationLink"] = link
    return result


def forgot_password(db, email: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {"ok": True, "message": "If this email exists and is verified, a reset link has been sent."}
    user = db["user"].find_one({"email": email.lower()})
    if not user or not user.get("is_verified"):
        return result
    user_id = str(user["_id"])
    notifications.revoke_tokens(db, user_id, notifications.RESET_PASSWORD)
    raw = notifications.issue_token(
        db, user_id, notifications.RESET_PASSWORD, timedelta(minutes=RESET_TOKEN_TTL_MINUTES)
    )
    link = dispatcher.send_password_reset(user["email"], raw)
    if link:
        result["resetLink"] = link
    return result


def reset_password(db, payload: ResetInput) -> None:
    user_id = notifications.redeem_token(db, payload.token, notifications.RESET_PASSWORD)
    db["user"].update_one(
        {"_id": ObjectId(user_id)},
        {"$set": {"password_hash": hash_password(payload.password), "updated_at": utcnow()}},
    )
    logger.info("password_reset", user_id=user_id)


def update_profile(db, user: Dict[str, Any], payload: ProfileUpdate) -> Dict[str, Any]:
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise ValidationError("No fields to update")
    updates["updated_at"] = utcnow()
    db["user"].update_one({"_id": ObjectId(user["id"])}, {"$set": updates})
    return load_user(db, user["id"])


def change_password(db, user: Dict[str, Any], payload: ChangePasswordInput) -> None:
    doc = db["user"].find_one({"_id": ObjectId(user["id"])})
    if not verify_password(payload.currentPassword, doc.get("password_hash", "")):
        raise ValidationError.for_field("currentPassword", "Current password is incorrect")
    db["user"].update_one(
        {"_id": doc["_id"]},
        {"$set": {"password_hash": hash_password(payload.newPassword), "updated_at": utcnow()}},
    )
    logger.info("password_changed", user_id=user["id"])


def update_admin_account(db, admin: Dict[str, Any], payload: AdminAccountUpdate) -> Dict[str, Any]:
    if payload.email is None and payload.newPassword is None:
        raise ValidationError.for_field("email", "Provide at least one of email or newPassword")
    doc = db["user"].find_one({"_id": ObjectId(admin["id"])})
    updates: Dict[str, Any] = {}
    if payload.newPassword is not None:
        if not payload.currentPassword:
            raise ValidationError.for_field("currentPassword", "currentPassword is required to set a newPassword")
        if not verify_password(payload.currentPassword, doc.get("password_hash", "")):
            raise ValidationError.for_field("currentPassword", "Current password is incorrect")
        updates["password_hash"] = hash_password(payload.newPassword)
    if payload.email is not None:
        email = payload.email.lower()
        clash = db["user"].find_one({"email": email, "_id": {"$ne": doc["_id"]}})
        if clash:
            raise ConflictError("Email already registered")
        updates["email"] = email
    updates["updated_at"] = utcnow()
    db["user"].update_one({"_id": doc["_id"]}, {"$set": updates})
    logger.info("admin_account_updated", user_id=admin["id"], fields=sorted(k for k in updates if k != "updated_at"))
    return load_user(db, admin["id"])


def bootstrap_admin(db, header_token: Optional[str]) -> Dict[str, Any]:
    if not ADMIN_BOOTSTRAP_TOKEN:
        raise ForbiddenError("Bootstrap disabled: missing ADMIN_BOOTSTRAP_TOKEN")
    if header_token != ADMIN_BOOTSTRAP_TOKEN:
        raise ForbiddenError()
    if not ADMIN_DEFAULT_EMAIL or not ADMIN_DEFAULT_PASSWORD:
        raise ValidationError("Missing ADMIN_DEFAULT_EMAIL or ADMIN_DEFAULT_PASSWORD")
    if db["user"].find_one({"role": "admin"}):
        raise ConflictError("Admin already exists")
    admin = UserSchema(
        name=ADMIN_DEFAULT_NAME,
        email=ADMIN_DEFAULT_EMAIL.lower(),
        password_hash=hash_password(ADMIN_DEFAULT_PASSWORD),
        role="admin",
        is_verified=True,
    )
    try:
        user_id = create_document(db, "user", admin)
    except DuplicateKeyError:
        raise ConflictError("Email already registered")
    logger.info("admin_bootstrapped", user_id=user_id)
    return load_user(db, user_id)
