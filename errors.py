"""
Error taxonomy shared by the domain modules.

Domain code raises these; main.py renders them as
{"error": message, "code": kind, "details": {...}}.
"""

from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class ValidationError(AppError):
    status_code = 422
    code = "UNPROCESSABLE_ENTITY"

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, {"fieldErrors": {field: message}})


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Not authenticated", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource.capitalize()} not found: {identifier}",
            {"resource": resource, "identifier": str(identifier)},
        )
        self.resource = resource
        self.identifier = identifier


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class InsufficientStockError(AppError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, slug: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for {slug}: {available} available, {requested} requested",
            {"slug": slug, "available": available, "requested": requested},
        )
        self.slug = slug
        self.available = available
        self.requested = requested


class MinimumOrderError(AppError):
    status_code = 422
    code = "MINIMUM_ORDER_NOT_MET"

    def __init__(self, subtotal: float, minimum: float):
        super().__init__(
            f"Minimum order value is {minimum:.2f}, cart subtotal is {subtotal:.2f}",
            {"subtotal": subtotal, "minimum": minimum},
        )
        self.subtotal = subtotal
        self.minimum = minimum


class InvalidStatusTransitionError(ConflictError):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move order from {current} to {requested}",
            {"current": current, "requested": requested},
        )
