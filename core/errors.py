# core/errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class CommerceError(Exception):
    """
    Base for every error the commerce core raises on purpose.
    `code` is stable (clients switch on it); `http_status` is what app.py returns.
    """
    code = "commerce_error"
    http_status = 500

    def __init__(self, message: str = "", **extra: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"detail": self.message, "code": self.code}
        out.update(self.extra)
        return out


class ValidationError(CommerceError):
    """Bad discount code, invalid transition, malformed input. Recoverable."""
    code = "validation_error"
    http_status = 400

    def __init__(self, reason: str, message: Optional[str] = None, **extra: Any):
        super().__init__(message or reason, reason=reason, **extra)
        self.reason = reason


class NotFoundError(CommerceError):
    code = "not_found"
    http_status = 404


class InsufficientStock(CommerceError):
    """
    Aborts the payment-capture transition; the order stays pending and
    nothing was decremented.
    """
    code = "insufficient_stock"
    http_status = 409

    def __init__(self, product_ids: List[str], message: Optional[str] = None):
        super().__init__(message or "Insufficient stock", product_ids=list(product_ids))
        self.product_ids = list(product_ids)


class ConcurrencyConflict(CommerceError):
    """Optimistic-lock failure: the document changed since it was read."""
    code = "concurrency_conflict"
    http_status = 409


class UniqueViolation(CommerceError):
    code = "already_exists"
    http_status = 409


class ExternalServiceError(CommerceError):
    """Payment / notification collaborator failed. Logged, retried by the queue."""
    code = "external_service_error"
    http_status = 502
