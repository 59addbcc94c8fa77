"""
Error taxonomy for the storefront.

Routes translate these into HTTP responses; nothing below the route layer
knows about status codes.
"""
from __future__ import annotations
from typing import Optional


class StorefrontError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StorefrontError):
    """Malformed or missing input. ``field`` names the offending field, if any."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidCouponError(ValidationError):
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message, field="coupon_code")
        self.code = code


class NotFoundError(StorefrontError):
    pass


class ExternalServiceError(StorefrontError):
    """Payment processor or mail provider failure (including timeouts)."""


class SignatureVerificationError(ExternalServiceError):
    pass


class PersistenceError(StorefrontError):
    pass
