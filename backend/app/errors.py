"""Billing error taxonomy.

Every error carries a message that is safe to show to the end user and a short
code that the routes translate into an HTTP status.
"""
from typing import Optional


class BillingError(Exception):
    code = "error"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        # Internal context for logs, never returned to the client
        self.detail = detail


class ValidationError(BillingError):
    code = "validation"


class ConflictError(BillingError):
    code = "conflict"


class NotFoundError(BillingError):
    code = "not_found"


class ProviderError(BillingError):
    code = "provider"


class PersistenceError(BillingError):
    code = "persistence"


HTTP_STATUS_BY_CODE = {
    ValidationError.code: 400,
    ConflictError.code: 409,
    NotFoundError.code: 404,
    ProviderError.code: 502,
    PersistenceError.code: 500,
}
