"""
Billing error taxonomy.

Services raise these; the API layer renders them as
``{"error": <code>, "detail": <message>, ...extra}`` with the class status code.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    status_code = 400

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        **extra: Any,
    ):
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        if status_code is not None:
            self.status_code = status_code
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "detail": self.message}
        body.update(self.extra)
        return body


class ValidationError(BillingError):
    """Malformed input: bad month, non-positive amount, unknown method..."""
    status_code = 400


class ConflictError(BillingError):
    """
    The operation was already applied (e.g. ``already_paid``).

    Callers treat this as a settled outcome, not as a failure to retry.
    """
    status_code = 409


class NotFoundError(BillingError):
    status_code = 404


class BalanceError(BillingError):
    """Payment amount exceeds what is still owed."""
    status_code = 400


class AuthorizationError(BillingError):
    status_code = 403
