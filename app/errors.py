from __future__ import annotations


class MarketplaceError(Exception):
    """Base error for marketplace operations.

    ``code`` is a stable machine-readable identifier, ``message`` the reason
    shown to vendors, admins and customers.
    """

    code = "marketplace_error"
    status_code = 400

    def __init__(self, message: str = "", *, code: str | None = None, details: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.status_code),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(MarketplaceError):
    code = "not_found"
    status_code = 404


class InvalidTransition(MarketplaceError, ValueError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, entity: str, current: str, target: str, message: str = ""):
        super().__init__(
            message or f"invalid status for this action: {entity} {current}->{target}",
            details={"entity": entity, "current": current, "target": target},
        )
        self.entity = entity
        self.current = current
        self.target = target


class InsufficientBalance(MarketplaceError):
    code = "insufficient_balance"
    status_code = 400


class MissingBankDetails(MarketplaceError):
    code = "bank_details_missing"
    status_code = 400


class ValidationError(MarketplaceError, ValueError):
    code = "validation_error"
    status_code = 400


class PermissionDenied(MarketplaceError):
    code = "forbidden"
    status_code = 403


class ExternalServiceError(MarketplaceError):
    code = "external_service_error"
    status_code = 502


class Unauthorized(MarketplaceError):
    code = "unauthorized"
    status_code = 401
