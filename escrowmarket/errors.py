from __future__ import annotations


class MarketError(Exception):
    """Base for domain errors rendered as JSON by the app error handler."""

    code = "MARKET_ERROR"
    status_code = 400

    def __init__(self, message: str = "", *, details: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = dict(details or {})

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.status_code),
        }
        payload.update(self.details)
        return payload


class ValidationError(MarketError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(MarketError):
    code = "NOT_FOUND"
    status_code = 404


class _TransitionError(MarketError):
    def __init__(
        self,
        message: str = "",
        *,
        current_status: str | None = None,
        allowed_next_statuses=None,
        details: dict | None = None,
    ):
        merged = dict(details or {})
        if current_status is not None:
            merged["current_status"] = current_status
            merged["allowed_next_statuses"] = sorted(allowed_next_statuses or [])
        super().__init__(message, details=merged)
        self.current_status = current_status
        self.allowed_next_statuses = sorted(allowed_next_statuses or [])


class AuthorizationError(_TransitionError):
    code = "FORBIDDEN_TRANSITION"
    status_code = 403


class StateConflictError(_TransitionError):
    code = "STATE_CONFLICT"
    status_code = 409


class RevisionLimitError(StateConflictError):
    code = "REVISION_LIMIT_REACHED"


class PaymentGatewayError(MarketError):
    code = "PAYMENT_GATEWAY_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str = "",
        *,
        retryable: bool = False,
        requires_action: bool = False,
        details: dict | None = None,
    ):
        merged = dict(details or {})
        merged["retryable"] = bool(retryable)
        merged["requires_action"] = bool(requires_action)
        super().__init__(message or "Payment processor error", details=merged)
        self.retryable = bool(retryable)
        self.requires_action = bool(requires_action)


class InsufficientBalanceError(MarketError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 422

    def __init__(self, message: str = "", *, available_minor: int = 0, requested_minor: int = 0):
        super().__init__(
            message or "Withdrawal exceeds available balance",
            details={
                "available_minor": int(available_minor),
                "requested_minor": int(requested_minor),
            },
        )
        self.available_minor = int(available_minor)
        self.requested_minor = int(requested_minor)
