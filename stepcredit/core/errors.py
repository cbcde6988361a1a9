"""
Error taxonomy for the credit ledger, achievements and reward redemption.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with, so routers never translate errors by hand.
"""
from __future__ import annotations


class StepCreditError(Exception):
    """Base class for every business-rule and storage error raised by the core."""

    status_code = 500

    def __init__(self, message: str, code: str = "STEP_CREDIT_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(StepCreditError):
    """Invalid input (negative steps, non-positive amount, malformed reward)."""

    status_code = 400

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        code = f"INVALID_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(message, code)


class InsufficientCreditsError(StepCreditError):
    status_code = 402

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        message = f"Insufficient credits. Available: {available}, Required: {required}"
        super().__init__(message, "INSUFFICIENT_CREDITS")


class NotFoundError(StepCreditError):
    status_code = 404

    def __init__(self, resource: str, identifier=None, message: str | None = None):
        if message is None:
            message = f"{resource} not found"
            if identifier is not None:
                message = f"{resource} {identifier} not found"
        super().__init__(message, f"{resource.upper()}_NOT_FOUND")


class ExpiredError(StepCreditError):
    status_code = 410

    def __init__(self, reward_id: str):
        self.reward_id = reward_id
        super().__init__(f"Reward {reward_id} has expired", "REWARD_EXPIRED")


class OutOfStockError(StepCreditError):
    status_code = 410

    def __init__(self, reward_id: str):
        self.reward_id = reward_id
        super().__init__(f"Reward {reward_id} is out of stock", "REWARD_OUT_OF_STOCK")


class UserLimitError(StepCreditError):
    status_code = 409

    def __init__(self, reward_id: str, limit: int):
        self.reward_id = reward_id
        self.limit = limit
        super().__init__(
            f"Redemption limit of {limit} reached for reward {reward_id}", "USER_LIMIT_EXCEEDED"
        )


class InvalidStatusTransitionError(StepCreditError):
    status_code = 409

    def __init__(self, resource: str, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        message = f"Cannot change {resource} status from '{from_status}' to '{to_status}'"
        super().__init__(message, "INVALID_STATUS_TRANSITION")


class ConflictError(StepCreditError):
    """Concurrent update collided; safe to retry."""

    status_code = 409

    def __init__(self, message: str = "Concurrent update conflict, please retry"):
        super().__init__(message, "CONFLICT")


class InternalError(StepCreditError):
    status_code = 500

    def __init__(self, message: str = "Internal error", original_error: Exception | None = None):
        self.original_error = original_error
        super().__init__(message, "INTERNAL_ERROR")
