"""
Error taxonomy for market operations. Each error carries a stable code.
"""

from typing import Optional


class MarketError(Exception):
    """Base class for failures surfaced to callers."""

    code = "MARKET_ERROR"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"code": self.code, "message": self.message}


class RateLimited(MarketError):
    """Too soon since the last charged action."""

    code = "RATE_LIMITED"
    retryable = True

    def __init__(self, retry_after: float, message: str = "Rate limit exceeded. Please wait."):
        super().__init__(message)
        self.retry_after = retry_after


class InsufficientFunds(MarketError):
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient energy. Required: {required}, Available: {available}")
        self.required = required
        self.available = available


class InvalidTarget(MarketError):
    """Claim missing or not active, vote weight too low, duplicate vote."""

    code = "INVALID_TARGET"


class InvalidInput(InvalidTarget):
    """Malformed coordinates, cells or claim content."""

    code = "INVALID_INPUT"


class AccountNotFound(InvalidTarget):
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, user_id: str):
        super().__init__(f"Account not found: {user_id}")
        self.user_id = user_id


class NotAuthorized(MarketError):
    code = "NOT_AUTHORIZED"


class PrivacyBudgetExceeded(MarketError):
    """Raised by the budget tracker; search turns it into an empty result."""

    code = "PRIVACY_BUDGET_EXCEEDED"

    def __init__(self, region_key: str, usage: int, ceiling: int, message: Optional[str] = None):
        super().__init__(message or f"Privacy budget exceeded for region {region_key}")
        self.region_key = region_key
        self.usage = usage
        self.ceiling = ceiling
