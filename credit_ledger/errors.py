from typing import Optional


class LedgerServiceError(Exception):
    code = "internal_error"
    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class AccountNotFound(LedgerServiceError):
    code = "user_not_found"
    status_code = 404
    default_message = "User not found"


class InsufficientCredits(LedgerServiceError):
    code = "insufficient_credits"
    status_code = 403
    default_message = "Insufficient credits"


class InvalidTransaction(LedgerServiceError):
    code = "invalid_transaction"
    status_code = 422
    default_message = "Invalid transaction data"


class VerificationExpired(LedgerServiceError):
    code = "verification_expired"
    status_code = 422
    default_message = "Transaction has expired"


class ProductNotFound(LedgerServiceError):
    code = "product_not_found"
    status_code = 404
    default_message = "IAP product not found"


class ProductInactive(LedgerServiceError):
    code = "product_inactive"
    status_code = 400
    default_message = "Product is not active"


class ProductAlreadyExists(LedgerServiceError):
    code = "product_id_exists"
    status_code = 400
    default_message = "Product ID already exists"


class RewardLimitReached(LedgerServiceError):
    code = "reward_limit_reached"
    status_code = 429
    default_message = "Daily reward limit reached"


class InvalidRequest(LedgerServiceError):
    code = "validation_error"
    status_code = 400
    default_message = "Validation failed"


class Unauthorized(LedgerServiceError):
    code = "unauthorized"
    status_code = 401
    default_message = "Missing or invalid Authorization header"


class Forbidden(LedgerServiceError):
    code = "forbidden"
    status_code = 403
    default_message = "Admin access required"


class LedgerUnavailable(LedgerServiceError):
    """Storage failed twice in a row for the same unit of work."""

    code = "ledger_unavailable"
    status_code = 503
    default_message = "Ledger temporarily unavailable, please retry"


class ConcurrencyConflict(LedgerServiceError):
    """Raised inside a unit of work when a guarded write lost a race; retried by the store."""

    code = "ledger_conflict"
    status_code = 409
    default_message = "Concurrent update detected"
