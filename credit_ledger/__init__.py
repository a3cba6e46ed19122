"""
Credits Ledger

This module provides:
- Per-user credit accounts with a non-negative balance
- Append-only transaction history (purchase, usage, bonus)
- Atomic debit for billable actions and idempotent purchase crediting
- StoreKit 2 purchase verification
- IAP product catalog with admin management
"""

from .errors import (
    LedgerServiceError,
    AccountNotFound,
    InsufficientCredits,
    InvalidTransaction,
    VerificationExpired,
    ProductNotFound,
    ProductInactive,
    ProductAlreadyExists,
    RewardLimitReached,
    InvalidRequest,
    Forbidden,
    LedgerUnavailable,
)
from .models import (
    TransactionType,
    TransactionStatus,
    Account,
    Transaction,
    Product,
    ProductUpdate,
)
from .service import LedgerService
from .storage import InMemoryStorage, SQLStorage
from .verifier import StoreKitVerifier, VerifiedPurchase

__all__ = [
    "LedgerServiceError",
    "AccountNotFound",
    "InsufficientCredits",
    "InvalidTransaction",
    "VerificationExpired",
    "ProductNotFound",
    "ProductInactive",
    "ProductAlreadyExists",
    "RewardLimitReached",
    "InvalidRequest",
    "Forbidden",
    "LedgerUnavailable",
    "TransactionType",
    "TransactionStatus",
    "Account",
    "Transaction",
    "Product",
    "ProductUpdate",
    "LedgerService",
    "InMemoryStorage",
    "SQLStorage",
    "StoreKitVerifier",
    "VerifiedPurchase",
]
