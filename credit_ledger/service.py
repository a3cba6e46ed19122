import logging
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar, Union

from .errors import (
    AccountNotFound,
    InsufficientCredits,
    InvalidRequest,
    ProductAlreadyExists,
    ProductInactive,
    ProductNotFound,
    RewardLimitReached,
)
from .models import (
    Account,
    Product,
    ProductPage,
    ProductUpdate,
    PurchaseResult,
    RewardResult,
    Transaction,
    TransactionHistory,
    TransactionType,
)
from .storage import PRODUCT_SORT_FIELDS, InMemoryStorage, SQLStorage
from .verifier import StoreKitVerifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REWARD_SOURCE = "rewarded_ad"


class LedgerService:
    def __init__(
        self,
        storage: Optional[Union[InMemoryStorage, SQLStorage]] = None,
        verifier: Optional[StoreKitVerifier] = None,
        reward_credits: int = 1,
        reward_daily_cap: Optional[int] = None,
        signup_bonus_credits: int = 0,
    ):
        self.storage = storage or InMemoryStorage()
        self.verifier = verifier or StoreKitVerifier()
        self.reward_credits = reward_credits
        self.reward_daily_cap = reward_daily_cap
        self.signup_bonus_credits = signup_bonus_credits

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def open_account(self, user_id: str) -> Account:
        """Create the account on first registration; later calls return it unchanged."""
        account, created = self.storage.create_account(user_id, signup_bonus=self.signup_bonus_credits)
        if created:
            logger.info("account_opened", extra={"user_id": user_id, "new_balance": account.balance})
        return account

    # ------------------------------------------------------------------
    # Balance queries
    # ------------------------------------------------------------------

    def get_balance(self, user_id: str) -> int:
        return self._require_account(user_id).balance

    def check_availability(self, user_id: str, amount: int = 1) -> bool:
        """Advisory only; ``debit`` re-checks atomically."""
        _require_positive(amount)
        return self._require_account(user_id).balance >= amount

    def get_transaction_history(self, user_id: str, limit: int = 20, offset: int = 0) -> TransactionHistory:
        if limit < 1:
            raise InvalidRequest("limit must be a positive integer")
        if offset < 0:
            raise InvalidRequest("offset must be non-negative")
        self._require_account(user_id)
        transactions, total = self.storage.list_transactions(user_id, limit, offset)
        return TransactionHistory(
            user_id=user_id,
            transactions=transactions,
            total=total,
            limit=limit,
            offset=offset,
        )

    # ------------------------------------------------------------------
    # Debit
    # ------------------------------------------------------------------

    def debit(self, user_id: str, amount: int, product_ref: Optional[str] = None) -> Transaction:
        _require_positive(amount)

        def work(uow) -> Transaction:
            if uow.account is None:
                raise AccountNotFound()
            if uow.balance < amount:
                raise InsufficientCredits(details={"balance": uow.balance, "required": amount})
            return uow.append(TransactionType.USAGE, -amount, product_ref=product_ref)

        try:
            txn = self.storage.transact(user_id, work)
        except InsufficientCredits:
            logger.info("insufficient_credits", extra={"user_id": user_id, "amount": amount})
            raise
        logger.info(
            "credits_debited",
            extra={"user_id": user_id, "amount": amount, "product_ref": product_ref, "transaction_id": str(txn.id)},
        )
        return txn

    def run_billable(
        self,
        user_id: str,
        action: Callable[[], T],
        amount: int = 1,
        product_ref: Optional[str] = None,
    ) -> T:
        """Charge ``amount`` credits, then perform ``action``. Nothing runs when the debit fails."""
        self.debit(user_id, amount, product_ref=product_ref)
        return action()

    # ------------------------------------------------------------------
    # Credit
    # ------------------------------------------------------------------

    def credit(
        self,
        user_id: str,
        amount: int,
        source: Union[TransactionType, str],
        external_transaction_id: Optional[str] = None,
        product_ref: Optional[str] = None,
    ) -> int:
        """Add credits and return the new balance.

        With ``external_transaction_id`` the call is idempotent: once a completed
        transaction carries that id, repeats return the current balance untouched.
        """
        new_balance, _, _ = self._credit(user_id, amount, source, external_transaction_id, product_ref)
        return new_balance

    def _credit(
        self,
        user_id: str,
        amount: int,
        source: Union[TransactionType, str],
        external_transaction_id: Optional[str],
        product_ref: Optional[str],
        daily_cap: Optional[int] = None,
    ) -> tuple[int, Transaction, bool]:
        _require_positive(amount)
        txn_type = _credit_type(source)

        def work(uow) -> tuple[int, Transaction, bool]:
            if uow.account is None:
                raise AccountNotFound()
            if external_transaction_id is not None:
                existing = uow.find_completed_by_external_id(external_transaction_id)
                if existing is not None:
                    return uow.balance, existing, True
            if daily_cap is not None:
                granted_today = uow.count_transactions(txn_type, _start_of_day())
                if granted_today >= daily_cap:
                    raise RewardLimitReached(details={"daily_cap": daily_cap})
            txn = uow.append(
                txn_type,
                amount,
                product_ref=product_ref,
                external_transaction_id=external_transaction_id,
            )
            return uow.balance, txn, False

        new_balance, txn, duplicate = self.storage.transact(user_id, work)
        self._log_credit(user_id, txn, new_balance, duplicate)
        return new_balance, txn, duplicate

    def _log_credit(self, user_id: str, txn: Transaction, new_balance: int, duplicate: bool) -> None:
        if duplicate:
            logger.warning(
                "credit_already_processed",
                extra={
                    "user_id": user_id,
                    "external_transaction_id": txn.external_transaction_id,
                    "transaction_id": str(txn.id),
                    "error": None if txn.user_id == user_id else "recorded_for_another_account",
                },
            )
        else:
            logger.info(
                "credits_added",
                extra={
                    "user_id": user_id,
                    "amount": txn.amount,
                    "source": txn.type.value,
                    "new_balance": new_balance,
                    "external_transaction_id": txn.external_transaction_id,
                },
            )

    def process_purchase(self, user_id: str, transaction_data: str, product_id: str) -> PurchaseResult:
        # verification failures raise before anything touches the ledger
        purchase = self.verifier.verify(transaction_data, product_id)
        product = self.storage.get_product(product_id)

        def work(uow) -> tuple[int, Transaction, bool]:
            if uow.account is None:
                raise AccountNotFound()
            # renewals share original_transaction_id, so dedup on the per-purchase id
            existing = uow.find_completed_by_external_id(purchase.external_transaction_id)
            if existing is not None:
                return uow.balance, existing, True
            if product is None:
                raise ProductNotFound()
            if not product.is_active:
                raise ProductInactive(details={"product_id": product_id})
            txn = uow.append(
                TransactionType.PURCHASE,
                product.credits,
                product_ref=product.product_id,
                external_transaction_id=purchase.external_transaction_id,
                original_transaction_id=purchase.original_transaction_id,
                transaction_data=transaction_data,
            )
            return uow.balance, txn, False

        new_balance, txn, duplicate = self.storage.transact(user_id, work)
        self._log_credit(user_id, txn, new_balance, duplicate)
        return PurchaseResult(
            transaction_id=txn.id,
            credits_added=txn.amount,
            new_balance=new_balance,
            already_processed=duplicate,
        )

    def grant_reward(self, user_id: str, source: Optional[str] = None) -> RewardResult:
        new_balance, _, _ = self._credit(
            user_id,
            self.reward_credits,
            TransactionType.BONUS,
            external_transaction_id=None,
            product_ref=source or DEFAULT_REWARD_SOURCE,
            daily_cap=self.reward_daily_cap,
        )
        return RewardResult(credits_added=self.reward_credits, new_balance=new_balance)

    # ------------------------------------------------------------------
    # Product catalog
    # ------------------------------------------------------------------

    def register_product(self, product: Product) -> Product:
        """Insert or replace; used for seeding the catalog at startup."""
        return self.storage.upsert_product(product)

    def get_product(self, product_id: str) -> Product:
        product = self.storage.get_product(product_id)
        if product is None:
            raise ProductNotFound()
        return product

    def list_products(self) -> list[Product]:
        return self.storage.list_products(active_only=True)

    def list_admin_products(
        self,
        limit: int = 50,
        offset: int = 0,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        sort_by: str = "display_order",
        descending: bool = False,
    ) -> ProductPage:
        """All products, inactive included, filtered and paginated for the admin console."""
        if limit < 1:
            raise InvalidRequest("limit must be a positive integer")
        if offset < 0:
            raise InvalidRequest("offset must be non-negative")
        if sort_by not in PRODUCT_SORT_FIELDS:
            raise InvalidRequest(f"sort_by must be one of {', '.join(PRODUCT_SORT_FIELDS)}")
        products, total = self.storage.search_products(
            limit, offset, search=search or None, is_active=is_active, sort_by=sort_by, descending=descending,
        )
        return ProductPage(products=products, total=total, limit=limit, offset=offset)

    def create_product(self, product: Product) -> Product:
        if self.storage.get_product(product.product_id) is not None:
            raise ProductAlreadyExists(details={"product_id": product.product_id})
        self.storage.upsert_product(product)
        logger.info("product_created", extra={"product_id": product.product_id})
        return product

    def update_product(self, product_id: str, changes: ProductUpdate) -> Product:
        product = self.get_product(product_id)
        updated = product.model_copy(update=changes.model_dump(exclude_unset=True, exclude_none=True))
        # re-run field validation on the merged record
        updated = Product(**updated.model_dump())
        self.storage.upsert_product(updated)
        logger.info("product_updated", extra={"product_id": product_id})
        return updated

    def set_product_active(self, product_id: str, active: bool) -> Product:
        product = self.get_product(product_id)
        updated = product.model_copy(update={"is_active": active})
        self.storage.upsert_product(updated)
        logger.info("product_activated" if active else "product_deactivated", extra={"product_id": product_id})
        return updated

    def delete_product(self, product_id: str) -> None:
        """Soft delete: past purchases keep referring to the product, so the row stays."""
        self.set_product_active(product_id, False)

    def _require_account(self, user_id: str) -> Account:
        account = self.storage.get_account(user_id)
        if account is None:
            raise AccountNotFound()
        return account


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidRequest(f"amount must be a positive integer, got {amount!r}")


def _credit_type(source: Union[TransactionType, str]) -> TransactionType:
    try:
        txn_type = TransactionType(source)
    except ValueError:
        raise InvalidRequest(f"Unknown credit source {source!r}")
    if txn_type == TransactionType.USAGE:
        raise InvalidRequest("Credits cannot be added as usage")
    return txn_type


def _start_of_day() -> datetime:
    return datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
