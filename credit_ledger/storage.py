"""
Ledger storage backends.

Both backends expose the same surface to ``LedgerService``:

- ``transact(user_id, work)`` runs ``work(uow)`` as one atomic unit scoped to
  a single account. Either every write staged through ``uow`` commits, or none
  does. Conflicts are retried once before surfacing as ``LedgerUnavailable``.
- ``create_account``, ``get_account``, ``list_transactions``
- ``upsert_product``, ``get_product``, ``list_products``, ``search_products``
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar
from uuid import UUID, uuid4

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from .db import AccountRow, Base, ProductRow, TransactionRow, make_engine, make_session_factory
from .errors import ConcurrencyConflict, LedgerUnavailable
from .models import Account, Product, Transaction, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)

T = TypeVar("T")

SIGNUP_BONUS_REF = "signup_bonus"
MAX_ATTEMPTS = 2
PRODUCT_SORT_FIELDS = ("display_order", "name", "product_id", "credits")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStorage:
    """Process-local store. Each account has its own lock; all check-then-write runs under it."""

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.external_index: dict[str, UUID] = {}
        self.products: dict[str, dict] = {}
        self._sequence = 0
        self._registry_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._account_locks: dict[str, threading.Lock] = {}

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._account_locks.get(user_id)
            if lock is None:
                lock = self._account_locks[user_id] = threading.Lock()
            return lock

    def transact(self, user_id: str, work: Callable[["MemoryUnitOfWork"], T]) -> T:
        last_error: Optional[Exception] = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            with self._lock_for(user_id):
                uow = MemoryUnitOfWork(self, user_id)
                try:
                    result = work(uow)
                    uow.commit()
                    return result
                except ConcurrencyConflict as e:
                    last_error = e
                    logger.warning(
                        "ledger_conflict_retry",
                        extra={"user_id": user_id, "attempt": attempt, "error": str(e)},
                    )
        raise LedgerUnavailable() from last_error

    def create_account(self, user_id: str, signup_bonus: int = 0) -> tuple[Account, bool]:
        with self._lock_for(user_id):
            existing = self.accounts.get(user_id)
            if existing:
                return Account(**existing), False
            now = _utcnow()
            account_data = {"user_id": user_id, "balance": 0, "created_at": now, "updated_at": now}
            self.accounts[user_id] = account_data
            if signup_bonus > 0:
                uow = MemoryUnitOfWork(self, user_id)
                uow.append(TransactionType.BONUS, signup_bonus, product_ref=SIGNUP_BONUS_REF)
                uow.commit()
            return Account(**self.accounts[user_id]), True

    def get_account(self, user_id: str) -> Optional[Account]:
        account_data = self.accounts.get(user_id)
        return Account(**account_data) if account_data else None

    def list_transactions(self, user_id: str, limit: int, offset: int) -> tuple[list[Transaction], int]:
        with self._write_lock:
            rows = [t for t in self.transactions.values() if t["user_id"] == user_id]
        rows.sort(key=lambda t: (t["created_at"], t["seq"]), reverse=True)
        page = [Transaction(**_public(t)) for t in rows[offset:offset + limit]]
        return page, len(rows)

    def upsert_product(self, product: Product) -> Product:
        self.products[product.product_id] = product.model_dump()
        return product

    def get_product(self, product_id: str) -> Optional[Product]:
        product_data = self.products.get(product_id)
        return Product(**product_data) if product_data else None

    def list_products(self, active_only: bool = True) -> list[Product]:
        products = [Product(**p) for p in self.products.values()]
        if active_only:
            products = [p for p in products if p.is_active]
        return sorted(products, key=lambda p: p.display_order)

    def search_products(
        self,
        limit: int,
        offset: int,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        sort_by: str = "display_order",
        descending: bool = False,
    ) -> tuple[list[Product], int]:
        products = [Product(**p) for p in self.products.values()]
        if is_active is not None:
            products = [p for p in products if p.is_active == is_active]
        if search:
            needle = search.lower()
            products = [
                p for p in products
                if needle in p.name.lower()
                or needle in p.product_id.lower()
                or needle in (p.description or "").lower()
            ]
        products.sort(key=lambda p: (getattr(p, sort_by), p.product_id), reverse=descending)
        return products[offset:offset + limit], len(products)

    def _next_seq(self) -> int:
        self._sequence += 1
        return self._sequence


def _public(row: dict) -> dict:
    return {k: v for k, v in row.items() if k != "seq"}


class MemoryUnitOfWork:
    def __init__(self, storage: InMemoryStorage, user_id: str):
        self.storage = storage
        self.user_id = user_id
        self.account = storage.get_account(user_id)
        self._balance = self.account.balance if self.account else 0
        self._staged: list[dict] = []

    @property
    def balance(self) -> int:
        return self._balance

    def find_completed_by_external_id(self, external_transaction_id: str) -> Optional[Transaction]:
        for staged in self._staged:
            if staged["external_transaction_id"] == external_transaction_id:
                return Transaction(**_public(staged))
        with self.storage._write_lock:
            txn_id = self.storage.external_index.get(external_transaction_id)
            if txn_id is None:
                return None
            row = self.storage.transactions[txn_id]
        if row["status"] != TransactionStatus.COMPLETED:
            return None
        return Transaction(**_public(row))

    def count_transactions(self, txn_type: TransactionType, since: datetime) -> int:
        with self.storage._write_lock:
            rows = list(self.storage.transactions.values())
        return sum(
            1 for t in rows
            if t["user_id"] == self.user_id and t["type"] == txn_type and t["created_at"] >= since
        )

    def append(
        self,
        txn_type: TransactionType,
        amount: int,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        product_ref: Optional[str] = None,
        external_transaction_id: Optional[str] = None,
        original_transaction_id: Optional[str] = None,
        transaction_data: Optional[str] = None,
    ) -> Transaction:
        if status == TransactionStatus.COMPLETED:
            if self._balance + amount < 0:
                raise ConcurrencyConflict(f"Balance of {self.user_id} would become negative")
            self._balance += amount
        row = {
            "id": uuid4(),
            "user_id": self.user_id,
            "type": txn_type,
            "amount": amount,
            "status": status,
            "product_ref": product_ref,
            "external_transaction_id": external_transaction_id,
            "original_transaction_id": original_transaction_id,
            "transaction_data": transaction_data,
            "created_at": _utcnow(),
        }
        self._staged.append(row)
        return Transaction(**row)

    def commit(self) -> None:
        if not self._staged:
            return
        storage = self.storage
        with storage._write_lock:
            for row in self._staged:
                ext_id = row["external_transaction_id"]
                if ext_id is not None and ext_id in storage.external_index:
                    raise ConcurrencyConflict(f"External transaction {ext_id} already recorded")
            for row in self._staged:
                stored = dict(row, seq=storage._next_seq())
                storage.transactions[row["id"]] = stored
                if row["external_transaction_id"] is not None:
                    storage.external_index[row["external_transaction_id"]] = row["id"]
            account_data = storage.accounts[self.user_id]
            account_data["balance"] = self._balance
            account_data["updated_at"] = _utcnow()
        self._staged = []


class SQLStorage:
    """SQLAlchemy store. The account row is locked FOR UPDATE and balance writes are guarded."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str, create_schema: bool = True, **engine_kwargs) -> "SQLStorage":
        engine = make_engine(database_url, **engine_kwargs)
        if create_schema:
            Base.metadata.create_all(engine)
        return cls(make_session_factory(engine))

    def transact(self, user_id: str, work: Callable[["SQLUnitOfWork"], T]) -> T:
        last_error: Optional[Exception] = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                with self.session_factory() as db, db.begin():
                    row = (
                        db.query(AccountRow)
                        .filter(AccountRow.user_id == user_id)
                        .with_for_update()
                        .one_or_none()
                    )
                    return work(SQLUnitOfWork(db, user_id, row))
            except (ConcurrencyConflict, IntegrityError, OperationalError) as e:
                last_error = e
                logger.warning(
                    "ledger_conflict_retry",
                    extra={"user_id": user_id, "attempt": attempt, "error": str(e)},
                )
        raise LedgerUnavailable() from last_error

    def create_account(self, user_id: str, signup_bonus: int = 0) -> tuple[Account, bool]:
        try:
            with self.session_factory() as db, db.begin():
                row = db.get(AccountRow, user_id)
                if row is not None:
                    return Account.model_validate(row), False
                now = _utcnow()
                row = AccountRow(user_id=user_id, balance=signup_bonus if signup_bonus > 0 else 0,
                                 created_at=now, updated_at=now)
                db.add(row)
                db.flush()
                if signup_bonus > 0:
                    db.add(TransactionRow(
                        user_id=user_id,
                        type=TransactionType.BONUS.value,
                        amount=signup_bonus,
                        status=TransactionStatus.COMPLETED.value,
                        product_ref=SIGNUP_BONUS_REF,
                        created_at=now,
                    ))
                return Account.model_validate(row), True
        except IntegrityError:
            # another request registered the same user first
            account = self.get_account(user_id)
            if account is None:
                raise
            return account, False

    def get_account(self, user_id: str) -> Optional[Account]:
        with self.session_factory() as db:
            row = db.get(AccountRow, user_id)
            return Account.model_validate(row) if row else None

    def list_transactions(self, user_id: str, limit: int, offset: int) -> tuple[list[Transaction], int]:
        with self.session_factory() as db:
            total = (
                db.query(func.count(TransactionRow.seq))
                .filter(TransactionRow.user_id == user_id)
                .scalar()
            )
            rows = (
                db.query(TransactionRow)
                .filter(TransactionRow.user_id == user_id)
                .order_by(TransactionRow.created_at.desc(), TransactionRow.seq.desc())
                .limit(limit)
                .offset(offset)
                .all()
            )
            return [_to_transaction(r) for r in rows], total

    def upsert_product(self, product: Product) -> Product:
        with self.session_factory() as db, db.begin():
            db.merge(ProductRow(**product.model_dump()))
        return product

    def get_product(self, product_id: str) -> Optional[Product]:
        with self.session_factory() as db:
            row = db.get(ProductRow, product_id)
            return Product.model_validate(row) if row else None

    def list_products(self, active_only: bool = True) -> list[Product]:
        with self.session_factory() as db:
            query = db.query(ProductRow)
            if active_only:
                query = query.filter(ProductRow.is_active.is_(True))
            return [Product.model_validate(r) for r in query.order_by(ProductRow.display_order).all()]

    def search_products(
        self,
        limit: int,
        offset: int,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        sort_by: str = "display_order",
        descending: bool = False,
    ) -> tuple[list[Product], int]:
        with self.session_factory() as db:
            query = db.query(ProductRow)
            if is_active is not None:
                query = query.filter(ProductRow.is_active == is_active)
            if search:
                pattern = f"%{search}%"
                query = query.filter(or_(
                    ProductRow.name.ilike(pattern),
                    ProductRow.product_id.ilike(pattern),
                    ProductRow.description.ilike(pattern),
                ))
            total = query.count()
            column = getattr(ProductRow, sort_by)
            order = (column.desc(), ProductRow.product_id.desc()) if descending else (column, ProductRow.product_id)
            rows = query.order_by(*order).limit(limit).offset(offset).all()
            return [Product.model_validate(r) for r in rows], total


def _to_transaction(row: TransactionRow) -> Transaction:
    return Transaction(
        id=UUID(row.id),
        user_id=row.user_id,
        type=TransactionType(row.type),
        amount=row.amount,
        status=TransactionStatus(row.status),
        product_ref=row.product_ref,
        external_transaction_id=row.external_transaction_id,
        original_transaction_id=row.original_transaction_id,
        transaction_data=row.transaction_data,
        created_at=row.created_at,
    )


class SQLUnitOfWork:
    def __init__(self, db: Session, user_id: str, row: Optional[AccountRow]):
        self.db = db
        self.user_id = user_id
        self.account = Account.model_validate(row) if row else None
        self._balance = row.balance if row else 0

    @property
    def balance(self) -> int:
        return self._balance

    def find_completed_by_external_id(self, external_transaction_id: str) -> Optional[Transaction]:
        row = (
            self.db.query(TransactionRow)
            .filter(
                TransactionRow.external_transaction_id == external_transaction_id,
                TransactionRow.status == TransactionStatus.COMPLETED.value,
            )
            .one_or_none()
        )
        return _to_transaction(row) if row else None

    def count_transactions(self, txn_type: TransactionType, since: datetime) -> int:
        return (
            self.db.query(func.count(TransactionRow.seq))
            .filter(
                TransactionRow.user_id == self.user_id,
                TransactionRow.type == txn_type.value,
                TransactionRow.created_at >= since,
            )
            .scalar()
        )

    def append(
        self,
        txn_type: TransactionType,
        amount: int,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        product_ref: Optional[str] = None,
        external_transaction_id: Optional[str] = None,
        original_transaction_id: Optional[str] = None,
        transaction_data: Optional[str] = None,
    ) -> Transaction:
        now = _utcnow()
        if status == TransactionStatus.COMPLETED:
            result = self.db.execute(
                update(AccountRow)
                .where(AccountRow.user_id == self.user_id, AccountRow.balance + amount >= 0)
                .values(balance=AccountRow.balance + amount, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(f"Guarded balance update for {self.user_id} matched no row")
            self._balance += amount
        row = TransactionRow(
            id=str(uuid4()),
            user_id=self.user_id,
            type=txn_type.value,
            amount=amount,
            status=status.value,
            product_ref=product_ref,
            external_transaction_id=external_transaction_id,
            original_transaction_id=original_transaction_id,
            transaction_data=transaction_data,
            created_at=now,
        )
        self.db.add(row)
        self.db.flush()
        return _to_transaction(row)
