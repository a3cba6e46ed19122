from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountRow(Base):
    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

    user_id = Column(String, primary_key=True)  # external auth subject (Firebase uid)
    balance = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class TransactionRow(Base):
    __tablename__ = "credit_transactions"

    # seq gives a stable insertion order for rows sharing a created_at
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False, default=lambda: str(uuid4()))
    user_id = Column(String, ForeignKey("accounts.user_id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # purchase, usage, bonus
    amount = Column(Integer, nullable=False)
    status = Column(String, nullable=False)
    product_ref = Column(String, nullable=True)
    external_transaction_id = Column(String, unique=True, nullable=True)
    original_transaction_id = Column(String, nullable=True, index=True)
    transaction_data = Column(Text, nullable=True)  # raw StoreKit payload as received
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class ProductRow(Base):
    __tablename__ = "iap_products"

    product_id = Column(String, primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    credits = Column(Integer, nullable=False)
    price = Column(Float, nullable=True)
    currency = Column(String(3), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)


def make_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    connect_timeout: int = 5,
) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": connect_timeout},
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_recycle=1800,  # recycle connections every 30 min (avoid stale)
        connect_args={"connect_timeout": connect_timeout},
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
