from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    BONUS = "bonus"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Account(BaseModel):
    user_id: str
    balance: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: UUID
    user_id: str
    type: TransactionType
    amount: int
    status: TransactionStatus = TransactionStatus.COMPLETED
    product_ref: Optional[str] = None
    external_transaction_id: Optional[str] = None
    # purchase audit trail
    original_transaction_id: Optional[str] = None
    transaction_data: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def counts_toward_balance(self) -> bool:
        return self.status == TransactionStatus.COMPLETED


class Product(BaseModel):
    product_id: str = Field(..., min_length=1)
    name: str = Field(..., max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    credits: int = Field(..., ge=1)
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, max_length=3)
    is_active: bool = True
    display_order: int = Field(default=0, ge=0)

    model_config = ConfigDict(from_attributes=True)


class ProductUpdate(BaseModel):
    """Partial update; unset fields are left as they are."""

    name: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    credits: Optional[int] = Field(default=None, ge=1)
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, max_length=3)
    is_active: Optional[bool] = None
    display_order: Optional[int] = Field(default=None, ge=0)


class ProductPage(BaseModel):
    products: list[Product]
    total: int
    limit: int
    offset: int


class TransactionHistory(BaseModel):
    user_id: str
    transactions: list[Transaction]
    total: int
    limit: int
    offset: int


class PurchaseResult(BaseModel):
    transaction_id: UUID
    credits_added: int
    new_balance: int
    already_processed: bool = False


class RewardResult(BaseModel):
    credits_added: int
    new_balance: int


# HTTP request / response bodies

class PurchaseRequest(BaseModel):
    transaction_data: str = Field(..., min_length=1, description="StoreKit 2 JSON payload or JWS representation")
    product_id: str = Field(..., min_length=1)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "transaction_data": '{"transaction_id": "2000000123456789", "original_transaction_id": "2000000123456789", "product_id": "credits.pack.10"}',
            "product_id": "credits.pack.10",
        }
    })


class RewardRequest(BaseModel):
    source: Optional[str] = Field(default=None, max_length=64, description="e.g. rewarded_ad")


class BalanceResponse(BaseModel):
    credits: int


class TransactionOut(BaseModel):
    id: UUID
    type: TransactionType
    amount: int
    product_id: Optional[str] = None
    status: TransactionStatus
    created_at: datetime

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "TransactionOut":
        return cls(
            id=txn.id,
            type=txn.type,
            amount=txn.amount,
            product_id=txn.product_ref,
            status=txn.status,
            created_at=txn.created_at,
        )


class PageMeta(BaseModel):
    total: int
    limit: int
    offset: int


class TransactionHistoryResponse(BaseModel):
    transactions: list[TransactionOut]
    meta: PageMeta


class PurchaseResponse(BaseModel):
    transaction_id: UUID
    credits_added: int
    new_balance: int


class RewardResponse(BaseModel):
    credits_added: int
    new_balance: int


class RegisterResponse(BaseModel):
    user_id: str
    credits: int
    created_at: datetime


class ProductOut(BaseModel):
    product_id: str
    name: str
    description: Optional[str] = None
    credits: int
    price: Optional[float] = None
    currency: Optional[str] = None
    display_order: int


class ProductListResponse(BaseModel):
    products: list[ProductOut]


class AdminProductListResponse(BaseModel):
    products: list[Product]
    meta: PageMeta
