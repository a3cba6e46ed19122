"""
StoreKit 2 purchase verification.

The client sends either Transaction.jsonRepresentation (a JSON object, iOS 26+)
or Transaction.jwsRepresentation (a compact JWS, iOS 15-17). Both carry the
same fields; JSON payloads may use snake_case or camelCase keys.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import jwt

from .errors import InvalidTransaction, VerificationExpired

logger = logging.getLogger(__name__)


@dataclass
class VerifiedPurchase:
    external_transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date: Optional[datetime] = None
    expires_date: Optional[datetime] = None
    environment: str = "Production"


def _first(payload: dict, *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_date(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip().isdigit():
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise InvalidTransaction(f"Invalid transaction data: unreadable date {value!r}")
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    try:
        millis = float(value)
    except (TypeError, ValueError):
        raise InvalidTransaction(f"Invalid transaction data: unreadable date {value!r}")
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise InvalidTransaction(f"Invalid transaction data: date out of range {value!r}")


class StoreKitVerifier:
    def __init__(
        self,
        verify_signature: bool = False,
        public_key: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if verify_signature and not public_key:
            raise ValueError("public_key is required when verify_signature is enabled")
        self.verify_signature = verify_signature
        self.public_key = public_key
        self.clock = clock

    def verify(self, transaction_data: str, expected_product_id: str) -> VerifiedPurchase:
        payload = self._decode(transaction_data)

        transaction_id = _first(payload, "transactionId", "transaction_id", "jti")
        original_transaction_id = _first(payload, "originalTransactionId", "original_transaction_id")
        product_id = _first(payload, "productId", "product_id")
        if not transaction_id or not original_transaction_id or not product_id:
            logger.warning("purchase_missing_fields", extra={"error": ",".join(sorted(payload.keys()))})
            raise InvalidTransaction(
                "Invalid transaction data: missing required fields "
                "(transaction_id, original_transaction_id, product_id)"
            )

        if str(product_id) != expected_product_id:
            raise InvalidTransaction(
                "Product ID mismatch",
                details={"expected": expected_product_id, "actual": str(product_id)},
            )

        purchase = VerifiedPurchase(
            external_transaction_id=str(transaction_id),
            original_transaction_id=str(original_transaction_id),
            product_id=str(product_id),
            purchase_date=_parse_date(_first(payload, "purchaseDate", "purchase_date")),
            expires_date=_parse_date(_first(payload, "expiresDate", "expires_date")),
            environment=str(_first(payload, "environment") or "Production"),
        )

        if purchase.expires_date is not None and purchase.expires_date <= self.clock():
            raise VerificationExpired(
                f"Transaction {purchase.external_transaction_id} expired at {purchase.expires_date.isoformat()}"
            )

        logger.info(
            "purchase_verified",
            extra={
                "external_transaction_id": purchase.external_transaction_id,
                "product_id": purchase.product_id,
                "environment": purchase.environment,
                "purchase_date": purchase.purchase_date.isoformat() if purchase.purchase_date else None,
            },
        )
        return purchase

    def _decode(self, transaction_data: str) -> dict:
        data = transaction_data.strip()
        if data.startswith("{"):
            try:
                payload = json.loads(data)
            except json.JSONDecodeError:
                raise InvalidTransaction("Invalid transaction data: malformed JSON")
            if not isinstance(payload, dict):
                raise InvalidTransaction("Invalid transaction data: expected a JSON object")
            return payload

        try:
            if self.verify_signature:
                payload = jwt.decode(data, self.public_key, algorithms=["ES256"])
            else:
                payload = jwt.decode(data, options={"verify_signature": False})
        except jwt.InvalidTokenError as e:
            raise InvalidTransaction(f"Invalid transaction data: unable to decode as JWS or JSON ({e})")
        return payload
