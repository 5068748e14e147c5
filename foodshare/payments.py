"""
Payment gateway abstraction (Stripe over HTTPS and an in-memory double) and
the append-only payment ledger.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional, Protocol

import requests

from foodshare.db import DbClient, PaymentRecord, utcnow
from foodshare.errors import (
    DependencyError,
    DependencyTimeout,
    DuplicateKeyError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """Creates client-usable payment handles."""

    def create_payment_intent(self, amount: int, currency: str) -> str:
        ...


@dataclass
class InMemoryPaymentGateway:
    """Test double that hands out fake client secrets."""

    intents: list = field(default_factory=list)

    def create_payment_intent(self, amount: int, currency: str) -> str:
        intent_id = f"pi_{uuid.uuid4().hex[:24]}"
        self.intents.append({"id": intent_id, "amount": amount, "currency": currency})
        return f"{intent_id}_secret_{uuid.uuid4().hex[:16]}"


@dataclass
class StripePaymentGateway:
    """
    Stripe PaymentIntents over the REST API.
    """

    secret_key: str
    api_base: str = "https://api.stripe.com"
    timeout: float = 10.0

    def __post_init__(self):
        if not self.secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required")
        self._session = requests.Session()
        self._session.auth = (self.secret_key, "")

    def close(self) -> None:
        self._session.close()

    def create_payment_intent(self, amount: int, currency: str) -> str:
        try:
            response = self._session.post(
                f"{self.api_base}/v1/payment_intents",
                data={
                    "amount": amount,
                    "currency": currency,
                    "automatic_payment_methods[enabled]": "true",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.Timeout as exc:
            logger.warning("Stripe timed out after %ss", self.timeout)
            raise DependencyTimeout("Payment processor timed out") from exc
        except requests.RequestException as exc:
            logger.error("Stripe request failed: %s", exc)
            raise DependencyError("Payment processor unavailable") from exc
        return response.json()["client_secret"]


class PaymentLedger:
    """Payment intents and the write-once payment history."""

    def __init__(self, db: DbClient, gateway: PaymentGateway, currency: str = "usd"):
        self.db = db
        self.gateway = gateway
        self.currency = currency

    def create_intent(self, price: float) -> str:
        if price is None or price <= 0:
            raise ValidationError("Invalid price")
        amount = round(price * 100)
        return self.gateway.create_payment_intent(amount, self.currency)

    def record(
        self,
        email: str,
        amount: float,
        transaction_id: str,
        status: str,
        date: Optional[datetime] = None,
    ) -> PaymentRecord:
        if not email or not amount or not transaction_id or not status:
            raise ValidationError("Missing payment data")
        if date is not None and date.tzinfo is None:
            date = date.replace(tzinfo=timezone.utc)
        try:
            return self.db.insert_payment(
                PaymentRecord(
                    id="",
                    email=email,
                    amount=amount,
                    transaction_id=transaction_id,
                    status=status,
                    date=date or utcnow(),
                )
            )
        except DuplicateKeyError as exc:
            raise ValidationError("Payment already recorded") from exc

    def history(self, email: str) -> Iterator[PaymentRecord]:
        return self.db.list_payments(email)
