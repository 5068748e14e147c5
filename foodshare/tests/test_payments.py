import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import requests

from foodshare.db import InMemoryDbClient
from foodshare.errors import DependencyError, DependencyTimeout, ValidationError
from foodshare.payments import InMemoryPaymentGateway, PaymentLedger, StripePaymentGateway


class PaymentLedgerTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.gateway = InMemoryPaymentGateway()
        self.ledger = PaymentLedger(self.db, self.gateway, currency="eur")

    def test_create_intent_converts_to_minor_units(self):
        secret = self.ledger.create_intent(19.99)
        self.assertTrue(secret.startswith("pi_"))
        self.assertEqual(self.gateway.intents, [
            {"id": self.gateway.intents[0]["id"], "amount": 1999, "currency": "eur"}
        ])

    def test_create_intent_rejects_non_positive(self):
        for price in (None, 0, -3):
            with self.assertRaises(ValidationError):
                self.ledger.create_intent(price)
        self.assertEqual(self.gateway.intents, [])

    def test_record_and_history(self):
        naive = datetime(2024, 5, 1, 12, 0)
        payment = self.ledger.record("a@example.com", 10, "pi_1", "succeeded", date=naive)
        self.assertEqual(payment.date, naive.replace(tzinfo=timezone.utc))
        self.ledger.record("a@example.com", 5, "pi_2", "succeeded")

        history = [p.transaction_id for p in self.ledger.history("a@example.com")]
        self.assertEqual(history, ["pi_2", "pi_1"])

    def test_record_validation(self):
        with self.assertRaises(ValidationError):
            self.ledger.record("a@example.com", 10, "", "succeeded")
        self.ledger.record("a@example.com", 10, "pi_1", "succeeded")
        with self.assertRaises(ValidationError):
            self.ledger.record("b@example.com", 3, "pi_1", "succeeded")


class StripePaymentGatewayTests(unittest.TestCase):
    def setUp(self):
        self.gateway = StripePaymentGateway(secret_key="sk_test_123", timeout=2.5)
        self.addCleanup(self.gateway.close)

    def test_creates_payment_intent(self):
        response = MagicMock()
        response.json.return_value = {"id": "pi_1", "client_secret": "pi_1_secret_x"}
        with patch.object(self.gateway._session, "post", return_value=response) as post:
            secret = self.gateway.create_payment_intent(1250, "usd")

        self.assertEqual(secret, "pi_1_secret_x")
        url = post.call_args.args[0]
        self.assertEqual(url, "https://api.stripe.com/v1/payment_intents")
        self.assertEqual(post.call_args.kwargs["timeout"], 2.5)
        self.assertEqual(
            post.call_args.kwargs["data"],
            {
                "amount": 1250,
                "currency": "usd",
                "automatic_payment_methods[enabled]": "true",
            },
        )
        self.assertEqual(self.gateway._session.auth, ("sk_test_123", ""))

    def test_timeout_is_reported(self):
        with patch.object(self.gateway._session, "post", side_effect=requests.Timeout()):
            with self.assertRaises(DependencyTimeout):
                self.gateway.create_payment_intent(100, "usd")

    def test_http_error_is_dependency_error(self):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("402 Payment Required")
        with patch.object(self.gateway._session, "post", return_value=response):
            with self.assertRaises(DependencyError):
                self.gateway.create_payment_intent(100, "usd")

    def test_requires_secret_key(self):
        with self.assertRaises(ValueError):
            StripePaymentGateway(secret_key="")


if __name__ == "__main__":
    unittest.main()
