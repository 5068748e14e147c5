"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Header

from foodshare.config import get_settings
from foodshare.db import DbClient, InMemoryDbClient, MongoDbClient, PostgresDbClient
from foodshare.food_requests import RequestManager
from foodshare.identity import (
    FirebaseIdentityVerifier,
    IdentityVerifier,
    InMemoryIdentityVerifier,
    Principal,
    parse_bearer,
)
from foodshare.listings import ListingManager
from foodshare.payments import (
    InMemoryPaymentGateway,
    PaymentGateway,
    PaymentLedger,
    StripePaymentGateway,
)
from foodshare.users import UserManager

logger = logging.getLogger(__name__)

_db_client: DbClient | None = None
_identity_verifier: IdentityVerifier | None = None
_payment_gateway: PaymentGateway | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client shared by every request.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not (
        settings.mongodb_uri or settings.database_url
    ):
        logger.warning("No document store configured; using in-memory store")
        _db_client = InMemoryDbClient()
    elif settings.mongodb_uri:
        _db_client = MongoDbClient(
            settings.mongodb_uri,
            database=settings.mongodb_database,
            timeout_ms=settings.mongodb_timeout_ms,
        )
    else:
        _db_client = PostgresDbClient(settings.database_url)
    logger.info("Using %s", type(_db_client).__name__)
    return _db_client


def get_identity_verifier() -> IdentityVerifier:
    global _identity_verifier
    if _identity_verifier:
        return _identity_verifier

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.firebase_service_account:
        logger.warning("FIREBASE_SERVICE_ACCOUNT not set; no bearer token will verify")
        _identity_verifier = InMemoryIdentityVerifier()
    else:
        _identity_verifier = FirebaseIdentityVerifier(
            settings.firebase_service_account,
            timeout=settings.identity_timeout_seconds,
        )
    return _identity_verifier


def get_payment_gateway() -> PaymentGateway:
    global _payment_gateway
    if _payment_gateway:
        return _payment_gateway

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY not set; using in-memory payment gateway")
        _payment_gateway = InMemoryPaymentGateway()
    else:
        _payment_gateway = StripePaymentGateway(
            secret_key=settings.stripe_secret_key,
            api_base=settings.stripe_api_base,
            timeout=settings.payment_timeout_seconds,
        )
    return _payment_gateway


def close_clients() -> None:
    """Release store and collaborator resources; called on app shutdown."""
    global _db_client, _identity_verifier, _payment_gateway
    for client in (_db_client, _identity_verifier, _payment_gateway):
        close = getattr(client, "close", None)
        if close:
            close()
    _db_client = None
    _identity_verifier = None
    _payment_gateway = None


def get_user_manager(db: DbClient = Depends(get_db_client)) -> UserManager:
    return UserManager(db)


def get_listing_manager(
    db: DbClient = Depends(get_db_client),
    users: UserManager = Depends(get_user_manager),
) -> ListingManager:
    return ListingManager(db, users)


def get_request_manager(
    db: DbClient = Depends(get_db_client),
    users: UserManager = Depends(get_user_manager),
) -> RequestManager:
    return RequestManager(db, users)


def get_payment_ledger(
    db: DbClient = Depends(get_db_client),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentLedger:
    return PaymentLedger(db, gateway, currency=get_settings().payment_currency)


def get_principal(
    authorization: Optional[str] = Header(default=None),
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> Principal:
    """Verified caller from the ``Authorization: Bearer`` header."""
    return verifier.verify(parse_bearer(authorization))
