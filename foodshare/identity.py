"""
Identity verification against Firebase Auth, plus an in-memory double.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Optional, Protocol

import firebase_admin
from firebase_admin import auth, credentials
from firebase_admin import exceptions as firebase_exceptions

from foodshare.errors import (
    DependencyError,
    DependencyTimeout,
    ForbiddenError,
    Unauthorized,
)

logger = logging.getLogger(__name__)

FIREBASE_APP_NAME = "foodshare"


@dataclass(frozen=True)
class Principal:
    """A verified caller."""

    email: str
    uid: Optional[str] = None
    claims: dict = field(default_factory=dict)


class IdentityVerifier(Protocol):
    """Turns a bearer credential into a Principal or raises."""

    def verify(self, token: str) -> Principal:
        ...


def parse_bearer(header: Optional[str]) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not header or not header.startswith("Bearer "):
        raise Unauthorized("No token")
    token = header[len("Bearer "):].strip()
    if not token:
        raise Unauthorized("No token")
    return token


def _principal_from_claims(claims: dict) -> Principal:
    email = claims.get("email")
    if not email:
        raise ForbiddenError("Token has no email claim")
    return Principal(email=email, uid=claims.get("uid"), claims=dict(claims))


@dataclass
class InMemoryIdentityVerifier:
    """Test double mapping known tokens to claims."""

    tokens: dict = None

    def __post_init__(self):
        if self.tokens is None:
            self.tokens = {}

    def register(self, token: str, email: str, **claims) -> None:
        self.tokens[token] = {"email": email, **claims}

    def verify(self, token: str) -> Principal:
        claims = self.tokens.get(token)
        if claims is None:
            raise ForbiddenError("Invalid token")
        return _principal_from_claims(claims)


class FirebaseIdentityVerifier:
    """
    Verifies Firebase ID tokens with firebase-admin.

    Verification may fetch Google's public certificates. The same timeout is
    passed to firebase-admin as ``httpTimeout`` so a hung fetch frees its
    worker, and the caller stops waiting after ``timeout`` seconds.
    """

    def __init__(self, service_account_json: str, timeout: float = 5.0):
        if not service_account_json:
            raise ValueError("FIREBASE_SERVICE_ACCOUNT is required")
        self.timeout = timeout
        try:
            self._app = firebase_admin.get_app(FIREBASE_APP_NAME)
        except ValueError:
            cert = credentials.Certificate(json.loads(service_account_json))
            self._app = firebase_admin.initialize_app(
                cert, options={"httpTimeout": timeout}, name=FIREBASE_APP_NAME
            )
        self._executor = ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="firebase-verify"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def verify(self, token: str) -> Principal:
        future = self._executor.submit(auth.verify_id_token, token, app=self._app)
        try:
            claims = future.result(timeout=self.timeout)
        except FutureTimeout as exc:
            future.cancel()
            logger.warning("Token verification timed out after %ss", self.timeout)
            raise DependencyTimeout("Identity provider timed out") from exc
        except auth.CertificateFetchError as exc:
            logger.error("Could not fetch token certificates: %s", exc)
            raise DependencyError("Identity provider unavailable") from exc
        except auth.InvalidIdTokenError as exc:
            logger.info("Token verification failed: %s", exc)
            raise ForbiddenError("Invalid token") from exc
        except firebase_exceptions.FirebaseError as exc:
            logger.error("Identity provider error: %s", exc)
            raise DependencyError("Identity provider unavailable") from exc
        except ValueError as exc:
            raise Unauthorized("Malformed token") from exc
        return _principal_from_claims(claims)
