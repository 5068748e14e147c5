"""
User accounts: profile upsert, membership, and the post/request counters the
listing and request managers maintain.
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional

from foodshare.db import POST_COUNT, REQUEST_COUNT, DbClient, UserRecord
from foodshare.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MEMBERSHIP_VALUES = ("yes", "no")


class UserManager:
    def __init__(self, db: DbClient):
        self.db = db

    def upsert_profile(
        self,
        email: str,
        name: Optional[str] = None,
        photourl: Optional[str] = None,
        membership: str = "no",
    ) -> tuple[UserRecord, bool]:
        """Create the account on first sight, otherwise refresh display fields.

        ``membership`` only applies to a newly created account, so an existing
        member is never downgraded. Returns ``(user, created)``.
        """
        if not email:
            raise ValidationError("Email is required")
        if membership not in MEMBERSHIP_VALUES:
            raise ValidationError("membership must be 'yes' or 'no'")
        user, created = self.db.upsert_user(
            email, name=name, photourl=photourl, membership=membership
        )
        if created:
            logger.info("Created user %s", email)
        return user, created

    def get_profile(self, email: str) -> UserRecord:
        user = self.db.get_user(email)
        if not user:
            raise NotFoundError("User not found")
        return user

    def list_profiles(self) -> Iterator[UserRecord]:
        return self.db.list_users()

    def grant_membership(self, email: str) -> None:
        if not self.db.set_membership(email, "yes"):
            raise NotFoundError("User not found")
        logger.info("Granted membership to %s", email)

    # Counters are fire-and-forget metrics: a missing user is not an error.

    def adjust_post_count(self, email: str, delta: int) -> bool:
        return self.db.adjust_user_counter(email, POST_COUNT, delta)

    def adjust_request_count(self, email: str, delta: int) -> bool:
        if delta >= 0:
            return self.db.adjust_user_counter(email, REQUEST_COUNT, delta)
        applied = self.db.adjust_user_counter(email, REQUEST_COUNT, delta, floor=0)
        if not applied and self.db.get_user(email) is not None:
            logger.warning(
                "requestCount for %s would drop below zero; decrement skipped", email
            )
        return applied
