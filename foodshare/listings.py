"""
Food listings: creation, patching, status transitions, deletion and search.

Listings arrive in the wire shape the web clients use (``foodName``,
``expiredDateTime``, ...). Known fields are validated and stored as columns;
anything else is kept as freeform display details.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from foodshare.db import DbClient, FoodQuery, FoodRecord, FoodStatus, utcnow
from foodshare.errors import (
    DependencyError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from foodshare.users import UserManager

logger = logging.getLogger(__name__)

# Wire name -> FoodRecord attribute.
_CORE_FIELDS = {
    "foodName": "food_name",
    "quantity": "quantity",
    "expiredDateTime": "expired_at",
    "foodStatus": "status",
}
# Never taken from client payloads.
_PROTECTED_FIELDS = {"_id", "id", "donorEmail", "createdAt", "updatedAt"}

STATUS_VALUES = tuple(s.value for s in FoodStatus)
SORT_ORDERS = ("asc", "desc")


def _as_utc(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError("expiredDateTime must be an ISO 8601 timestamp") from exc
    if not isinstance(value, datetime):
        raise ValidationError("expiredDateTime must be an ISO 8601 timestamp")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce(attr: str, value: Any) -> Any:
    if attr == "food_name":
        if not value or not isinstance(value, str):
            raise ValidationError("foodName must be a non-empty string")
        return value
    if attr == "quantity":
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError("quantity must be a non-negative integer")
        return value
    if attr == "expired_at":
        return _as_utc(value)
    if value not in STATUS_VALUES:
        raise ValidationError(f"foodStatus must be one of {', '.join(STATUS_VALUES)}")
    return value


def split_fields(fields: dict) -> tuple[dict, dict]:
    """Split a wire payload into (record changes, display details)."""
    changes: dict = {}
    details: dict = {}
    for key, value in fields.items():
        if key in _PROTECTED_FIELDS:
            continue
        attr = _CORE_FIELDS.get(key)
        if attr:
            changes[attr] = _coerce(attr, value)
        else:
            details[key] = value
    return changes, details


class ListingManager:
    def __init__(self, db: DbClient, users: UserManager):
        self.db = db
        self.users = users

    def _require_valid_id(self, food_id: str) -> None:
        if not self.db.is_valid_id(food_id):
            raise ValidationError("Invalid food id")

    def create_listing(self, donor_email: str, fields: dict) -> FoodRecord:
        if not donor_email or not fields.get("foodName"):
            raise ValidationError("donorEmail and foodName required")
        changes, details = split_fields(fields)
        # New listings always start out available.
        changes["status"] = FoodStatus.AVAILABLE.value
        now = utcnow()
        record = self.db.insert_food(
            FoodRecord(
                id="",
                donor_email=donor_email,
                details=details,
                created_at=now,
                updated_at=now,
                **changes,
            )
        )
        try:
            if not self.users.adjust_post_count(donor_email, 1):
                logger.info("No account for donor %s; postCount not updated", donor_email)
        except DependencyError as exc:
            logger.warning("postCount not incremented for %s: %s", donor_email, exc)
        return record

    def get_listing(self, food_id: str) -> FoodRecord:
        self._require_valid_id(food_id)
        food = self.db.get_food(food_id)
        if not food:
            raise NotFoundError("Food not found")
        return food

    def update_listing(self, food_id: str, patch: dict) -> FoodRecord:
        self._require_valid_id(food_id)
        changes, details = split_fields(patch)
        if "quantity" in changes and self.db.has_active_requests(food_id):
            raise ValidationError("quantity cannot change while requests are active")
        food = self.db.update_food(food_id, changes, details)
        if not food:
            raise NotFoundError("Food not found")
        return food

    def set_status(self, food_id: str, status: Optional[str] = None) -> FoodRecord:
        self._require_valid_id(food_id)
        status = status or FoodStatus.REQUESTED.value
        food = self.db.update_food(food_id, {"status": _coerce("status", status)})
        if not food:
            raise NotFoundError("Food not found")
        return food

    def delete_listing(self, food_id: str, requester_email: str) -> None:
        """Remove a listing owned by ``requester_email``.

        Requests that point at the listing are left in place.
        """
        food = self.get_listing(food_id)
        if food.donor_email != requester_email:
            raise ForbiddenError("Only the donor can delete this listing")
        if not self.db.delete_food(food_id):
            raise NotFoundError("Food not found")
        logger.info("Deleted food %s for %s", food_id, requester_email)

    def search(
        self,
        status: Optional[str] = FoodStatus.AVAILABLE.value,
        name_pattern: str = "",
        expires_after: Optional[datetime] = None,
        sort: Optional[str] = None,
    ) -> Iterator[FoodRecord]:
        """Listings that have not expired as of ``expires_after`` (default now)."""
        if status is not None and status not in STATUS_VALUES:
            raise ValidationError(f"status must be one of {', '.join(STATUS_VALUES)}")
        if sort is not None and sort not in SORT_ORDERS:
            raise ValidationError("sortOrder must be 'asc' or 'desc'")
        query = FoodQuery(
            status=status,
            name_pattern=name_pattern or "",
            expires_after=_as_utc(expires_after) or utcnow(),
            sort=sort,
        )
        return self.db.find_food(query)

    def listings_for_donor(self, donor_email: str) -> Iterator[FoodRecord]:
        return self.db.find_food(FoodQuery(donor_email=donor_email))
