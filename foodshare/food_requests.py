"""
Food request lifecycle and its side effects on food and user records.

A (food, user) pair moves none -> pending -> cancelled. Submissions for a pair
that already has an active request are merged into it; the store's unique
index on active requests decides races, and the loser retries as a merge.

Cancelling deletes the request and then restocks the food and decrements the
requester's counter. Those two follow-up steps are best-effort: their
failure does not undo the deletion, and is reported back as a partially
applied cancellation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from foodshare.db import DbClient, FoodRequestRecord, RequestStatus, utcnow
from foodshare.errors import (
    DependencyError,
    DuplicateKeyError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from foodshare.users import UserManager

logger = logging.getLogger(__name__)

MAX_SUBMIT_ATTEMPTS = 3

STEP_RESTOCK_FOOD = "restock_food"
STEP_DECREMENT_REQUEST_COUNT = "decrement_request_count"


@dataclass(frozen=True)
class SubmitOutcome:
    merged: bool
    request: FoodRequestRecord

    def as_dict(self) -> dict:
        body = {"success": True, "merged": self.merged}
        if self.merged:
            body["newQuantity"] = self.request.requested_quantity
        else:
            body["insertedId"] = self.request.id
        return body


@dataclass(frozen=True)
class CancelOutcome:
    request: FoodRequestRecord
    food_restocked: bool
    request_count_adjusted: bool
    failed_steps: tuple[str, ...] = ()

    @property
    def partial(self) -> bool:
        return bool(self.failed_steps)

    def as_dict(self) -> dict:
        return {
            "success": True,
            "partial": self.partial,
            "deletedId": self.request.id,
            "foodRestocked": self.food_restocked,
            "failedSteps": list(self.failed_steps),
        }


def _validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("requestedQuantity must be a positive integer")
    return quantity


class RequestManager:
    def __init__(self, db: DbClient, users: UserManager):
        self.db = db
        self.users = users

    def submit_request(
        self,
        food_id: str,
        user_email: str,
        quantity: int,
        notes: Optional[str] = None,
    ) -> SubmitOutcome:
        if not food_id or not user_email:
            raise ValidationError("foodId and userEmail required")
        quantity = _validate_quantity(quantity)
        if not self.db.is_valid_id(food_id):
            raise ValidationError("Invalid food id")
        if self.db.get_food(food_id) is None:
            raise NotFoundError("Food not found")

        for attempt in range(1, MAX_SUBMIT_ATTEMPTS + 1):
            merged = self.db.merge_active_request(food_id, user_email, quantity, notes)
            if merged:
                return SubmitOutcome(merged=True, request=merged)

            now = utcnow()
            try:
                inserted = self.db.insert_request(
                    FoodRequestRecord(
                        id="",
                        food_id=food_id,
                        user_email=user_email,
                        requested_quantity=quantity,
                        additional_notes=notes,
                        status=RequestStatus.PENDING.value,
                        requested_at=now,
                        updated_at=now,
                    )
                )
            except DuplicateKeyError:
                logger.info(
                    "Concurrent request for food %s by %s (attempt %d); merging",
                    food_id,
                    user_email,
                    attempt,
                )
                continue

            try:
                self.users.adjust_request_count(user_email, 1)
            except DependencyError:
                logger.warning("requestCount not incremented for %s", user_email)
            return SubmitOutcome(merged=False, request=inserted)

        raise DependencyError("Could not record the request; please retry")

    def cancel_request(
        self, request_id: str, requester_email: Optional[str] = None
    ) -> CancelOutcome:
        if not self.db.is_valid_id(request_id):
            raise ValidationError("Invalid request id")
        request = self.db.get_request(request_id)
        if not request:
            raise NotFoundError("Request not found")
        if requester_email is not None and request.user_email != requester_email:
            raise ForbiddenError("Only the requester can cancel this request")

        deleted = self.db.delete_request(request_id)
        if not deleted:
            # Someone else cancelled it between the read and the delete.
            raise NotFoundError("Request not found")

        failed: list[str] = []
        restocked = False
        try:
            restocked = self.db.adjust_food_quantity(deleted.food_id, 1)
            if not restocked:
                logger.info("Food %s no longer exists; nothing to restock", deleted.food_id)
        except DependencyError as exc:
            logger.error("Restocking food %s failed: %s", deleted.food_id, exc)
            failed.append(STEP_RESTOCK_FOOD)

        counted = False
        try:
            counted = self.users.adjust_request_count(deleted.user_email, -1)
        except DependencyError as exc:
            logger.error(
                "Decrementing requestCount for %s failed: %s", deleted.user_email, exc
            )
            failed.append(STEP_DECREMENT_REQUEST_COUNT)

        if failed:
            logger.error(
                "Cancellation of request %s partially applied; failed steps: %s",
                request_id,
                ", ".join(failed),
            )
        return CancelOutcome(
            request=deleted,
            food_restocked=restocked,
            request_count_adjusted=counted,
            failed_steps=tuple(failed),
        )

    def list_requests_for_user(self, email: str) -> Iterator[FoodRequestRecord]:
        """Requests made by ``email``, most recent first."""
        return self.db.list_requests(email)
