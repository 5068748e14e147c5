import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import exc as sa_exc

from foodshare.db import (
    POST_COUNT,
    REQUEST_COUNT,
    FoodQuery,
    FoodRecord,
    FoodRequestRecord,
    PaymentRecord,
    PostgresDbClient,
    RequestStatus,
)
from foodshare.errors import DependencyError, DependencyTimeout, DuplicateKeyError
from foodshare.food_requests import STEP_RESTOCK_FOOD, RequestManager
from foodshare.users import UserManager

DONOR = "donor@example.com"
USER = "user@example.com"


def _hours(n: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=n)


class PostgresDbClientTests(unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the Postgres client logic.
    """

    def setUp(self):
        self.db = PostgresDbClient("sqlite+pysqlite:///:memory:")

    def tearDown(self):
        self.db.close()

    def _food(self, name="Soup", expires=2.0, **kwargs) -> FoodRecord:
        return self.db.insert_food(
            FoodRecord(
                id="",
                donor_email=kwargs.pop("donor_email", DONOR),
                food_name=name,
                quantity=kwargs.pop("quantity", 3),
                expired_at=_hours(expires) if expires is not None else None,
                **kwargs,
            )
        )

    def _request(self, food_id, email=USER, quantity=1, **kwargs) -> FoodRequestRecord:
        return self.db.insert_request(
            FoodRequestRecord(
                id="",
                food_id=food_id,
                user_email=email,
                requested_quantity=quantity,
                **kwargs,
            )
        )

    def test_upsert_user(self):
        user, created = self.db.upsert_user(DONOR, name="Dee", membership="yes")
        self.assertTrue(created)
        self.assertEqual(user.membership, "yes")

        user, created = self.db.upsert_user(DONOR, photourl="d.png", membership="no")
        self.assertFalse(created)
        self.assertEqual(user.name, "Dee")
        self.assertEqual(user.photourl, "d.png")
        self.assertEqual(user.membership, "yes")
        self.assertEqual([u.email for u in self.db.list_users()], [DONOR])

    def test_membership_and_counters(self):
        self.db.upsert_user(USER)
        self.assertTrue(self.db.set_membership(USER, "yes"))
        self.assertFalse(self.db.set_membership("ghost@example.com", "yes"))

        self.assertTrue(self.db.adjust_user_counter(USER, POST_COUNT, 2))
        self.assertTrue(self.db.adjust_user_counter(USER, REQUEST_COUNT, 1))
        self.assertTrue(self.db.adjust_user_counter(USER, REQUEST_COUNT, -1, floor=0))
        self.assertFalse(self.db.adjust_user_counter(USER, REQUEST_COUNT, -1, floor=0))

        user = self.db.get_user(USER)
        self.assertEqual(user.membership, "yes")
        self.assertEqual(user.post_count, 2)
        self.assertEqual(user.request_count, 0)

        with self.assertRaises(ValueError):
            self.db.adjust_user_counter(USER, "karma", 1)

    def test_food_roundtrip_and_update(self):
        food = self._food(details={"pickupLocation": "Gate 1"})
        self.assertTrue(self.db.is_valid_id(food.id))
        fetched = self.db.get_food(food.id)
        self.assertEqual(fetched.details, {"pickupLocation": "Gate 1"})
        self.assertAlmostEqual(
            fetched.expired_at.timestamp(), food.expired_at.timestamp(), places=3
        )

        updated = self.db.update_food(
            food.id, {"quantity": 9, "status": "requested"}, {"foodImage": "soup.png"}
        )
        self.assertEqual(updated.quantity, 9)
        self.assertEqual(updated.status, "requested")
        self.assertEqual(
            updated.details, {"pickupLocation": "Gate 1", "foodImage": "soup.png"}
        )
        self.assertIsNone(self.db.update_food("0" * 32, {"quantity": 1}))

        self.assertTrue(self.db.adjust_food_quantity(food.id, 1))
        self.assertEqual(self.db.get_food(food.id).quantity, 10)
        self.assertFalse(self.db.adjust_food_quantity("0" * 32, 1))

        self.assertTrue(self.db.delete_food(food.id))
        self.assertFalse(self.db.delete_food(food.id))
        self.assertIsNone(self.db.get_food(food.id))

    def test_find_food(self):
        soon = self._food("Lentil soup", expires=1)
        later = self._food("Tomato SOUP", expires=5)
        self._food("Old soup", expires=-1)
        self._food("Bread", expires=3)
        self._food("100% soup", expires=4, donor_email="other@example.com")

        query = FoodQuery(status="available", name_pattern="soup", expires_after=_hours(0))
        query.sort = "asc"
        found = [f.food_name for f in self.db.find_food(query)]
        self.assertEqual(found, ["Lentil soup", "100% soup", "Tomato SOUP"])

        query.sort = "desc"
        query.name_pattern = "0% s"
        self.assertEqual([f.food_name for f in self.db.find_food(query)], ["100% soup"])

        query = FoodQuery(name_pattern="%", expires_after=_hours(0))
        self.assertEqual([f.food_name for f in self.db.find_food(query)], ["100% soup"])

        mine = {f.id for f in self.db.find_food(FoodQuery(donor_email=DONOR))}
        self.assertIn(soon.id, mine)
        self.assertIn(later.id, mine)
        self.assertEqual(len(mine), 4)

    def test_one_active_request_per_pair(self):
        food = self._food()
        first = self._request(food.id, quantity=2)
        with self.assertRaises(DuplicateKeyError):
            self._request(food.id, quantity=1)

        # Cancelled history does not occupy the active slot.
        self._request(food.id, status=RequestStatus.CANCELLED.value)
        self._request(food.id, email="someone@example.com")

        merged = self.db.merge_active_request(food.id, USER, 3, "late pickup")
        self.assertEqual(merged.id, first.id)
        self.assertEqual(merged.requested_quantity, 5)
        self.assertEqual(merged.additional_notes, "late pickup")
        self.assertIsNone(self.db.merge_active_request("0" * 32, USER, 1, None))
        self.assertTrue(self.db.has_active_requests(food.id))

    def test_delete_request(self):
        food = self._food()
        request = self._request(food.id)
        deleted = self.db.delete_request(request.id)
        self.assertEqual(deleted.id, request.id)
        self.assertIsNone(self.db.delete_request(request.id))
        self.assertIsNone(self.db.get_request(request.id))
        self.assertFalse(self.db.has_active_requests(food.id))

    def test_list_requests_newest_first(self):
        old = self._request("a" * 32, requested_at=_hours(-2))
        new = self._request("b" * 32, requested_at=_hours(-1))
        self.assertEqual([r.id for r in self.db.list_requests(USER)], [new.id, old.id])

    def test_payments_are_unique_per_transaction(self):
        record = PaymentRecord(
            id="", email=USER, amount=5.0, transaction_id="pi_1", status="succeeded"
        )
        stored = self.db.insert_payment(record)
        self.assertTrue(stored.id)
        with self.assertRaises(DuplicateKeyError):
            self.db.insert_payment(record)
        self.assertEqual([p.transaction_id for p in self.db.list_payments(USER)], ["pi_1"])

    def test_request_lifecycle_on_sql_store(self):
        users = UserManager(self.db)
        manager = RequestManager(self.db, users)
        users.upsert_profile(USER)
        food = self._food(quantity=3)

        first = manager.submit_request(food.id, USER, 3)
        second = manager.submit_request(food.id, USER, 2)
        self.assertFalse(first.merged)
        self.assertTrue(second.merged)
        self.assertEqual(second.request.requested_quantity, 5)

        outcome = manager.cancel_request(first.request.id, requester_email=USER)
        self.assertFalse(outcome.partial)
        self.assertEqual(self.db.get_food(food.id).quantity, 4)
        self.assertEqual(self.db.get_user(USER).request_count, 0)

    def _fail_nth_session(self, n, error):
        real_session = self.db.Session
        calls = []

        def session_factory():
            calls.append(1)
            if len(calls) == n:
                raise error
            return real_session()

        return patch.object(self.db, "Session", side_effect=session_factory)

    def test_driver_errors_become_dependency_errors(self):
        food = self._food()
        with self._fail_nth_session(1, sa_exc.TimeoutError("QueuePool limit reached")):
            with self.assertRaises(DependencyTimeout):
                self.db.get_food(food.id)
        with self._fail_nth_session(1, sa_exc.InterfaceError("SELECT 1", {}, Exception("gone"))):
            with self.assertRaises(DependencyError) as ctx:
                self.db.get_food(food.id)
        self.assertNotIsInstance(ctx.exception, DependencyTimeout)

    def test_cancel_reports_failed_restock(self):
        users = UserManager(self.db)
        manager = RequestManager(self.db, users)
        users.upsert_profile(USER)
        food = self._food(quantity=3)
        request = manager.submit_request(food.id, USER, 1).request

        # get_request, delete_request, then the restock session.
        with self._fail_nth_session(3, sa_exc.TimeoutError("QueuePool limit reached")):
            outcome = manager.cancel_request(request.id, requester_email=USER)

        self.assertEqual(outcome.failed_steps, (STEP_RESTOCK_FOOD,))
        self.assertTrue(outcome.partial)
        self.assertIsNone(self.db.get_request(request.id))
        self.assertEqual(self.db.get_food(food.id).quantity, 3)
        self.assertEqual(self.db.get_user(USER).request_count, 0)


if __name__ == "__main__":
    unittest.main()
