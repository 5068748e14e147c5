import unittest
from datetime import datetime, timedelta, timezone

from foodshare.db import FoodRecord, FoodRequestRecord, InMemoryDbClient
from foodshare.errors import DependencyError, ForbiddenError, NotFoundError, ValidationError
from foodshare.listings import ListingManager, split_fields
from foodshare.users import UserManager

DONOR = "donor@example.com"


def _hours(n: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=n)


class CounterOfflineDbClient(InMemoryDbClient):
    def adjust_user_counter(self, email, counter, delta, *, floor=None):
        raise DependencyError("store offline")


class ListingManagerTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.users = UserManager(self.db)
        self.listings = ListingManager(self.db, self.users)
        self.users.upsert_profile(DONOR, name="Donor")

    def _create(self, name="Apples", expires=2.0, **fields):
        return self.listings.create_listing(
            DONOR, {"foodName": name, "quantity": 5, "expiredDateTime": _hours(expires), **fields}
        )

    def test_create_increments_post_count_once(self):
        before = self.users.get_profile(DONOR).post_count
        food = self._create(foodImage="apples.png", foodStatus="completed")
        after = self.users.get_profile(DONOR).post_count

        self.assertEqual(after - before, 1)
        self.assertEqual(food.status, "available")
        self.assertEqual(food.details, {"foodImage": "apples.png"})

    def test_create_without_account_still_creates(self):
        food = self.listings.create_listing("new@example.com", {"foodName": "Pears"})
        self.assertIsNotNone(self.db.get_food(food.id))
        self.assertIsNone(self.db.get_user("new@example.com"))

    def test_create_survives_post_count_failure(self):
        db = CounterOfflineDbClient()
        listings = ListingManager(db, UserManager(db))
        food = listings.create_listing(DONOR, {"foodName": "Soup"})

        self.assertEqual([f.id for f in db.food.values()], [food.id])
        self.assertEqual(food.status, "available")

    def test_create_validation(self):
        with self.assertRaises(ValidationError):
            self.listings.create_listing("", {"foodName": "Pears"})
        with self.assertRaises(ValidationError):
            self.listings.create_listing(DONOR, {"quantity": 1})
        with self.assertRaises(ValidationError):
            self.listings.create_listing(DONOR, {"foodName": "Pears", "quantity": -2})
        with self.assertRaises(ValidationError):
            self.listings.create_listing(
                DONOR, {"foodName": "Pears", "expiredDateTime": "next tuesday"}
            )

    def test_split_fields_ignores_protected_keys(self):
        changes, details = split_fields(
            {
                "_id": "x",
                "donorEmail": "evil@example.com",
                "foodName": "Kale",
                "expiredDateTime": "2030-01-01T00:00:00Z",
                "pickupLocation": "Park",
            }
        )
        self.assertEqual(
            changes,
            {
                "food_name": "Kale",
                "expired_at": datetime(2030, 1, 1, tzinfo=timezone.utc),
            },
        )
        self.assertEqual(details, {"pickupLocation": "Park"})

    def test_update_merges_patch(self):
        food = self._create()
        updated = self.listings.update_listing(
            food.id, {"foodName": "Green apples", "donorEmail": "other@example.com"}
        )
        self.assertEqual(updated.food_name, "Green apples")
        self.assertEqual(updated.donor_email, DONOR)
        self.assertGreaterEqual(updated.updated_at, food.updated_at)

        with self.assertRaises(NotFoundError):
            self.listings.update_listing("c" * 32, {"foodName": "x"})

    def test_update_quantity_blocked_by_active_request(self):
        food = self._create()
        self.assertEqual(self.listings.update_listing(food.id, {"quantity": 7}).quantity, 7)

        self.db.insert_request(
            FoodRequestRecord(
                id="", food_id=food.id, user_email="u@example.com", requested_quantity=1
            )
        )
        with self.assertRaises(ValidationError):
            self.listings.update_listing(food.id, {"quantity": 9})
        self.assertEqual(self.db.get_food(food.id).quantity, 7)

    def test_delete_not_owned_is_forbidden(self):
        food = self._create()
        with self.assertRaises(ForbiddenError):
            self.listings.delete_listing(food.id, "someone@example.com")
        self.assertEqual(self.db.get_food(food.id), food)

        self.listings.delete_listing(food.id, DONOR)
        with self.assertRaises(NotFoundError):
            self.listings.get_listing(food.id)
        with self.assertRaises(NotFoundError):
            self.listings.delete_listing(food.id, DONOR)

    def test_delete_leaves_requests_in_place(self):
        food = self._create()
        request = self.db.insert_request(
            FoodRequestRecord(
                id="", food_id=food.id, user_email="u@example.com", requested_quantity=1
            )
        )
        self.listings.delete_listing(food.id, DONOR)
        self.assertIsNotNone(self.db.get_request(request.id))

    def test_search_never_returns_expired(self):
        self._create("Fresh milk", expires=5)
        self._create("Sour milk", expires=-5)
        self.db.insert_food(
            FoodRecord(id="", donor_email=DONOR, food_name="Undated milk")
        )

        found = [f.food_name for f in self.listings.search(name_pattern="milk")]
        self.assertEqual(found, ["Fresh milk"])

    def test_search_status_pattern_and_sort(self):
        soon = self._create("Bagels", expires=1)
        later = self._create("bagel chips", expires=10)
        taken = self._create("Bagel bites", expires=3)
        self.listings.set_status(taken.id, "requested")

        asc = [f.id for f in self.listings.search(name_pattern="BAGEL", sort="asc")]
        self.assertEqual(asc, [soon.id, later.id])
        desc = [f.id for f in self.listings.search(name_pattern="bagel", sort="desc")]
        self.assertEqual(desc, [later.id, soon.id])

        requested = list(self.listings.search(status="requested"))
        self.assertEqual([f.id for f in requested], [taken.id])

        with self.assertRaises(ValidationError):
            list(self.listings.search(status="eaten"))

    def test_search_pattern_is_literal(self):
        self._create("Rice (brown)")
        self._create("Rice brown")
        found = [f.food_name for f in self.listings.search(name_pattern="(brown)")]
        self.assertEqual(found, ["Rice (brown)"])

    def test_listings_for_donor_include_expired(self):
        self._create("Old bread", expires=-1)
        self.listings.create_listing("other@example.com", {"foodName": "Jam"})
        names = [f.food_name for f in self.listings.listings_for_donor(DONOR)]
        self.assertEqual(names, ["Old bread"])


if __name__ == "__main__":
    unittest.main()
