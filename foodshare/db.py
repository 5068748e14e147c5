"""
Document store abstraction for MongoDB, SQLAlchemy (Postgres/SQLite) and an
in-memory test implementation.

All counter mutations are expressed as store-level increments so concurrent
callers never lose updates, and the one-active-request-per-(food, user) rule
is enforced by a unique partial index rather than by the caller.
"""

from __future__ import annotations

import logging
import re
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, Optional, Protocol

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo import errors as mongo_errors
from sqlalchemy import (
    JSON,
    Column,
    Float,
    Index,
    Integer,
    String,
    create_engine,
    delete,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from foodshare.errors import DependencyError, DependencyTimeout, DuplicateKeyError

logger = logging.getLogger(__name__)


class FoodStatus(str, Enum):
    AVAILABLE = "available"
    REQUESTED = "requested"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RequestStatus(str, Enum):
    PENDING = "pending"
    # Never entered today; kept so the active-request index already covers it.
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"


ACTIVE_REQUEST_STATUSES = (RequestStatus.PENDING.value, RequestStatus.ACCEPTED.value)

# Counter names accepted by DbClient.adjust_user_counter.
POST_COUNT = "post_count"
REQUEST_COUNT = "request_count"
USER_COUNTERS = (POST_COUNT, REQUEST_COUNT)

_HEX_ID = re.compile(r"^[0-9a-f]{32}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class UserRecord:
    id: str
    email: str
    name: Optional[str] = None
    photourl: Optional[str] = None
    membership: str = "no"
    post_count: int = 0
    request_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        return {
            "_id": self.id,
            "email": self.email,
            "name": self.name,
            "photourl": self.photourl,
            "membership": self.membership,
            "postCount": self.post_count,
            "requestCount": self.request_count,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class FoodRecord:
    id: str
    donor_email: str
    food_name: str
    quantity: int = 0
    expired_at: Optional[datetime] = None
    status: str = FoodStatus.AVAILABLE.value
    details: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        data = dict(self.details)
        data.update(
            {
                "_id": self.id,
                "donorEmail": self.donor_email,
                "foodName": self.food_name,
                "quantity": self.quantity,
                "expiredDateTime": self.expired_at,
                "foodStatus": self.status,
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
            }
        )
        return data


@dataclass
class FoodRequestRecord:
    id: str
    food_id: str
    user_email: str
    requested_quantity: int
    additional_notes: Optional[str] = None
    status: str = RequestStatus.PENDING.value
    requested_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_REQUEST_STATUSES

    def as_dict(self) -> dict:
        return {
            "_id": self.id,
            "foodId": self.food_id,
            "userEmail": self.user_email,
            "requestedQuantity": self.requested_quantity,
            "additionalNotes": self.additional_notes,
            "status": self.status,
            "requestedAt": self.requested_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class PaymentRecord:
    id: str
    email: str
    amount: float
    transaction_id: str
    status: str
    date: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        return {
            "_id": self.id,
            "email": self.email,
            "amount": self.amount,
            "transactionId": self.transaction_id,
            "status": self.status,
            "date": self.date,
        }


@dataclass
class FoodQuery:
    """Filter for DbClient.find_food. ``None`` fields are not filtered on."""

    status: Optional[str] = None
    name_pattern: str = ""
    expires_after: Optional[datetime] = None
    donor_email: Optional[str] = None
    # "asc" / "desc" sort on expiry; anything else sorts newest first.
    sort: Optional[str] = None


class DbClient(Protocol):
    """Interface for document store access."""

    def is_valid_id(self, value: str) -> bool:
        ...

    def close(self) -> None:
        ...

    # Users

    def upsert_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        photourl: Optional[str] = None,
        membership: str = "no",
    ) -> tuple[UserRecord, bool]:
        ...

    def get_user(self, email: str) -> Optional[UserRecord]:
        ...

    def list_users(self) -> Iterator[UserRecord]:
        ...

    def set_membership(self, email: str, membership: str) -> bool:
        ...

    def adjust_user_counter(
        self, email: str, counter: str, delta: int, *, floor: Optional[int] = None
    ) -> bool:
        ...

    # Food

    def insert_food(self, record: FoodRecord) -> FoodRecord:
        ...

    def get_food(self, food_id: str) -> Optional[FoodRecord]:
        ...

    def update_food(
        self, food_id: str, changes: dict, details: Optional[dict] = None
    ) -> Optional[FoodRecord]:
        ...

    def delete_food(self, food_id: str) -> bool:
        ...

    def find_food(self, query: FoodQuery) -> Iterator[FoodRecord]:
        ...

    def adjust_food_quantity(self, food_id: str, delta: int) -> bool:
        ...

    # Food requests

    def merge_active_request(
        self, food_id: str, user_email: str, quantity: int, notes: Optional[str]
    ) -> Optional[FoodRequestRecord]:
        ...

    def insert_request(self, record: FoodRequestRecord) -> FoodRequestRecord:
        ...

    def get_request(self, request_id: str) -> Optional[FoodRequestRecord]:
        ...

    def delete_request(self, request_id: str) -> Optional[FoodRequestRecord]:
        ...

    def has_active_requests(self, food_id: str) -> bool:
        ...

    def list_requests(self, user_email: str) -> Iterator[FoodRequestRecord]:
        ...

    # Payments

    def insert_payment(self, record: PaymentRecord) -> PaymentRecord:
        ...

    def list_payments(self, email: str) -> Iterator[PaymentRecord]:
        ...


def _check_counter(counter: str) -> None:
    if counter not in USER_COUNTERS:
        raise ValueError(f"Unknown user counter: {counter}")


def _sort_key_expiry(record: FoodRecord) -> datetime:
    return record.expired_at or datetime.max.replace(tzinfo=timezone.utc)


class InMemoryDbClient:
    """Simple in-memory database for development and tests.

    A single lock makes each primitive atomic, the way a real store makes each
    single-document operation atomic. It is never held across calls.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.users: Dict[str, UserRecord] = {}
        self.food: Dict[str, FoodRecord] = {}
        self.requests: Dict[str, FoodRequestRecord] = {}
        self.payments: Dict[str, PaymentRecord] = {}

    def is_valid_id(self, value: str) -> bool:
        return bool(_HEX_ID.match(value or ""))

    def close(self) -> None:
        pass

    def upsert_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        photourl: Optional[str] = None,
        membership: str = "no",
    ) -> tuple[UserRecord, bool]:
        with self._lock:
            user = self.users.get(email)
            if user is None:
                user = UserRecord(
                    id=_new_id(),
                    email=email,
                    name=name,
                    photourl=photourl,
                    membership=membership,
                )
                self.users[email] = user
                return replace(user), True
            if name is not None:
                user.name = name
            if photourl is not None:
                user.photourl = photourl
            user.updated_at = utcnow()
            return replace(user), False

    def get_user(self, email: str) -> Optional[UserRecord]:
        with self._lock:
            user = self.users.get(email)
            return replace(user) if user else None

    def list_users(self) -> Iterator[UserRecord]:
        with self._lock:
            snapshot = [replace(u) for u in self.users.values()]
        return iter(snapshot)

    def set_membership(self, email: str, membership: str) -> bool:
        with self._lock:
            user = self.users.get(email)
            if not user:
                return False
            user.membership = membership
            user.updated_at = utcnow()
            return True

    def adjust_user_counter(
        self, email: str, counter: str, delta: int, *, floor: Optional[int] = None
    ) -> bool:
        _check_counter(counter)
        with self._lock:
            user = self.users.get(email)
            if not user:
                return False
            value = getattr(user, counter) + delta
            if floor is not None and value < floor:
                return False
            setattr(user, counter, value)
            user.updated_at = utcnow()
            return True

    def insert_food(self, record: FoodRecord) -> FoodRecord:
        with self._lock:
            stored = replace(record, id=_new_id(), details=dict(record.details))
            self.food[stored.id] = stored
            return replace(stored)

    def get_food(self, food_id: str) -> Optional[FoodRecord]:
        with self._lock:
            food = self.food.get(food_id)
            return replace(food, details=dict(food.details)) if food else None

    def update_food(
        self, food_id: str, changes: dict, details: Optional[dict] = None
    ) -> Optional[FoodRecord]:
        with self._lock:
            food = self.food.get(food_id)
            if not food:
                return None
            for key, value in changes.items():
                setattr(food, key, value)
            if details:
                food.details.update(details)
            food.updated_at = utcnow()
            return replace(food, details=dict(food.details))

    def delete_food(self, food_id: str) -> bool:
        with self._lock:
            return self.food.pop(food_id, None) is not None

    def find_food(self, query: FoodQuery) -> Iterator[FoodRecord]:
        pattern = query.name_pattern.lower()
        with self._lock:
            matches = [
                replace(f, details=dict(f.details))
                for f in self.food.values()
                if (query.status is None or f.status == query.status)
                and (query.donor_email is None or f.donor_email == query.donor_email)
                and pattern in f.food_name.lower()
                and (
                    query.expires_after is None
                    or (f.expired_at is not None and f.expired_at > query.expires_after)
                )
            ]
        if query.sort in ("asc", "desc"):
            matches.sort(key=_sort_key_expiry, reverse=query.sort == "desc")
        else:
            matches.sort(key=lambda f: f.created_at, reverse=True)
        return iter(matches)

    def adjust_food_quantity(self, food_id: str, delta: int) -> bool:
        with self._lock:
            food = self.food.get(food_id)
            if not food:
                return False
            food.quantity += delta
            food.updated_at = utcnow()
            return True

    def _find_active(self, food_id: str, user_email: str) -> Optional[FoodRequestRecord]:
        for request in self.requests.values():
            if (
                request.food_id == food_id
                and request.user_email == user_email
                and request.is_active
            ):
                return request
        return None

    def merge_active_request(
        self, food_id: str, user_email: str, quantity: int, notes: Optional[str]
    ) -> Optional[FoodRequestRecord]:
        with self._lock:
            request = self._find_active(food_id, user_email)
            if not request:
                return None
            request.requested_quantity += quantity
            if notes is not None:
                request.additional_notes = notes
            request.updated_at = utcnow()
            return replace(request)

    def insert_request(self, record: FoodRequestRecord) -> FoodRequestRecord:
        with self._lock:
            if record.is_active and self._find_active(record.food_id, record.user_email):
                raise DuplicateKeyError("Active request already exists")
            stored = replace(record, id=_new_id())
            self.requests[stored.id] = stored
            return replace(stored)

    def get_request(self, request_id: str) -> Optional[FoodRequestRecord]:
        with self._lock:
            request = self.requests.get(request_id)
            return replace(request) if request else None

    def delete_request(self, request_id: str) -> Optional[FoodRequestRecord]:
        with self._lock:
            return self.requests.pop(request_id, None)

    def has_active_requests(self, food_id: str) -> bool:
        with self._lock:
            return any(
                r.food_id == food_id and r.is_active for r in self.requests.values()
            )

    def list_requests(self, user_email: str) -> Iterator[FoodRequestRecord]:
        with self._lock:
            matches = [
                replace(r) for r in self.requests.values() if r.user_email == user_email
            ]
        matches.sort(key=lambda r: r.requested_at, reverse=True)
        return iter(matches)

    def insert_payment(self, record: PaymentRecord) -> PaymentRecord:
        with self._lock:
            if any(
                p.transaction_id == record.transaction_id
                for p in self.payments.values()
            ):
                raise DuplicateKeyError("Payment already recorded")
            stored = replace(record, id=_new_id())
            self.payments[stored.id] = stored
            return replace(stored)

    def list_payments(self, email: str) -> Iterator[PaymentRecord]:
        with self._lock:
            matches = [replace(p) for p in self.payments.values() if p.email == email]
        matches.sort(key=lambda p: p.date, reverse=True)
        return iter(matches)


def _ts(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _dt(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


_FOOD_COLUMNS = {
    "food_name": "food_name",
    "quantity": "quantity",
    "expired_at": "expired_at",
    "status": "status",
}


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
            connect_args=connect_args,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def is_valid_id(self, value: str) -> bool:
        return bool(_HEX_ID.match(value or ""))

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.Session() as session:
                yield session
        except PoolTimeoutError as exc:
            logger.error("Database connection pool exhausted: %s", exc)
            raise DependencyTimeout("Database timed out") from exc
        except SQLAlchemyError as exc:
            logger.error("Database operation failed: %s", exc)
            raise DependencyError("Database unavailable") from exc

    def _to_user(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            id=row.id,
            email=row.email,
            name=row.name,
            photourl=row.photourl,
            membership=row.membership,
            post_count=row.post_count,
            request_count=row.request_count,
            created_at=_dt(row.created_at),
            updated_at=_dt(row.updated_at),
        )

    def _to_food(self, row: "FoodRow") -> FoodRecord:
        return FoodRecord(
            id=row.id,
            donor_email=row.donor_email,
            food_name=row.food_name,
            quantity=row.quantity,
            expired_at=_dt(row.expired_at),
            status=row.status,
            details=dict(row.details or {}),
            created_at=_dt(row.created_at),
            updated_at=_dt(row.updated_at),
        )

    def _to_request(self, row: "FoodRequestRow") -> FoodRequestRecord:
        return FoodRequestRecord(
            id=row.id,
            food_id=row.food_id,
            user_email=row.user_email,
            requested_quantity=row.requested_quantity,
            additional_notes=row.additional_notes,
            status=row.status,
            requested_at=_dt(row.requested_at),
            updated_at=_dt(row.updated_at),
        )

    def _to_payment(self, row: "PaymentRow") -> PaymentRecord:
        return PaymentRecord(
            id=row.id,
            email=row.email,
            amount=row.amount,
            transaction_id=row.transaction_id,
            status=row.status,
            date=_dt(row.date),
        )

    def upsert_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        photourl: Optional[str] = None,
        membership: str = "no",
    ) -> tuple[UserRecord, bool]:
        now = utcnow().timestamp()
        with self._session() as session:
            existing = session.execute(
                select(UserRow).where(UserRow.email == email)
            ).scalar_one_or_none()
            if existing is None:
                row = UserRow(
                    id=_new_id(),
                    email=email,
                    name=name,
                    photourl=photourl,
                    membership=membership,
                    post_count=0,
                    request_count=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                try:
                    session.commit()
                    return self._to_user(row), True
                except IntegrityError:
                    # Lost the race to a concurrent insert; fall through to update.
                    session.rollback()

            values = {UserRow.updated_at: now}
            if name is not None:
                values[UserRow.name] = name
            if photourl is not None:
                values[UserRow.photourl] = photourl
            session.execute(
                update(UserRow)
                .where(UserRow.email == email)
                .values(values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            row = session.execute(
                select(UserRow).where(UserRow.email == email)
            ).scalar_one()
            session.refresh(row)
            return self._to_user(row), False

    def get_user(self, email: str) -> Optional[UserRecord]:
        with self._session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.email == email)
            ).scalar_one_or_none()
            return self._to_user(row) if row else None

    def list_users(self) -> Iterator[UserRecord]:
        with self._session() as session:
            stmt = select(UserRow).order_by(UserRow.created_at.asc())
            for row in session.execute(stmt.execution_options(yield_per=100)).scalars():
                yield self._to_user(row)

    def set_membership(self, email: str, membership: str) -> bool:
        with self._session() as session:
            result = session.execute(
                update(UserRow)
                .where(UserRow.email == email)
                .values(membership=membership, updated_at=utcnow().timestamp())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount > 0

    def adjust_user_counter(
        self, email: str, counter: str, delta: int, *, floor: Optional[int] = None
    ) -> bool:
        _check_counter(counter)
        column = getattr(UserRow, counter)
        stmt = update(UserRow).where(UserRow.email == email)
        if floor is not None:
            stmt = stmt.where(column + delta >= floor)
        with self._session() as session:
            result = session.execute(
                stmt.values({column: column + delta, UserRow.updated_at: utcnow().timestamp()})
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount > 0

    def insert_food(self, record: FoodRecord) -> FoodRecord:
        with self._session() as session:
            row = FoodRow(
                id=_new_id(),
                donor_email=record.donor_email,
                food_name=record.food_name,
                quantity=record.quantity,
                expired_at=_ts(record.expired_at),
                status=record.status,
                details=dict(record.details),
                created_at=_ts(record.created_at),
                updated_at=_ts(record.updated_at),
            )
            session.add(row)
            session.commit()
            return self._to_food(row)

    def get_food(self, food_id: str) -> Optional[FoodRecord]:
        with self._session() as session:
            row = session.get(FoodRow, food_id)
            return self._to_food(row) if row else None

    def update_food(
        self, food_id: str, changes: dict, details: Optional[dict] = None
    ) -> Optional[FoodRecord]:
        with self._session() as session:
            row = session.get(FoodRow, food_id)
            if not row:
                return None
            for key, value in changes.items():
                if key == "expired_at":
                    value = _ts(value)
                setattr(row, _FOOD_COLUMNS[key], value)
            if details:
                # Reassign so the JSON column is flagged dirty.
                row.details = {**(row.details or {}), **details}
            row.updated_at = utcnow().timestamp()
            session.commit()
            return self._to_food(row)

    def delete_food(self, food_id: str) -> bool:
        with self._session() as session:
            result = session.execute(delete(FoodRow).where(FoodRow.id == food_id))
            session.commit()
            return result.rowcount > 0

    def find_food(self, query: FoodQuery) -> Iterator[FoodRecord]:
        stmt = select(FoodRow)
        if query.status is not None:
            stmt = stmt.where(FoodRow.status == query.status)
        if query.donor_email is not None:
            stmt = stmt.where(FoodRow.donor_email == query.donor_email)
        if query.name_pattern:
            stmt = stmt.where(FoodRow.food_name.icontains(query.name_pattern, autoescape=True))
        if query.expires_after is not None:
            stmt = stmt.where(FoodRow.expired_at > _ts(query.expires_after))
        if query.sort == "asc":
            stmt = stmt.order_by(FoodRow.expired_at.asc())
        elif query.sort == "desc":
            stmt = stmt.order_by(FoodRow.expired_at.desc())
        else:
            stmt = stmt.order_by(FoodRow.created_at.desc())
        with self._session() as session:
            for row in session.execute(stmt.execution_options(yield_per=100)).scalars():
                yield self._to_food(row)

    def adjust_food_quantity(self, food_id: str, delta: int) -> bool:
        with self._session() as session:
            result = session.execute(
                update(FoodRow)
                .where(FoodRow.id == food_id)
                .values(
                    quantity=FoodRow.quantity + delta,
                    updated_at=utcnow().timestamp(),
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount > 0

    def _active_clause(self, food_id: str, user_email: str):
        return (
            FoodRequestRow.food_id == food_id,
            FoodRequestRow.user_email == user_email,
            FoodRequestRow.status.in_(ACTIVE_REQUEST_STATUSES),
        )

    def merge_active_request(
        self, food_id: str, user_email: str, quantity: int, notes: Optional[str]
    ) -> Optional[FoodRequestRecord]:
        values = {
            FoodRequestRow.requested_quantity: FoodRequestRow.requested_quantity + quantity,
            FoodRequestRow.updated_at: utcnow().timestamp(),
        }
        if notes is not None:
            values[FoodRequestRow.additional_notes] = notes
        clause = self._active_clause(food_id, user_email)
        with self._session() as session:
            result = session.execute(
                update(FoodRequestRow)
                .where(*clause)
                .values(values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                return None
            row = session.execute(select(FoodRequestRow).where(*clause)).scalar_one()
            session.commit()
            return self._to_request(row)

    def insert_request(self, record: FoodRequestRecord) -> FoodRequestRecord:
        with self._session() as session:
            row = FoodRequestRow(
                id=_new_id(),
                food_id=record.food_id,
                user_email=record.user_email,
                requested_quantity=record.requested_quantity,
                additional_notes=record.additional_notes,
                status=record.status,
                requested_at=_ts(record.requested_at),
                updated_at=_ts(record.updated_at),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateKeyError("Active request already exists") from exc
            return self._to_request(row)

    def get_request(self, request_id: str) -> Optional[FoodRequestRecord]:
        with self._session() as session:
            row = session.get(FoodRequestRow, request_id)
            return self._to_request(row) if row else None

    def delete_request(self, request_id: str) -> Optional[FoodRequestRecord]:
        with self._session() as session:
            row = session.get(FoodRequestRow, request_id)
            if not row:
                return None
            record = self._to_request(row)
            result = session.execute(
                delete(FoodRequestRow).where(FoodRequestRow.id == request_id)
            )
            session.commit()
            # A concurrent delete may have won between the read and the delete.
            return record if result.rowcount > 0 else None

    def has_active_requests(self, food_id: str) -> bool:
        with self._session() as session:
            row = session.execute(
                select(FoodRequestRow.id)
                .where(
                    FoodRequestRow.food_id == food_id,
                    FoodRequestRow.status.in_(ACTIVE_REQUEST_STATUSES),
                )
                .limit(1)
            ).first()
            return row is not None

    def list_requests(self, user_email: str) -> Iterator[FoodRequestRecord]:
        stmt = (
            select(FoodRequestRow)
            .where(FoodRequestRow.user_email == user_email)
            .order_by(FoodRequestRow.requested_at.desc())
        )
        with self._session() as session:
            for row in session.execute(stmt.execution_options(yield_per=100)).scalars():
                yield self._to_request(row)

    def insert_payment(self, record: PaymentRecord) -> PaymentRecord:
        with self._session() as session:
            row = PaymentRow(
                id=_new_id(),
                email=record.email,
                amount=record.amount,
                transaction_id=record.transaction_id,
                status=record.status,
                date=_ts(record.date),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateKeyError("Payment already recorded") from exc
            return self._to_payment(row)

    def list_payments(self, email: str) -> Iterator[PaymentRecord]:
        stmt = select(PaymentRow).where(PaymentRow.email == email).order_by(PaymentRow.date.desc())
        with self._session() as session:
            for row in session.execute(stmt).scalars():
                yield self._to_payment(row)


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    photourl = Column(String, nullable=True)
    membership = Column(String, nullable=False, default="no")
    post_count = Column(Integer, nullable=False, default=0)
    request_count = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class FoodRow(Base):
    __tablename__ = "food"

    id = Column(String, primary_key=True)
    donor_email = Column(String, nullable=False, index=True)
    food_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    expired_at = Column(Float, nullable=True, index=True)
    status = Column(String, nullable=False, index=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class FoodRequestRow(Base):
    __tablename__ = "requested_foods"
    __table_args__ = (
        Index(
            "uq_requested_foods_active",
            "food_id",
            "user_email",
            unique=True,
            sqlite_where=text("status IN ('pending', 'accepted')"),
            postgresql_where=text("status IN ('pending', 'accepted')"),
        ),
    )

    id = Column(String, primary_key=True)
    food_id = Column(String, nullable=False, index=True)
    user_email = Column(String, nullable=False, index=True)
    requested_quantity = Column(Integer, nullable=False)
    additional_notes = Column(String, nullable=True)
    status = Column(String, nullable=False)
    requested_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class PaymentRow(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    transaction_id = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False)
    date = Column(Float, nullable=False)


# MongoDB field names, shared with the existing web clients.
_MONGO_COUNTERS = {POST_COUNT: "postCount", REQUEST_COUNT: "requestCount"}
_MONGO_FOOD_FIELDS = {
    "food_name": "foodName",
    "quantity": "quantity",
    "expired_at": "expiredDateTime",
    "status": "foodStatus",
}
_MONGO_FOOD_CORE = {
    "_id",
    "donorEmail",
    "foodName",
    "quantity",
    "expiredDateTime",
    "foodStatus",
    "createdAt",
    "updatedAt",
}


class MongoDbClient:
    """
    pymongo-backed implementation over the ``users``, ``food``,
    ``requestedfoods`` and ``payments`` collections.

    Display fields of a food document live at the top level of the document,
    as the web clients write them; everything outside the core fields is
    surfaced as ``FoodRecord.details``.
    """

    def __init__(self, uri: str, database: str = "foodshare", timeout_ms: int = 5000):
        if not uri:
            raise ValueError("MONGODB_URI is required for MongoDbClient")
        self.client = MongoClient(
            uri,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )
        db = self.client[database]
        self.users = db["users"]
        self.food = db["food"]
        self.requests = db["requestedfoods"]
        self.payments = db["payments"]
        with self._guard():
            self.users.create_index("email", unique=True, name="uq_users_email")
            self.requests.create_index(
                [("foodId", ASCENDING), ("userEmail", ASCENDING)],
                unique=True,
                partialFilterExpression={"active": True},
                name="uq_requestedfoods_active",
            )
            self.requests.create_index([("userEmail", ASCENDING), ("requestedAt", DESCENDING)])
            self.payments.create_index(
                "transactionId", unique=True, name="uq_payments_transaction"
            )

    def is_valid_id(self, value: str) -> bool:
        return ObjectId.is_valid(value)

    def close(self) -> None:
        self.client.close()

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except mongo_errors.DuplicateKeyError as exc:
            raise DuplicateKeyError(str(exc.details or exc)) from exc
        except (
            mongo_errors.ServerSelectionTimeoutError,
            mongo_errors.NetworkTimeout,
            mongo_errors.ExecutionTimeout,
        ) as exc:
            logger.error("MongoDB timed out: %s", exc)
            raise DependencyTimeout("Database timed out") from exc
        except mongo_errors.PyMongoError as exc:
            logger.error("MongoDB operation failed: %s", exc)
            raise DependencyError("Database unavailable") from exc

    def _oid(self, value: str) -> Optional[ObjectId]:
        return ObjectId(value) if ObjectId.is_valid(value) else None

    def _to_user(self, doc: dict) -> UserRecord:
        return UserRecord(
            id=str(doc["_id"]),
            email=doc["email"],
            name=doc.get("name"),
            photourl=doc.get("photourl"),
            membership=doc.get("membership", "no"),
            post_count=doc.get("postCount", 0),
            request_count=doc.get("requestCount", 0),
            created_at=doc.get("createdAt") or utcnow(),
            updated_at=doc.get("updatedAt") or doc.get("createdAt") or utcnow(),
        )

    def _to_food(self, doc: dict) -> FoodRecord:
        return FoodRecord(
            id=str(doc["_id"]),
            donor_email=doc.get("donorEmail", ""),
            food_name=doc.get("foodName", ""),
            quantity=doc.get("quantity", 0),
            expired_at=doc.get("expiredDateTime"),
            status=doc.get("foodStatus", FoodStatus.AVAILABLE.value),
            details={k: v for k, v in doc.items() if k not in _MONGO_FOOD_CORE},
            created_at=doc.get("createdAt") or utcnow(),
            updated_at=doc.get("updatedAt") or doc.get("createdAt") or utcnow(),
        )

    def _to_request(self, doc: dict) -> FoodRequestRecord:
        return FoodRequestRecord(
            id=str(doc["_id"]),
            food_id=doc["foodId"],
            user_email=doc["userEmail"],
            requested_quantity=doc.get("requestedQuantity", 0),
            additional_notes=doc.get("additionalNotes"),
            status=doc.get("status", RequestStatus.PENDING.value),
            requested_at=doc.get("requestedAt") or utcnow(),
            updated_at=doc.get("updatedAt") or doc.get("requestedAt") or utcnow(),
        )

    def _to_payment(self, doc: dict) -> PaymentRecord:
        return PaymentRecord(
            id=str(doc["_id"]),
            email=doc["email"],
            amount=doc["amount"],
            transaction_id=doc["transactionId"],
            status=doc["status"],
            date=doc.get("date") or utcnow(),
        )

    def upsert_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        photourl: Optional[str] = None,
        membership: str = "no",
    ) -> tuple[UserRecord, bool]:
        now = utcnow()
        to_set = {"updatedAt": now}
        if name is not None:
            to_set["name"] = name
        if photourl is not None:
            to_set["photourl"] = photourl
        change = {
            "$setOnInsert": {
                "email": email,
                "membership": membership,
                "postCount": 0,
                "requestCount": 0,
                "createdAt": now,
            },
            "$set": to_set,
        }
        with self._guard():
            try:
                result = self.users.update_one({"email": email}, change, upsert=True)
            except mongo_errors.DuplicateKeyError:
                # Concurrent upsert inserted first; the retry takes the update path.
                result = self.users.update_one({"email": email}, change, upsert=True)
            doc = self.users.find_one({"email": email})
        return self._to_user(doc), result.upserted_id is not None

    def get_user(self, email: str) -> Optional[UserRecord]:
        with self._guard():
            doc = self.users.find_one({"email": email})
        return self._to_user(doc) if doc else None

    def list_users(self) -> Iterator[UserRecord]:
        with self._guard():
            for doc in self.users.find().sort("createdAt", ASCENDING):
                yield self._to_user(doc)

    def set_membership(self, email: str, membership: str) -> bool:
        with self._guard():
            result = self.users.update_one(
                {"email": email},
                {"$set": {"membership": membership, "updatedAt": utcnow()}},
            )
        return result.matched_count > 0

    def adjust_user_counter(
        self, email: str, counter: str, delta: int, *, floor: Optional[int] = None
    ) -> bool:
        _check_counter(counter)
        name = _MONGO_COUNTERS[counter]
        selector: dict = {"email": email}
        if floor is not None:
            selector[name] = {"$gte": floor - delta}
        with self._guard():
            result = self.users.update_one(
                selector, {"$inc": {name: delta}, "$set": {"updatedAt": utcnow()}}
            )
        return result.matched_count > 0

    def insert_food(self, record: FoodRecord) -> FoodRecord:
        doc = dict(record.details)
        doc.update(
            {
                "donorEmail": record.donor_email,
                "foodName": record.food_name,
                "quantity": record.quantity,
                "expiredDateTime": record.expired_at,
                "foodStatus": record.status,
                "createdAt": record.created_at,
                "updatedAt": record.updated_at,
            }
        )
        with self._guard():
            result = self.food.insert_one(doc)
        return replace(record, id=str(result.inserted_id))

    def get_food(self, food_id: str) -> Optional[FoodRecord]:
        oid = self._oid(food_id)
        if oid is None:
            return None
        with self._guard():
            doc = self.food.find_one({"_id": oid})
        return self._to_food(doc) if doc else None

    def update_food(
        self, food_id: str, changes: dict, details: Optional[dict] = None
    ) -> Optional[FoodRecord]:
        oid = self._oid(food_id)
        if oid is None:
            return None
        to_set = {_MONGO_FOOD_FIELDS[k]: v for k, v in changes.items()}
        for key, value in (details or {}).items():
            if key not in _MONGO_FOOD_CORE:
                to_set[key] = value
        to_set["updatedAt"] = utcnow()
        with self._guard():
            doc = self.food.find_one_and_update(
                {"_id": oid}, {"$set": to_set}, return_document=ReturnDocument.AFTER
            )
        return self._to_food(doc) if doc else None

    def delete_food(self, food_id: str) -> bool:
        oid = self._oid(food_id)
        if oid is None:
            return False
        with self._guard():
            result = self.food.delete_one({"_id": oid})
        return result.deleted_count > 0

    def find_food(self, query: FoodQuery) -> Iterator[FoodRecord]:
        selector: dict = {}
        if query.status is not None:
            selector["foodStatus"] = query.status
        if query.donor_email is not None:
            selector["donorEmail"] = query.donor_email
        if query.name_pattern:
            selector["foodName"] = {"$regex": re.escape(query.name_pattern), "$options": "i"}
        if query.expires_after is not None:
            selector["expiredDateTime"] = {"$gt": query.expires_after}
        if query.sort in ("asc", "desc"):
            sort = [("expiredDateTime", ASCENDING if query.sort == "asc" else DESCENDING)]
        else:
            sort = [("createdAt", DESCENDING)]
        with self._guard():
            for doc in self.food.find(selector).sort(sort):
                yield self._to_food(doc)

    def adjust_food_quantity(self, food_id: str, delta: int) -> bool:
        oid = self._oid(food_id)
        if oid is None:
            return False
        with self._guard():
            result = self.food.update_one(
                {"_id": oid}, {"$inc": {"quantity": delta}, "$set": {"updatedAt": utcnow()}}
            )
        return result.matched_count > 0

    def merge_active_request(
        self, food_id: str, user_email: str, quantity: int, notes: Optional[str]
    ) -> Optional[FoodRequestRecord]:
        to_set: dict = {"updatedAt": utcnow()}
        if notes is not None:
            to_set["additionalNotes"] = notes
        with self._guard():
            doc = self.requests.find_one_and_update(
                {"foodId": food_id, "userEmail": user_email, "active": True},
                {"$inc": {"requestedQuantity": quantity}, "$set": to_set},
                return_document=ReturnDocument.AFTER,
            )
        return self._to_request(doc) if doc else None

    def insert_request(self, record: FoodRequestRecord) -> FoodRequestRecord:
        doc = {
            "foodId": record.food_id,
            "userEmail": record.user_email,
            "requestedQuantity": record.requested_quantity,
            "additionalNotes": record.additional_notes,
            "status": record.status,
            "active": record.is_active,
            "requestedAt": record.requested_at,
            "updatedAt": record.updated_at,
        }
        with self._guard():
            result = self.requests.insert_one(doc)
        return replace(record, id=str(result.inserted_id))

    def get_request(self, request_id: str) -> Optional[FoodRequestRecord]:
        oid = self._oid(request_id)
        if oid is None:
            return None
        with self._guard():
            doc = self.requests.find_one({"_id": oid})
        return self._to_request(doc) if doc else None

    def delete_request(self, request_id: str) -> Optional[FoodRequestRecord]:
        oid = self._oid(request_id)
        if oid is None:
            return None
        with self._guard():
            doc = self.requests.find_one_and_delete({"_id": oid})
        return self._to_request(doc) if doc else None

    def has_active_requests(self, food_id: str) -> bool:
        with self._guard():
            return self.requests.find_one({"foodId": food_id, "active": True}) is not None

    def list_requests(self, user_email: str) -> Iterator[FoodRequestRecord]:
        with self._guard():
            cursor = self.requests.find({"userEmail": user_email}).sort("requestedAt", DESCENDING)
            for doc in cursor:
                yield self._to_request(doc)

    def insert_payment(self, record: PaymentRecord) -> PaymentRecord:
        doc = {
            "email": record.email,
            "amount": record.amount,
            "transactionId": record.transaction_id,
            "status": record.status,
            "date": record.date,
        }
        with self._guard():
            result = self.payments.insert_one(doc)
        return replace(record, id=str(result.inserted_id))

    def list_payments(self, email: str) -> Iterator[PaymentRecord]:
        with self._guard():
            for doc in self.payments.find({"email": email}).sort("date", DESCENDING):
                yield self._to_payment(doc)
