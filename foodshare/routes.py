"""
HTTP routes for the FoodShare API.

Paths match the ones the web clients already call.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from foodshare.dependencies import (
    get_listing_manager,
    get_payment_ledger,
    get_principal,
    get_request_manager,
    get_user_manager,
)
from foodshare.errors import ForbiddenError
from foodshare.food_requests import RequestManager
from foodshare.identity import Principal
from foodshare.listings import ListingManager
from foodshare.payments import PaymentLedger
from foodshare.schemas import (
    FoodCreatePayload,
    FoodRequestPayload,
    FoodStatusPayload,
    FoodUpdatePayload,
    InsertedResponse,
    PaymentIntentPayload,
    PaymentIntentResponse,
    PaymentPayload,
    UserUpsertPayload,
)
from foodshare.users import UserManager

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_principal(principal: Principal, email: Optional[str]) -> None:
    if not email or email != principal.email:
        raise ForbiddenError("Forbidden")


@router.get("/")
def health():
    return {"status": "ok", "message": "FoodShare API running"}


# Users


@router.post("/users")
def upsert_user(
    payload: UserUpsertPayload, users: UserManager = Depends(get_user_manager)
):
    _, created = users.upsert_profile(
        payload.email,
        name=payload.name,
        photourl=payload.photourl,
        membership=payload.membership,
    )
    return {"success": True, "upserted": created}


@router.get("/users")
def list_users(users: UserManager = Depends(get_user_manager)):
    return [user.as_dict() for user in users.list_profiles()]


@router.get("/users/{email}")
def get_user(email: str, users: UserManager = Depends(get_user_manager)):
    return users.get_profile(email).as_dict()


@router.patch("/users/membership/{email}")
def grant_membership(email: str, users: UserManager = Depends(get_user_manager)):
    users.grant_membership(email)
    return {"success": True}


# Food listings


@router.post("/food", response_model=InsertedResponse, status_code=201)
def create_food(
    payload: FoodCreatePayload,
    listings: ListingManager = Depends(get_listing_manager),
):
    fields = payload.model_dump(exclude_none=True)
    food = listings.create_listing(payload.donorEmail, fields)
    return InsertedResponse(insertedId=food.id)


def _search(
    listings: ListingManager, search: str, sort_order: Optional[str]
) -> list[dict]:
    return [
        food.as_dict()
        for food in listings.search(name_pattern=search, sort=sort_order or "desc")
    ]


@router.get("/food")
def list_food(
    search: str = Query(""),
    sortOrder: Optional[str] = Query(None, pattern="^(asc|desc)$"),
    listings: ListingManager = Depends(get_listing_manager),
):
    return _search(listings, search, sortOrder)


@router.get("/available-foods")
def available_foods(
    search: str = Query(""),
    sortOrder: Optional[str] = Query(None, pattern="^(asc|desc)$"),
    listings: ListingManager = Depends(get_listing_manager),
):
    return _search(listings, search, sortOrder)


@router.get("/food/user/{email}")
def donor_food(
    email: str,
    principal: Principal = Depends(get_principal),
    listings: ListingManager = Depends(get_listing_manager),
):
    _require_principal(principal, email)
    return [food.as_dict() for food in listings.listings_for_donor(email)]


@router.get("/food/{food_id}")
def get_food(food_id: str, listings: ListingManager = Depends(get_listing_manager)):
    return listings.get_listing(food_id).as_dict()


@router.put("/food/{food_id}")
def update_food(
    food_id: str,
    payload: FoodUpdatePayload,
    listings: ListingManager = Depends(get_listing_manager),
):
    food = listings.update_listing(food_id, payload.model_dump(exclude_unset=True))
    return {"success": True, "result": food.as_dict()}


@router.patch("/food/{food_id}")
def update_food_status(
    food_id: str,
    payload: FoodStatusPayload,
    listings: ListingManager = Depends(get_listing_manager),
):
    food = listings.set_status(food_id, payload.foodStatus)
    return {"success": True, "result": food.as_dict()}


@router.delete("/food/{food_id}")
def delete_food(
    food_id: str,
    principal: Principal = Depends(get_principal),
    listings: ListingManager = Depends(get_listing_manager),
):
    listings.delete_listing(food_id, principal.email)
    return {"success": True}


# Food requests


@router.post("/requestfoods")
def submit_food_request(
    payload: FoodRequestPayload,
    requests: RequestManager = Depends(get_request_manager),
):
    notes = payload.notes if payload.notes is not None else payload.additionalNotes
    outcome = requests.submit_request(
        payload.foodId, payload.userEmail, payload.requestedQuantity, notes
    )
    return JSONResponse(
        status_code=200 if outcome.merged else 201, content=outcome.as_dict()
    )


@router.get("/myfoodrequest")
def my_food_requests(
    email: Optional[str] = Query(None),
    principal: Principal = Depends(get_principal),
    requests: RequestManager = Depends(get_request_manager),
):
    _require_principal(principal, email)
    return [r.as_dict() for r in requests.list_requests_for_user(email)]


@router.delete("/myfoodrequest/{request_id}")
def cancel_food_request(
    request_id: str,
    principal: Principal = Depends(get_principal),
    requests: RequestManager = Depends(get_request_manager),
):
    outcome = requests.cancel_request(request_id, requester_email=principal.email)
    return outcome.as_dict()


# Payments


@router.post("/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    payload: PaymentIntentPayload,
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    return PaymentIntentResponse(clientSecret=ledger.create_intent(payload.price))


@router.post("/payments", response_model=InsertedResponse, status_code=201)
def record_payment(
    payload: PaymentPayload, ledger: PaymentLedger = Depends(get_payment_ledger)
):
    payment = ledger.record(
        payload.email,
        payload.amount,
        payload.transactionId,
        payload.status,
        date=payload.date,
    )
    return InsertedResponse(insertedId=payment.id)


@router.get("/payments/{email}")
def payment_history(
    email: str,
    principal: Principal = Depends(get_principal),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    _require_principal(principal, email)
    return [p.as_dict() for p in ledger.history(email)]
