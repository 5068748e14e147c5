"""
Pydantic schemas for the FoodShare API request bodies.

Required fields are declared optional here so the managers can report
missing values with the API's own error messages.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UserUpsertPayload(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    photourl: Optional[str] = None
    membership: str = "no"


class FoodCreatePayload(BaseModel):
    # Display fields (donorName, foodImage, pickupLocation, ...) pass through.
    model_config = ConfigDict(extra="allow")

    donorEmail: Optional[str] = None
    foodName: Optional[str] = None
    quantity: int = Field(default=0, ge=0)
    expiredDateTime: Optional[datetime] = None


class FoodUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    foodName: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=0)
    expiredDateTime: Optional[datetime] = None
    foodStatus: Optional[str] = None


class FoodStatusPayload(BaseModel):
    foodStatus: Optional[str] = None


class FoodRequestPayload(BaseModel):
    foodId: Optional[str] = None
    userEmail: Optional[str] = None
    requestedQuantity: Optional[int] = None
    # Older clients send "additionalNotes", newer ones "notes".
    notes: Optional[str] = None
    additionalNotes: Optional[str] = None


class PaymentIntentPayload(BaseModel):
    price: Optional[float] = None


class PaymentIntentResponse(BaseModel):
    clientSecret: str


class PaymentPayload(BaseModel):
    email: Optional[str] = None
    amount: Optional[float] = None
    transactionId: Optional[str] = None
    status: Optional[str] = None
    date: Optional[datetime] = None


class InsertedResponse(BaseModel):
    insertedId: str
