# FacilityDesk - School Facility Equipment Checkout System
# Copyright (C) 2025 Oleg Tokmakov
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Checkout request routes.

Submission is public. Reading a single request, scheduling its pickup and
replying to staff are open to the requester through the access token
returned on submission and carried in the request emails. Every other
endpoint is for staff.
"""

import logging
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from facilitydesk.database import get_db
from facilitydesk.middleware.staff import Staff, get_current_staff, get_staff_from_request
from facilitydesk.services import lifecycle
from facilitydesk.services.ledger import CheckoutLine
from facilitydesk.utils.helpers import to_naive_utc

logger = logging.getLogger(__name__)

router = APIRouter()


# Pydantic schemas
class RequestItemIn(BaseModel):
    """One requested line."""

    inventory_id: int
    quantity: int = Field(1, ge=1)
    from_date: datetime
    to_date: datetime


class CheckoutRequestCreate(BaseModel):
    """Public checkout request submission."""

    requester_name: str
    requester_email: EmailStr
    requester_phone: Optional[str] = None
    purpose: Optional[str] = None
    items: List[RequestItemIn]


class CheckoutRequestUpdate(BaseModel):
    """Staff update; any subset of fields."""

    status: Optional[str] = None
    message: Optional[str] = None
    ready_for_pickup: Optional[bool] = None
    picked_up: Optional[bool] = None
    pickup_date: Optional[date] = None
    pickup_time: Optional[str] = None
    pickup_location: Optional[str] = None
    confirm_reapproval: bool = False


class MessageCreate(BaseModel):
    """Message on a request, from staff or the requester."""

    message: str


class PickupSchedule(BaseModel):
    """Requester's chosen pickup slot."""

    pickup_date: Optional[date] = None
    pickup_time: Optional[str] = None
    pickup_location: Optional[str] = None


def _parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None or value == "":
        return None
    return value.lower() in ("1", "true", "yes")


@router.post("/api/checkout/request")
def submit_checkout_request(
    data: CheckoutRequestCreate,
    db: Session = Depends(get_db),
):
    """Submit a checkout request (public)."""
    lines = [
        CheckoutLine(
            inventory_id=item.inventory_id,
            quantity=item.quantity,
            from_date=to_naive_utc(item.from_date),
            due_date=to_naive_utc(item.to_date),
        )
        for item in data.items
    ]

    request = lifecycle.create_request(
        db,
        requester_name=data.requester_name,
        requester_email=data.requester_email,
        lines=lines,
        requester_phone=data.requester_phone,
        purpose=data.purpose,
    )

    return {
        "success": True,
        "request": request.to_dict(include_checkouts=False, include_token=True),
        "message": "Checkout request submitted",
    }


@router.get("/api/checkout/request")
def list_checkout_requests(
    status: Optional[str] = Query(None, description="Comma separated statuses"),
    email: Optional[str] = Query(None),
    ready_for_pickup: Optional[str] = Query(None),
    picked_up: Optional[str] = Query(None),
    returned: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """List checkout requests."""
    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None

    requests = lifecycle.list_requests(
        db,
        statuses=statuses,
        email=email,
        ready_for_pickup=_parse_bool(ready_for_pickup),
        picked_up=_parse_bool(picked_up),
        returned=_parse_bool(returned),
    )

    return {
        "success": True,
        "requests": [r.to_dict() for r in requests],
    }


@router.get("/api/checkout/request/{request_id}")
def get_checkout_request(
    request_id: int,
    http_request: Request,
    token: Optional[str] = Query(None, description="Requester access token"),
    db: Session = Depends(get_db),
):
    """Get one checkout request with its messages and checkouts.

    Staff read any request; a requester needs the request's access token.
    """
    if get_staff_from_request(http_request):
        request = lifecycle.get_request(db, request_id)
    else:
        request = lifecycle.get_request_for_requester(db, request_id, token)
    return {"success": True, "request": request.to_dict()}


@router.put("/api/checkout/request/{request_id}")
def update_checkout_request(
    request_id: int,
    data: CheckoutRequestUpdate,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Progress a request: status, ready flag, pickup slot, pickup, message."""
    update = lifecycle.RequestUpdate(
        status=data.status,
        ready_for_pickup=data.ready_for_pickup,
        pickup_date=data.pickup_date,
        pickup_time=data.pickup_time,
        pickup_location=data.pickup_location,
        picked_up=data.picked_up,
        message=data.message,
        confirm_reapproval=data.confirm_reapproval,
    )
    request = lifecycle.apply_update(db, request_id, update, staff.name, staff.email)

    return {"success": True, "request": request.to_dict()}


@router.delete("/api/checkout/request/{request_id}")
def delete_checkout_request(
    request_id: int,
    cascade: bool = Query(False, description="Return equipment still out before deleting"),
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Delete a checkout request."""
    lifecycle.delete_request(db, request_id, cascade=cascade)
    logger.info("Checkout request %d deleted by %s", request_id, staff.name)
    return {"success": True, "message": "Checkout request deleted"}


@router.post("/api/checkout/request/{request_id}/message")
def add_checkout_request_message(
    request_id: int,
    data: MessageCreate,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Add a staff message to a request."""
    entry = lifecycle.add_message(
        db,
        request_id,
        data.message,
        sender_name=staff.name,
        sender_type="admin",
        sender_email=staff.email,
    )
    return {"success": True, "message": entry.to_dict()}


@router.post("/api/checkout/request/{request_id}/return")
def return_checkout_request(
    request_id: int,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Return all equipment still out on a request."""
    request = lifecycle.return_request(db, request_id)
    return {"success": True, "request": request.to_dict()}


@router.post("/api/checkout/request/{request_id}/schedule")
def schedule_checkout_pickup(
    request_id: int,
    data: PickupSchedule,
    token: str = Query(..., description="Requester access token"),
    db: Session = Depends(get_db),
):
    """Choose a pickup slot for a request that is ready (requester)."""
    request = lifecycle.schedule_pickup(
        db,
        request_id,
        pickup_date=data.pickup_date,
        pickup_time=data.pickup_time,
        pickup_location=data.pickup_location,
        access_token=token,
    )
    return {
        "success": True,
        "request": request.to_dict(include_messages=False, include_checkouts=False),
        "message": "Pickup scheduled",
    }


@router.post("/api/checkout/request/{request_id}/reply")
def reply_to_checkout_request(
    request_id: int,
    data: MessageCreate,
    token: str = Query(..., description="Requester access token"),
    db: Session = Depends(get_db),
):
    """Add a message from the requester to their own request."""
    entry = lifecycle.add_requester_message(db, request_id, token, data.message)
    return {"success": True, "message": entry.to_dict()}
