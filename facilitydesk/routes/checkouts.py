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

"""Direct checkout routes and request retention cleanup."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, joinedload

from facilitydesk.config import get_settings
from facilitydesk.database import get_db
from facilitydesk.exceptions import ValidationError
from facilitydesk.middleware.staff import Staff, get_current_staff
from facilitydesk.models.checkout import Checkout
from facilitydesk.services.ledger import request_checkout, return_checkout
from facilitydesk.services.lifecycle import cleanup_returned_requests, find_cleanup_candidates
from facilitydesk.utils.helpers import sanitize_input, sanitize_message, to_naive_utc

router = APIRouter()


class CheckoutCreate(BaseModel):
    """Direct checkout by staff."""

    inventory_id: int
    checked_out_by: str
    from_date: datetime
    to_date: datetime
    quantity: int = Field(1, ge=1)
    notes: Optional[str] = None


@router.get("/api/checkout")
def list_checkouts(
    status: Optional[str] = Query(None),
    user: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """List checkouts, newest first."""
    query = db.query(Checkout).options(joinedload(Checkout.item))

    if status:
        query = query.filter(Checkout.status == status)
    if user:
        query = query.filter(Checkout.checked_out_by.contains(user))

    checkouts = query.order_by(Checkout.checked_out_at.desc(), Checkout.id.desc()).all()

    return {
        "success": True,
        "checkouts": [c.to_dict() for c in checkouts],
    }


@router.post("/api/checkout")
def create_checkout(
    data: CheckoutCreate,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Check out units of an item directly, bypassing the request workflow."""
    checked_out_by = sanitize_input(data.checked_out_by, 255)
    if not checked_out_by:
        raise ValidationError("Inventory ID and checked out by are required")

    from_date = to_naive_utc(data.from_date)
    due_date = to_naive_utc(data.to_date)
    if due_date < from_date:
        raise ValidationError("To date must be after from date")

    settings = get_settings()
    created = request_checkout(
        db,
        inventory_id=data.inventory_id,
        quantity=data.quantity,
        checked_out_by=checked_out_by,
        from_date=from_date,
        due_date=due_date,
        notes=sanitize_message(data.notes, settings.checkout.max_message_length) or None,
    )

    return {
        "success": True,
        "checkouts": [c.to_dict() for c in created],
        "checkout": created[0].to_dict(),
    }


@router.post("/api/checkout/{checkout_id}/return")
def return_checkout_route(
    checkout_id: int,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Return one checked-out unit."""
    checkout = return_checkout(db, checkout_id)
    return {"success": True, "checkout": checkout.to_dict()}


@router.get("/api/checkout/cleanup")
def preview_cleanup(
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Count returned requests old enough to be purged."""
    settings = get_settings()
    candidates = find_cleanup_candidates(db)
    return {
        "success": True,
        "count": len(candidates),
        "request_ids": [r.id for r in candidates],
        "retention_days": settings.checkout.request_retention_days,
    }


@router.post("/api/checkout/cleanup")
def run_cleanup(
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Purge returned requests past the retention period."""
    result = cleanup_returned_requests(db)
    return {
        "success": True,
        "deleted": result["deleted"],
        "request_ids": result["request_ids"],
        "message": f"Deleted {result['deleted']} returned checkout request(s)",
    }
