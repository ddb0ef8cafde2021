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

"""Inventory routes."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from facilitydesk.database import get_db, write_transaction
from facilitydesk.exceptions import InvalidTransition, NotFound, ValidationError
from facilitydesk.middleware.staff import Staff, get_current_staff
from facilitydesk.models.inventory import InventoryItem, InventoryLocation, InventoryTag
from facilitydesk.services import lifecycle
from facilitydesk.services.ledger import (
    active_checkouts,
    compute_available,
    item_availability,
    publish_inventory_change,
)
from facilitydesk.services.scheduling import item_schedule
from facilitydesk.utils.helpers import sanitize_input

logger = logging.getLogger(__name__)

router = APIRouter()


# Pydantic schemas
class LocationEntry(BaseModel):
    """Units kept at one location."""

    location: str
    quantity: int = Field(0, ge=0)


class InventoryCreate(BaseModel):
    """Inventory item creation request."""

    name: str
    description: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    quantity: int = Field(1, ge=0)
    available_for_checkout: Optional[int] = Field(None, ge=0)
    checkout_enabled: bool = False
    location: Optional[str] = None
    usage_notes: Optional[str] = None
    locations: List[LocationEntry] = []
    tags: List[str] = []


class InventoryUpdate(BaseModel):
    """Inventory item update request."""

    name: Optional[str] = None
    description: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=0)
    available_for_checkout: Optional[int] = Field(None, ge=0)
    clear_available_for_checkout: bool = False
    checkout_enabled: Optional[bool] = None
    location: Optional[str] = None
    usage_notes: Optional[str] = None
    locations: Optional[List[LocationEntry]] = None
    tags: Optional[List[str]] = None


def _get_item(db: Session, inventory_id: int) -> InventoryItem:
    item = db.query(InventoryItem).filter(InventoryItem.id == inventory_id).first()
    if not item:
        raise NotFound("Inventory item not found")
    return item


def _resolve_tags(db: Session, names: List[str]) -> List[InventoryTag]:
    tags = []
    for raw in names:
        name = sanitize_input(raw, 100)
        if not name:
            continue
        tag = db.query(InventoryTag).filter(InventoryTag.name == name).first()
        if tag is None:
            tag = InventoryTag(name=name)
            db.add(tag)
        if tag not in tags:
            tags.append(tag)
    return tags


def _set_locations(item: InventoryItem, entries: List[LocationEntry]) -> None:
    item.locations = [
        InventoryLocation(location=sanitize_input(e.location, 255), quantity=e.quantity)
        for e in entries
        if sanitize_input(e.location, 255)
    ]


def _clamp_ceiling(item: InventoryItem) -> None:
    """Keep the checkout ceiling within the owned quantity."""
    if item.available_for_checkout is not None and item.available_for_checkout > item.quantity:
        item.available_for_checkout = item.quantity


def _item_with_availability(item: InventoryItem, checkouts) -> dict:
    result = item.to_dict()
    result["available"] = compute_available(item, checkouts)
    return result


@router.get("/api/inventory")
def list_inventory(
    search: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    checkout_enabled: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
):
    """List inventory items with current availability."""
    query = db.query(InventoryItem).options(
        selectinload(InventoryItem.checkouts),
        selectinload(InventoryItem.tags),
        selectinload(InventoryItem.locations),
    )

    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(
                InventoryItem.name.ilike(pattern),
                InventoryItem.description.ilike(pattern),
                InventoryItem.manufacturer.ilike(pattern),
                InventoryItem.model.ilike(pattern),
            )
        )
    if tag:
        query = query.filter(InventoryItem.tags.any(InventoryTag.name == tag))
    if checkout_enabled is not None:
        query = query.filter(InventoryItem.checkout_enabled == checkout_enabled)

    items = query.order_by(InventoryItem.name).all()

    return {
        "success": True,
        "items": [_item_with_availability(item, item.checkouts) for item in items],
    }


@router.post("/api/inventory")
def create_inventory_item(
    data: InventoryCreate,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Create an inventory item."""
    name = sanitize_input(data.name, 255)
    if not name:
        raise ValidationError("Name is required")

    item = InventoryItem(
        name=name,
        description=data.description,
        manufacturer=sanitize_input(data.manufacturer, 255) or None,
        model=sanitize_input(data.model, 255) or None,
        quantity=data.quantity,
        available_for_checkout=data.available_for_checkout,
        checkout_enabled=data.checkout_enabled,
        location=sanitize_input(data.location, 255) or None,
        usage_notes=data.usage_notes,
    )
    _clamp_ceiling(item)
    _set_locations(item, data.locations)

    with write_transaction(db):
        item.tags = _resolve_tags(db, data.tags)
        db.add(item)
    db.refresh(item)

    logger.info("Inventory item %d (%s) created by %s", item.id, item.name, staff.name)

    return {
        "success": True,
        "item": _item_with_availability(item, []),
        "message": f"Inventory item '{item.name}' created",
    }


@router.get("/api/inventory/{inventory_id}")
def get_inventory_item(
    inventory_id: int,
    db: Session = Depends(get_db),
):
    """Get one inventory item with its live checkouts and event links."""
    item = _get_item(db, inventory_id)
    out = active_checkouts(db, item.id)

    result = _item_with_availability(item, out)
    result["checkouts"] = [c.to_dict(include_item=False) for c in out]
    result["events"] = [
        {
            "event_id": link.event_id,
            "title": link.event.title if link.event else None,
            "quantity": link.quantity,
        }
        for link in item.event_links
    ]

    return {"success": True, "item": result}


@router.put("/api/inventory/{inventory_id}")
def update_inventory_item(
    inventory_id: int,
    data: InventoryUpdate,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Update an inventory item.

    The checkout ceiling is clamped to the quantity, including when the
    quantity shrinks below an existing ceiling.
    """
    with write_transaction(db):
        item = _get_item(db, inventory_id)

        if data.name is not None:
            name = sanitize_input(data.name, 255)
            if not name:
                raise ValidationError("Name is required")
            item.name = name
        if data.description is not None:
            item.description = data.description
        if data.manufacturer is not None:
            item.manufacturer = sanitize_input(data.manufacturer, 255) or None
        if data.model is not None:
            item.model = sanitize_input(data.model, 255) or None
        if data.quantity is not None:
            item.quantity = data.quantity
        if data.clear_available_for_checkout:
            item.available_for_checkout = None
        elif data.available_for_checkout is not None:
            item.available_for_checkout = data.available_for_checkout
        if data.checkout_enabled is not None:
            item.checkout_enabled = data.checkout_enabled
        if data.location is not None:
            item.location = sanitize_input(data.location, 255) or None
        if data.usage_notes is not None:
            item.usage_notes = data.usage_notes
        if data.locations is not None:
            _set_locations(item, data.locations)
        if data.tags is not None:
            item.tags = _resolve_tags(db, data.tags)

        _clamp_ceiling(item)
    db.refresh(item)

    logger.info("Inventory item %d updated by %s", item.id, staff.name)
    publish_inventory_change([item.id], "update")

    return {
        "success": True,
        "item": _item_with_availability(item, active_checkouts(db, item.id)),
        "message": "Inventory item updated",
    }


@router.delete("/api/inventory/{inventory_id}")
def delete_inventory_item(
    inventory_id: int,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Delete an inventory item.

    Refused while units are checked out or a request that has not been
    picked up still asks for the item. Past checkouts and request lines
    keep their history with the item link cleared.
    """
    with write_transaction(db):
        item = _get_item(db, inventory_id)

        if active_checkouts(db, item.id):
            raise InvalidTransition("Cannot delete an item with units still checked out")

        waiting = lifecycle.open_requests_for_item(db, item.id)
        if waiting:
            raise InvalidTransition(
                "Cannot delete an item requested by open checkout request(s): "
                + ", ".join(str(i) for i in waiting)
            )

        name = item.name
        db.delete(item)

    logger.info("Inventory item %d (%s) deleted by %s", inventory_id, name, staff.name)
    publish_inventory_change([inventory_id], "delete")

    return {"success": True, "message": f"Inventory item '{name}' deleted"}


@router.get("/api/inventory/{inventory_id}/availability")
def get_inventory_availability(
    inventory_id: int,
    db: Session = Depends(get_db),
):
    """Units of an item available right now."""
    item = _get_item(db, inventory_id)
    return {"success": True, **item_availability(db, item)}


@router.get("/api/inventory/{inventory_id}/schedule")
def get_inventory_schedule(
    inventory_id: int,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Upcoming event occurrences that use this item."""
    item = _get_item(db, inventory_id)
    schedule = item_schedule(db, item, datetime.utcnow())
    return {
        "success": True,
        "inventory_id": item.id,
        "ceiling": item.checkout_ceiling,
        "occurrences": schedule,
        "conflicts": sum(1 for entry in schedule if entry["conflict"]),
    }
