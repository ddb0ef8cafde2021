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

"""Event routes, including recurring occurrence expansion."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, joinedload

from facilitydesk.database import get_db, write_transaction
from facilitydesk.exceptions import NotFound, ValidationError
from facilitydesk.middleware.staff import Staff, get_current_staff
from facilitydesk.models.event import Event, EventInventory
from facilitydesk.models.inventory import InventoryItem
from facilitydesk.services.recurrence import parse_rule
from facilitydesk.services.scheduling import event_occurrences, upcoming_occurrences
from facilitydesk.utils.helpers import sanitize_input, to_naive_utc

logger = logging.getLogger(__name__)

router = APIRouter()


# Pydantic schemas
class EventInventoryIn(BaseModel):
    """Inventory linked to an event."""

    inventory_id: int
    quantity: int = Field(1, ge=1)


class EventCreate(BaseModel):
    """Event creation request."""

    title: str
    start_time: datetime
    end_time: datetime
    setup_time: Optional[datetime] = None
    description: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None
    is_recurring: bool = False
    recurrence_rule: Optional[str] = None
    inventory: List[EventInventoryIn] = []


class EventUpdate(BaseModel):
    """Event update request."""

    title: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    setup_time: Optional[datetime] = None
    description: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None
    is_recurring: Optional[bool] = None
    recurrence_rule: Optional[str] = None


def _get_event(db: Session, event_id: int) -> Event:
    event = (
        db.query(Event)
        .options(joinedload(Event.inventory_links).joinedload(EventInventory.item))
        .filter(Event.id == event_id)
        .first()
    )
    if not event:
        raise NotFound("Event not found")
    return event


def _validate_event(event: Event) -> None:
    """Check times and the recurrence rule before saving."""
    if not event.title:
        raise ValidationError("title, start_time, and end_time are required")
    if event.end_time < event.start_time:
        raise ValidationError("end_time must be on or after start_time")
    if event.setup_time is not None and event.setup_time > event.start_time:
        raise ValidationError("setup_time must be on or before start_time")
    if event.is_recurring:
        if not event.recurrence_rule:
            raise ValidationError("Recurring events need a recurrence rule")
        parse_rule(event.recurrence_rule)


def _link_inventory(db: Session, event: Event, inventory_id: int, quantity: int) -> EventInventory:
    """Create or update the link between an event and an item."""
    item = db.query(InventoryItem).filter(InventoryItem.id == inventory_id).first()
    if not item:
        raise NotFound(f"Item {inventory_id} not found")

    for link in event.inventory_links:
        if link.inventory_id == inventory_id:
            link.quantity = quantity
            return link

    link = EventInventory(inventory_id=inventory_id, quantity=quantity, item=item)
    event.inventory_links.append(link)
    return link


@router.get("/api/events")
def list_events(
    upcoming: bool = Query(False),
    category: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """List events.

    With ``upcoming=true`` recurring events are expanded into their future
    occurrences and merged with future one-off events by start time.
    """
    if upcoming:
        occurrences = upcoming_occurrences(db, datetime.utcnow(), category=category, limit=limit)
        return {
            "success": True,
            "events": [o.to_dict() for o in occurrences],
        }

    query = db.query(Event).options(joinedload(Event.inventory_links).joinedload(EventInventory.item))
    if category:
        query = query.filter(Event.category == category)
    events = query.order_by(Event.start_time).limit(limit).all()

    return {
        "success": True,
        "events": [e.to_dict() for e in events],
    }


@router.post("/api/events")
def create_event(
    data: EventCreate,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Create an event."""
    event = Event(
        title=sanitize_input(data.title, 255),
        description=data.description,
        location=sanitize_input(data.location, 255) or None,
        category=sanitize_input(data.category, 100) or None,
        setup_time=to_naive_utc(data.setup_time),
        start_time=to_naive_utc(data.start_time),
        end_time=to_naive_utc(data.end_time),
        is_recurring=data.is_recurring,
        recurrence_rule=data.recurrence_rule.strip() if data.recurrence_rule else None,
    )
    _validate_event(event)

    with write_transaction(db):
        for entry in data.inventory:
            _link_inventory(db, event, entry.inventory_id, entry.quantity)
        db.add(event)

    logger.info("Event %d (%s) created by %s", event.id, event.title, staff.name)

    event = _get_event(db, event.id)
    return {"success": True, "event": event.to_dict()}


@router.get("/api/events/{event_id}")
def get_event(
    event_id: int,
    db: Session = Depends(get_db),
):
    """Get an event with its upcoming occurrences."""
    event = _get_event(db, event_id)
    occurrences = event_occurrences(event, datetime.utcnow())
    return {
        "success": True,
        "event": event.to_dict(),
        "occurrences": [
            {
                "id": o.id,
                "occurrence_index": o.index,
                "start_time": o.start_time.isoformat(),
                "end_time": o.end_time.isoformat(),
            }
            for o in occurrences
        ],
    }


@router.put("/api/events/{event_id}")
def update_event(
    event_id: int,
    data: EventUpdate,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Update an event."""
    with write_transaction(db):
        event = _get_event(db, event_id)

        if data.title is not None:
            event.title = sanitize_input(data.title, 255)
        if data.description is not None:
            event.description = data.description
        if data.location is not None:
            event.location = sanitize_input(data.location, 255) or None
        if data.category is not None:
            event.category = sanitize_input(data.category, 100) or None
        if data.setup_time is not None:
            event.setup_time = to_naive_utc(data.setup_time)
        if data.start_time is not None:
            event.start_time = to_naive_utc(data.start_time)
        if data.end_time is not None:
            event.end_time = to_naive_utc(data.end_time)
        if data.is_recurring is not None:
            event.is_recurring = data.is_recurring
        if data.recurrence_rule is not None:
            event.recurrence_rule = data.recurrence_rule.strip() or None

        _validate_event(event)

    logger.info("Event %d updated by %s", event_id, staff.name)

    event = _get_event(db, event_id)
    return {"success": True, "event": event.to_dict()}


@router.delete("/api/events/{event_id}")
def delete_event(
    event_id: int,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Delete an event and its inventory links."""
    with write_transaction(db):
        event = _get_event(db, event_id)
        db.delete(event)

    logger.info("Event %d deleted by %s", event_id, staff.name)
    return {"success": True, "message": "Event deleted"}


@router.get("/api/events/{event_id}/inventory")
def list_event_inventory(
    event_id: int,
    db: Session = Depends(get_db),
):
    """Inventory linked to an event."""
    event = _get_event(db, event_id)
    return {
        "success": True,
        "inventory": [link.to_dict() for link in event.inventory_links],
    }


@router.post("/api/events/{event_id}/inventory")
def link_event_inventory(
    event_id: int,
    data: EventInventoryIn,
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Link an item to an event, or change the linked quantity."""
    with write_transaction(db):
        event = _get_event(db, event_id)
        link = _link_inventory(db, event, data.inventory_id, data.quantity)
    db.refresh(link)
    return {"success": True, "inventory": link.to_dict()}


@router.delete("/api/events/{event_id}/inventory")
def unlink_event_inventory(
    event_id: int,
    inventory_id: int = Query(...),
    db: Session = Depends(get_db),
    staff: Staff = Depends(get_current_staff),
):
    """Remove an item from an event."""
    with write_transaction(db):
        event = _get_event(db, event_id)
        link = next((entry for entry in event.inventory_links if entry.inventory_id == inventory_id), None)
        if link is None:
            raise NotFound("Item is not linked to this event")
        event.inventory_links.remove(link)
    return {"success": True}
