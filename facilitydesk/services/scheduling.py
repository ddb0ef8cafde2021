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

"""Event occurrences and the inventory they tie up."""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from facilitydesk.exceptions import ValidationError
from facilitydesk.models.event import Event, EventInventory
from facilitydesk.models.inventory import InventoryItem
from facilitydesk.services.ledger import checkout_ceiling
from facilitydesk.services.recurrence import Occurrence, expand, single_occurrence

logger = logging.getLogger(__name__)


def event_occurrences(event: Event, now: datetime) -> List[Occurrence]:
    """Occurrences of one event starting at or after ``now``.

    A stored rule that no longer parses is logged and the base event is used
    as a single occurrence.
    """
    if not event.is_recurring or not event.recurrence_rule:
        if event.start_time >= now:
            return [single_occurrence(event)]
        return []

    try:
        return expand(event, now)
    except ValidationError as e:
        logger.warning("Event %s has an invalid recurrence rule (%s): %s", event.id, event.recurrence_rule, e)
        return [single_occurrence(event)] if event.start_time >= now else []


def upcoming_occurrences(
    db: Session,
    now: datetime,
    category: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Occurrence]:
    """Future occurrences of all events, recurring ones expanded."""
    query = (
        db.query(Event)
        .options(joinedload(Event.inventory_links).joinedload(EventInventory.item))
        .filter(or_(Event.is_recurring == True, Event.start_time >= now))  # noqa: E712
    )
    if category:
        query = query.filter(Event.category == category)

    occurrences: List[Occurrence] = []
    for event in query.order_by(Event.start_time).all():
        occurrences.extend(event_occurrences(event, now))

    occurrences.sort(key=lambda o: (o.start_time, o.id))
    if limit is not None:
        occurrences = occurrences[:limit]
    return occurrences


def item_schedule(db: Session, item: InventoryItem, now: datetime) -> List[dict]:
    """Future occurrences that use an item, with overlapping demand.

    ``demand`` is the quantity linked by every occurrence overlapping this
    one (itself included); ``conflict`` is set when it exceeds the item's
    checkout ceiling.
    """
    links = (
        db.query(EventInventory)
        .options(joinedload(EventInventory.event))
        .filter(EventInventory.inventory_id == item.id)
        .all()
    )

    booked = []
    for link in links:
        for occurrence in event_occurrences(link.event, now):
            booked.append((occurrence, link.quantity))

    booked.sort(key=lambda pair: (pair[0].start_time, pair[0].id))
    ceiling = checkout_ceiling(item)

    schedule = []
    for i, (occurrence, quantity) in enumerate(booked):
        demand = quantity
        for j, (other, other_quantity) in enumerate(booked):
            if i == j:
                continue
            if other.start_time >= occurrence.end_time:
                break
            if other.overlaps(occurrence.start_time, occurrence.end_time):
                demand += other_quantity

        schedule.append(
            {
                "occurrence_id": occurrence.id,
                "event_id": occurrence.event.id,
                "title": occurrence.event.title,
                "start_time": occurrence.start_time.isoformat(),
                "end_time": occurrence.end_time.isoformat(),
                "quantity": quantity,
                "demand": demand,
                "conflict": demand > ceiling,
            }
        )

    return schedule
