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

"""Availability ledger: unit counting, checkout creation and returns.

Every unit on loan is one ``Checkout`` row with status ``checked_out``.
The only way availability changes is through ``reserve_lines`` /
``request_checkout`` (creating rows) and ``mark_returned`` /
``return_checkout`` (closing them).
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from facilitydesk.database import write_transaction
from facilitydesk.exceptions import AlreadyReturned, InsufficientAvailability, NotFound, ValidationError
from facilitydesk.models.checkout import CHECKED_OUT, RETURNED, Checkout, CheckoutRequest
from facilitydesk.models.inventory import InventoryItem
from facilitydesk.services.bus import CHECKOUT_STATUS_UPDATED, INVENTORY_UPDATED, get_bus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutLine:
    """A quantity of one item to check out over a date range."""

    inventory_id: int
    quantity: int
    from_date: Optional[datetime] = None
    due_date: Optional[datetime] = None


def checkout_ceiling(item) -> int:
    """Availability ceiling: the override when set, else the quantity."""
    if item.available_for_checkout is not None:
        return item.available_for_checkout
    return item.quantity or 0


def count_checked_out(checkouts: Iterable) -> int:
    """Count checkouts that are still out. Returned ones never count."""
    return sum(1 for c in checkouts if c.status == CHECKED_OUT)


def compute_available(item, checkouts: Iterable) -> int:
    """Number of units of ``item`` free right now.

    Args:
        item: Object with ``quantity`` and ``available_for_checkout``.
        checkouts: All checkout records for the item, any status.

    Returns:
        ``max(0, ceiling - checked_out)``; never negative.
    """
    return max(0, checkout_ceiling(item) - count_checked_out(checkouts))


def check_availability(item, requested_quantity: int, checkouts: Iterable) -> int:
    """Raise ``InsufficientAvailability`` if ``requested_quantity`` cannot be met.

    Returns:
        The availability the decision was based on.
    """
    available = compute_available(item, checkouts)
    if requested_quantity > available:
        raise InsufficientAvailability([_shortage(item, requested_quantity, available)])
    return available


def _shortage(item, requested: int, available: int) -> dict:
    return {
        "inventory_id": item.id,
        "name": item.name,
        "requested": requested,
        "available": available,
    }


def active_checkouts(db: Session, inventory_id: int) -> List[Checkout]:
    """Checkouts of an item that are still out."""
    return (
        db.query(Checkout)
        .filter(Checkout.inventory_id == inventory_id, Checkout.status == CHECKED_OUT)
        .all()
    )


def item_availability(db: Session, item: InventoryItem) -> dict:
    """Availability summary for one item."""
    out = active_checkouts(db, item.id)
    return {
        "inventory_id": item.id,
        "quantity": item.quantity,
        "ceiling": checkout_ceiling(item),
        "checked_out": len(out),
        "available": compute_available(item, out),
    }


def lock_items(db: Session, inventory_ids: Iterable[int]) -> Dict[int, InventoryItem]:
    """Load and lock inventory rows for the rest of the transaction.

    Rows are locked in id order so concurrent multi-item pickups cannot
    deadlock. On SQLite, callers run inside ``write_transaction``, which
    already holds the database write lock, and FOR UPDATE is not rendered.

    Raises:
        NotFound: if any id does not exist.
    """
    ids = sorted(set(inventory_ids))
    items = (
        db.query(InventoryItem)
        .filter(InventoryItem.id.in_(ids))
        .order_by(InventoryItem.id)
        .populate_existing()
        .with_for_update()
        .all()
    )
    found = {item.id: item for item in items}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFound(f"Inventory item(s) not found: {', '.join(str(i) for i in missing)}")
    return found


def reserve_lines(
    db: Session,
    lines: List[CheckoutLine],
    checked_out_by: str,
    request: Optional[CheckoutRequest] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Checkout]:
    """Check every line against availability and create unit checkouts.

    All lines are validated before anything is written. Lines naming the
    same item are summed. Nothing is committed here; the caller runs this inside
    ``write_transaction`` and owns the commit.

    Raises:
        ValidationError: on a non-positive quantity or due date before from date.
        NotFound: if an item does not exist.
        InsufficientAvailability: listing every item that cannot be met.
    """
    if not lines:
        raise ValidationError("At least one item is required")

    for line in lines:
        if line.quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if line.from_date and line.due_date and line.due_date < line.from_date:
            raise ValidationError("Due date must be on or after from date")

    items = lock_items(db, (line.inventory_id for line in lines))

    wanted: "OrderedDict[int, int]" = OrderedDict()
    for line in lines:
        wanted[line.inventory_id] = wanted.get(line.inventory_id, 0) + line.quantity

    shortages = []
    for inventory_id, quantity in wanted.items():
        item = items[inventory_id]
        available = compute_available(item, active_checkouts(db, inventory_id))
        if quantity > available:
            shortages.append(_shortage(item, quantity, available))

    if shortages:
        raise InsufficientAvailability(shortages)

    now = now or datetime.utcnow()
    created = []
    for line in lines:
        item = items[line.inventory_id]
        for _ in range(line.quantity):
            checkout = Checkout(
                inventory_id=item.id,
                checked_out_by=checked_out_by,
                checked_out_at=now,
                from_date=line.from_date,
                due_date=line.due_date,
                status=CHECKED_OUT,
                notes=notes,
            )
            if request is not None:
                checkout.request = request
            db.add(checkout)
            created.append(checkout)
        item.last_used_at = now
        item.last_used_by = checked_out_by

    db.flush()
    return created


def request_checkout(
    db: Session,
    inventory_id: int,
    quantity: int,
    checked_out_by: str,
    from_date: Optional[datetime] = None,
    due_date: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> List[Checkout]:
    """Atomically check out ``quantity`` units of one item.

    Returns:
        The created checkouts, one per unit.
    """
    line = CheckoutLine(inventory_id, quantity, from_date, due_date)
    with write_transaction(db):
        created = reserve_lines(db, [line], checked_out_by, notes=notes)
        checkout_ids = [c.id for c in created]

    logger.info("Checked out %d x item %d to %s", quantity, inventory_id, checked_out_by)
    publish_inventory_change([inventory_id], "checkout", checkout_ids=checkout_ids, status=CHECKED_OUT)
    return created


def mark_returned(checkout: Checkout, now: Optional[datetime] = None) -> Checkout:
    """Close one checkout without committing.

    Raises:
        AlreadyReturned: if the checkout is already returned.
    """
    if checkout.status == RETURNED:
        raise AlreadyReturned(f"Checkout {checkout.id} has already been returned")

    now = now or datetime.utcnow()
    checkout.status = RETURNED
    checkout.returned_at = now
    if checkout.item is not None:
        checkout.item.last_used_at = now
        checkout.item.last_used_by = checkout.checked_out_by
    return checkout


def return_checkout(db: Session, checkout_id: int) -> Checkout:
    """Mark one checkout returned, freeing exactly one unit.

    Raises:
        NotFound: if the checkout does not exist.
        AlreadyReturned: if it was already returned.
    """
    with write_transaction(db):
        checkout = db.query(Checkout).filter(Checkout.id == checkout_id).first()
        if not checkout:
            raise NotFound("Checkout not found")
        if checkout.inventory_id is not None:
            lock_items(db, [checkout.inventory_id])
        db.refresh(checkout)
        mark_returned(checkout)
        inventory_id = checkout.inventory_id

    logger.info("Checkout %d returned (item %d)", checkout_id, inventory_id)
    publish_inventory_change([inventory_id], "return", checkout_ids=[checkout_id])
    return checkout


def publish_inventory_change(
    inventory_ids: Iterable[int],
    reason: str,
    checkout_ids: Optional[List[int]] = None,
    status: str = RETURNED,
) -> None:
    """Tell observers that availability of some items changed."""
    bus = get_bus()
    ids = sorted(set(inventory_ids))
    bus.publish(INVENTORY_UPDATED, {"inventory_ids": ids, "reason": reason})
    if checkout_ids:
        bus.publish(
            CHECKOUT_STATUS_UPDATED,
            {"checkout_ids": checkout_ids, "inventory_ids": ids, "status": status},
        )
