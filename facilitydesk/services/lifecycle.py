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

"""Checkout request lifecycle.

A request moves unseen -> seen -> approved or denied, then (approved only)
ready for pickup -> picked up -> returned. Units are only reserved at
pickup, through the availability ledger, all lines or none. Each public
function that writes is one ``write_transaction``: it commits on success,
rolls back on any error and publishes ``checkout_request_updated`` after
the commit.
"""

import logging
import secrets
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, selectinload

from facilitydesk.config import get_settings
from facilitydesk.database import write_transaction
from facilitydesk.exceptions import (
    AlreadyReturned,
    InsufficientAvailability,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from facilitydesk.models.checkout import (
    CHECKED_OUT,
    REQUEST_STATUSES,
    Checkout,
    CheckoutRequest,
    CheckoutRequestItem,
    CheckoutRequestMessage,
    new_access_token,
)
from facilitydesk.models.inventory import InventoryItem
from facilitydesk.services import notifications
from facilitydesk.services.bus import CHECKOUT_REQUEST_UPDATED, get_bus
from facilitydesk.services.ledger import (
    CheckoutLine,
    active_checkouts,
    compute_available,
    lock_items,
    mark_returned,
    publish_inventory_change,
    reserve_lines,
)
from facilitydesk.utils.helpers import sanitize_input, sanitize_message

logger = logging.getLogger(__name__)

SENDER_TYPES = ("requester", "admin")


@dataclass
class RequestUpdate:
    """Fields accepted by a staff update, applied in declaration order."""

    status: Optional[str] = None
    ready_for_pickup: Optional[bool] = None
    pickup_date: Optional[date] = None
    pickup_time: Optional[str] = None
    pickup_location: Optional[str] = None
    picked_up: Optional[bool] = None
    message: Optional[str] = None
    confirm_reapproval: bool = False

    @property
    def has_pickup_schedule(self) -> bool:
        return any(v is not None for v in (self.pickup_date, self.pickup_time, self.pickup_location))


def publish_request_change(request_id: int, action: str, status: Optional[str] = None) -> None:
    get_bus().publish(
        CHECKOUT_REQUEST_UPDATED,
        {"request_id": request_id, "action": action, "status": status},
    )


def get_request(db: Session, request_id: int, for_update: bool = False) -> CheckoutRequest:
    """Load a checkout request.

    Raises:
        NotFound: if the request does not exist.
    """
    query = db.query(CheckoutRequest).filter(CheckoutRequest.id == request_id)
    if for_update:
        query = query.populate_existing().with_for_update()
    request = query.first()
    if not request:
        raise NotFound("Checkout request not found")
    return request


def verify_access_token(request: CheckoutRequest, token: Optional[str]) -> None:
    """Check a requester's token; a wrong token looks like a missing request.

    Raises:
        NotFound: if the token is missing or does not match.
    """
    if not token or not secrets.compare_digest(token, request.access_token):
        raise NotFound("Checkout request not found")


def get_request_for_requester(db: Session, request_id: int, token: Optional[str]) -> CheckoutRequest:
    request = get_request(db, request_id)
    verify_access_token(request, token)
    return request


def open_requests_for_item(db: Session, inventory_id: int) -> List[int]:
    """Ids of requests still waiting to pick up the item, oldest first.

    Denied and picked-up requests no longer need the item.
    """
    rows = (
        db.query(CheckoutRequestItem.request_id)
        .join(CheckoutRequest, CheckoutRequest.id == CheckoutRequestItem.request_id)
        .filter(
            CheckoutRequestItem.inventory_id == inventory_id,
            CheckoutRequest.picked_up == False,  # noqa: E712
            CheckoutRequest.status != "denied",
        )
        .distinct()
        .order_by(CheckoutRequestItem.request_id)
        .all()
    )
    return [row.request_id for row in rows]


def _require_items_present(request: CheckoutRequest) -> None:
    if any(line.inventory_id is None for line in request.items):
        raise ValidationError("Request includes equipment that is no longer in inventory")


def list_requests(
    db: Session,
    statuses: Optional[List[str]] = None,
    email: Optional[str] = None,
    ready_for_pickup: Optional[bool] = None,
    picked_up: Optional[bool] = None,
    returned: Optional[bool] = None,
) -> List[CheckoutRequest]:
    """Requests matching the filters, newest first."""
    query = db.query(CheckoutRequest).options(
        selectinload(CheckoutRequest.items).selectinload(CheckoutRequestItem.item),
        selectinload(CheckoutRequest.messages),
        selectinload(CheckoutRequest.checkouts),
    )

    if statuses:
        query = query.filter(CheckoutRequest.status.in_(statuses))
    if email:
        query = query.filter(CheckoutRequest.requester_email == email.strip().lower())
    if ready_for_pickup is not None:
        query = query.filter(CheckoutRequest.ready_for_pickup == ready_for_pickup)
    if picked_up is not None:
        query = query.filter(CheckoutRequest.picked_up == picked_up)

    requests = query.order_by(CheckoutRequest.created_at.desc(), CheckoutRequest.id.desc()).all()

    # Derived from the checkouts, so filtered here
    if returned is not None:
        requests = [r for r in requests if r.is_returned == returned]

    return requests


def _new_message(
    sender_type: str,
    sender_name: str,
    message: str,
    sender_email: Optional[str] = None,
) -> CheckoutRequestMessage:
    return CheckoutRequestMessage(
        sender_type=sender_type,
        sender_name=sender_name,
        sender_email=sender_email,
        message=message,
        created_at=datetime.utcnow(),
    )


def create_request(
    db: Session,
    requester_name: str,
    requester_email: str,
    lines: List[CheckoutLine],
    requester_phone: Optional[str] = None,
    purpose: Optional[str] = None,
) -> CheckoutRequest:
    """Submit a public checkout request.

    Each line is checked against current availability, but nothing is
    reserved until pickup.

    Raises:
        ValidationError: on missing requester details, bad lines or an item
            that is not enabled for checkout.
        NotFound: if an item does not exist.
        InsufficientAvailability: if a line exceeds what is available now.
    """
    settings = get_settings()

    name = sanitize_input(requester_name, max_length=255)
    email = (requester_email or "").strip().lower()
    if not name or not email or not lines:
        raise ValidationError("Name, email, and at least one item are required")

    for line in lines:
        if not line.inventory_id or not line.from_date or not line.due_date:
            raise ValidationError("All items must have inventory_id, quantity, from_date, and to_date")
        if line.quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if line.due_date < line.from_date:
            raise ValidationError("to_date must be on or after from_date")

    wanted: "OrderedDict[int, int]" = OrderedDict()
    for line in lines:
        wanted[line.inventory_id] = wanted.get(line.inventory_id, 0) + line.quantity

    purpose = sanitize_message(purpose, max_length=settings.checkout.max_purpose_length) or None

    with write_transaction(db):
        shortages = []
        for inventory_id, quantity in wanted.items():
            item = db.query(InventoryItem).filter(InventoryItem.id == inventory_id).first()
            if not item:
                raise NotFound(f"Item {inventory_id} not found")
            if not item.checkout_enabled:
                raise ValidationError(f'Item "{item.name}" is not available for checkout')
            available = compute_available(item, active_checkouts(db, inventory_id))
            if quantity > available:
                shortages.append(
                    {"inventory_id": item.id, "name": item.name, "requested": quantity, "available": available}
                )
        if shortages:
            raise InsufficientAvailability(shortages)

        request = CheckoutRequest(
            requester_name=name,
            requester_email=email,
            requester_phone=sanitize_input(requester_phone, max_length=50) or None,
            purpose=purpose,
            status="unseen",
            access_token=new_access_token(),
        )
        for line in lines:
            request.items.append(
                CheckoutRequestItem(
                    inventory_id=line.inventory_id,
                    quantity=line.quantity,
                    from_date=line.from_date,
                    to_date=line.due_date,
                )
            )
        request.messages.append(
            _new_message("requester", name, purpose or "Checkout request submitted", sender_email=email)
        )
        db.add(request)
        db.flush()
        request_id = request.id
        notifications.queue_request_notification(db, request, notifications.REQUEST_RECEIVED)

    logger.info("Checkout request %d submitted by %s (%d line(s))", request_id, email, len(lines))
    publish_request_change(request_id, "created", "unseen")
    return request


def _set_status(
    db: Session,
    request: CheckoutRequest,
    status: str,
    staff_name: str,
    staff_email: Optional[str] = None,
    reason: Optional[str] = None,
    note: Optional[str] = None,
    confirm_reapproval: bool = False,
) -> bool:
    """Apply a status change. Returns False for an allowed no-op."""
    settings = get_settings()

    if status not in REQUEST_STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    if request.picked_up:
        raise InvalidTransition("Request has already been picked up; its status can no longer change")

    current = request.status
    if status == current:
        if status == "denied":
            raise InvalidTransition("Request is already denied")
        return False

    if status == "unseen":
        raise InvalidTransition("A request cannot be moved back to unseen")

    if status == "seen":
        if current != "unseen":
            raise InvalidTransition(f"Cannot mark a {current} request as seen")

    elif status == "approved":
        if current == "denied":
            if not settings.checkout.allow_reapproval:
                raise InvalidTransition("Denied requests cannot be approved")
            if not confirm_reapproval:
                raise InvalidTransition("Request was denied; confirm re-approval to approve it")
        _require_items_present(request)
        request.approved_by = staff_name
        request.approved_at = datetime.utcnow()

    elif status == "denied":
        if current == "approved":
            raise InvalidTransition("Cannot deny an approved request")
        reason = sanitize_message(reason, max_length=settings.checkout.max_message_length)
        if not reason:
            raise ValidationError("A reason is required to deny a request")
        request.messages.append(_new_message("admin", staff_name, reason, sender_email=staff_email))

    request.status = status
    context: Dict[str, Any] = {"status": status}
    if status == "denied":
        context["message"] = reason
    elif note:
        context["message"] = sanitize_message(note, max_length=settings.checkout.max_message_length)
    notifications.queue_request_notification(db, request, notifications.REQUEST_STATUS, context)
    logger.info("Checkout request %d: %s -> %s by %s", request.id, current, status, staff_name)
    return True


def _set_ready(db: Session, request: CheckoutRequest, ready: bool) -> bool:
    if request.picked_up:
        raise InvalidTransition("Request has already been picked up")

    if not ready:
        if not request.ready_for_pickup:
            return False
        request.ready_for_pickup = False
        logger.info("Checkout request %d no longer ready for pickup", request.id)
        return True

    if request.status != "approved":
        raise InvalidTransition("Only approved requests can be marked ready for pickup")
    if request.ready_for_pickup:
        return False

    request.ready_for_pickup = True
    notifications.queue_request_notification(db, request, notifications.READY_FOR_PICKUP)
    logger.info("Checkout request %d ready for pickup", request.id)
    return True


def _schedule(
    request: CheckoutRequest,
    pickup_date: Optional[date],
    pickup_time: Optional[str],
    pickup_location: Optional[str],
    require_all: bool = True,
) -> None:
    if request.picked_up:
        raise InvalidTransition("Request has already been picked up")
    if not request.ready_for_pickup:
        raise InvalidTransition("Request is not ready for pickup")

    pickup_time = sanitize_input(pickup_time, max_length=20) if pickup_time is not None else None
    pickup_location = sanitize_input(pickup_location, max_length=255) if pickup_location is not None else None

    if require_all and not (pickup_date and pickup_time and pickup_location):
        raise ValidationError("Pickup date, time, and location are required")

    if pickup_date is not None:
        request.pickup_date = pickup_date
    if pickup_time:
        request.pickup_time = pickup_time
    if pickup_location:
        request.pickup_location = pickup_location


def _pick_up(db: Session, request: CheckoutRequest, staff_name: str) -> List[int]:
    """Reserve every line of the request. Returns the affected item ids."""
    if request.picked_up:
        raise InvalidTransition("Request has already been picked up")
    if request.status != "approved":
        raise InvalidTransition("Only approved requests can be picked up")
    _require_items_present(request)

    lines = [
        CheckoutLine(line.inventory_id, line.quantity, line.from_date, line.to_date)
        for line in request.items
    ]
    now = datetime.utcnow()
    reserve_lines(
        db,
        lines,
        checked_out_by=request.requester_name,
        request=request,
        notes=f"Picked up from checkout request {request.id}",
        now=now,
    )
    request.picked_up = True
    request.picked_up_at = now
    logger.info("Checkout request %d picked up (%s)", request.id, staff_name)
    return sorted({line.inventory_id for line in lines})


def _return_all(db: Session, request: CheckoutRequest) -> List[int]:
    """Return every live checkout of a request. Returns the affected item ids."""
    inventory_ids = sorted({c.inventory_id for c in request.checkouts if c.inventory_id is not None})
    if inventory_ids:
        lock_items(db, inventory_ids)

    live = (
        db.query(Checkout)
        .filter(Checkout.request_id == request.id, Checkout.status == CHECKED_OUT)
        .order_by(Checkout.id)
        .populate_existing()
        .all()
    )
    now = datetime.utcnow()
    for checkout in live:
        mark_returned(checkout, now=now)
    return sorted({c.inventory_id for c in live if c.inventory_id is not None})


def _append_message(
    db: Session,
    request: CheckoutRequest,
    message: Optional[str],
    sender_type: str,
    sender_name: str,
    sender_email: Optional[str] = None,
    notify: bool = True,
) -> CheckoutRequestMessage:
    settings = get_settings()

    if sender_type not in SENDER_TYPES:
        raise ValidationError(f"Invalid sender type: {sender_type}")
    body = sanitize_message(message, max_length=settings.checkout.max_message_length)
    if not body:
        raise ValidationError("Message cannot be empty")

    entry = _new_message(sender_type, sender_name, body, sender_email=sender_email)
    request.messages.append(entry)

    if notify and sender_type == "admin":
        notifications.queue_request_notification(
            db,
            request,
            notifications.REQUEST_MESSAGE,
            {"sender_name": sender_name, "message": body},
        )
    return entry


def mark_seen(db: Session, request_id: int, staff_name: str) -> CheckoutRequest:
    """unseen -> seen; a no-op when already seen."""
    with write_transaction(db):
        request = get_request(db, request_id, for_update=True)
        changed = _set_status(db, request, "seen", staff_name)
        status = request.status

    if changed:
        publish_request_change(request_id, "status", status)
    return request


def approve(
    db: Session,
    request_id: int,
    staff_name: str,
    confirm_reapproval: bool = False,
) -> CheckoutRequest:
    """Approve a request. Denied requests need ``confirm_reapproval``."""
    with write_transaction(db):
        request = get_request(db, request_id, for_update=True)
        changed = _set_status(db, request, "approved", staff_name, confirm_reapproval=confirm_reapproval)

    if changed:
        publish_request_change(request_id, "status", "approved")
    return request


def deny(
    db: Session,
    request_id: int,
    reason: str,
    staff_name: str,
    staff_email: Optional[str] = None,
) -> CheckoutRequest:
    """Deny a request, recording the reason as a staff message.

    Raises:
        ValidationError: if the reason is empty.
        InvalidTransition: if the request is approved, denied or picked up.
    """
    with write_transaction(db):
        request = get_request(db, request_id, for_update=True)
        _set_status(db, request, "denied", staff_name, staff_email=staff_email, reason=reason)

    publish_request_change(request_id, "status", "denied")
    return request


def set_ready(db: Session, request_id: int, ready: bool = True) -> CheckoutRequest:
    with write_transaction(db):
        request = get_request(db, request_id, for_update=True)
        changed = _set_ready(db, request, ready)

    if changed:
        publish_request_change(request_id, "ready_for_pickup", "approved")
    return request


def schedule_pickup(
    db: Session,
    request_id: int,
    pickup_date: Optional[date],
    pickup_time: Optional[str],
    pickup_location: Optional[str],
    access_token: Optional[str] = None,
) -> CheckoutRequest:
    """Requester picks a pickup slot for a request that is ready.

    When ``access_token`` is given it must match the request's token.
    """
    with write_transaction(db):
        request = get_request(db, request_id, for_update=True)
        if access_token is not None:
            verify_access_token(request, access_token)
        _schedule(request, pickup_date, pickup_time, pickup_location)

    logger.info("Checkout request %d pickup scheduled for %s %s", request_id, pickup_date, pickup_time)
    publish_request_change(request_id, "pickup_scheduled", "approved")
    return request


def mark_picked_up(db: Session, request_id: int, staff_name: str) -> CheckoutRequest:
    """Hand over the equipment of an approved request.

    Creates one checkout per unit for every line in a single transaction.

    Raises:
        InvalidTransition: if the request is not approved or already picked up.
        InsufficientAvailability: listing every line that cannot be met; no
            checkout is created in that case.
    """
    with write_transaction(db):
        request = get_request(db, request_id, for_update=True)
        inventory_ids = _pick_up(db, request, staff_name)

    publish_inventory_change(inventory_ids, "pickup", status=CHECKED_OUT)
    publish_request_change(request_id, "picked_up", "approved")
    return request


def return_request(db: Session, request_id: int) -> CheckoutRequest:
    """Return all equipment still out on a picked-up request.

    Raises:
        InvalidTransition: if the request has not been picked up.
        AlreadyReturned: if nothing is left to return.
    """
    with write_transaction(db):
        request = get_request(db, request_id, for_update=True)
        if not request.picked_up:
            raise InvalidTransition("Request has not been picked up")
        inventory_ids = _return_all(db, request)
        if not inventory_ids:
            raise AlreadyReturned("All equipment for this request has already been returned")

    logger.info("Checkout request %d returned", request_id)
    publish_inventory_change(inventory_ids, "return")
    publish_request_change(request_id, "returned", "approved")
    return request


def add_message(
    db: Session,
    request_id: int,
    message: str,
    sender_name: str,
    sender_type: str = "admin",
    sender_email: Optional[str] = None,
) -> CheckoutRequestMessage:
    """Append a message to a request in any state."""
    with write_transaction(db):
        request = get_request(db, request_id, for_update=True)
        entry = _append_message(db, request, message, sender_type, sender_name, sender_email)

    publish_request_change(request_id, "message")
    return entry


def add_requester_message(
    db: Session,
    request_id: int,
    access_token: str,
    message: str,
) -> CheckoutRequestMessage:
    """Append a reply from the requester, identified by the request's token.

    Staff see it on the request; no email is sent.

    Raises:
        NotFound: if the request does not exist or the token is wrong.
        ValidationError: if the message is empty.
    """
    with write_transaction(db):
        request = get_request(db, request_id, for_update=True)
        verify_access_token(request, access_token)
        sender_email = request.requester_email
        entry = _append_message(
            db,
            request,
            message,
            "requester",
            request.requester_name,
            sender_email=sender_email,
            notify=False,
        )

    logger.info("Checkout request %d: reply from %s", request_id, sender_email)
    publish_request_change(request_id, "message")
    return entry


def apply_update(
    db: Session,
    request_id: int,
    update: RequestUpdate,
    staff_name: str,
    staff_email: Optional[str] = None,
) -> CheckoutRequest:
    """Apply a staff update in one transaction.

    Order: status, ready flag, pickup schedule, picked up, message. When
    the status becomes ``denied`` the message is the denial reason; with
    any other status change it is included in the status email instead of
    a separate message email.
    """
    actions = []
    inventory_ids: List[int] = []

    with write_transaction(db):
        request = get_request(db, request_id, for_update=True)
        message_consumed = False
        status_changed = False

        if update.status is not None:
            reason = update.message if update.status == "denied" else None
            status_changed = _set_status(
                db,
                request,
                update.status,
                staff_name,
                staff_email=staff_email,
                reason=reason,
                note=update.message,
                confirm_reapproval=update.confirm_reapproval,
            )
            if status_changed:
                actions.append("status")
                message_consumed = update.status == "denied"

        if update.ready_for_pickup is not None:
            if _set_ready(db, request, update.ready_for_pickup):
                actions.append("ready_for_pickup")

        if update.has_pickup_schedule:
            _schedule(
                request,
                update.pickup_date,
                update.pickup_time,
                update.pickup_location,
                require_all=False,
            )
            actions.append("pickup_scheduled")

        if update.picked_up is not None:
            if update.picked_up:
                inventory_ids = _pick_up(db, request, staff_name)
                actions.append("picked_up")
            elif request.picked_up:
                raise InvalidTransition("A pickup cannot be undone; return the request instead")

        if update.message and not message_consumed:
            _append_message(
                db,
                request,
                update.message,
                "admin",
                staff_name,
                sender_email=staff_email,
                notify=not status_changed,
            )
            actions.append("message")

        status = request.status

    if inventory_ids:
        publish_inventory_change(inventory_ids, "pickup", status=CHECKED_OUT)
    for action in actions:
        publish_request_change(request_id, action, status)
    return request


def delete_request(db: Session, request_id: int, cascade: bool = False) -> None:
    """Hard delete a request with its items and messages.

    A request with equipment still out is only deleted with ``cascade``,
    which returns that equipment first. Checkout history survives with
    its request link cleared.

    Raises:
        InvalidTransition: if equipment is still out and ``cascade`` is False.
    """
    with write_transaction(db):
        request = get_request(db, request_id, for_update=True)
        inventory_ids: List[int] = []
        if request.has_live_checkouts:
            if not cascade:
                raise InvalidTransition(
                    "Request has equipment still checked out; return it first or delete with cascade"
                )
            inventory_ids = _return_all(db, request)
        db.delete(request)

    logger.info("Checkout request %d deleted", request_id)
    if inventory_ids:
        publish_inventory_change(inventory_ids, "return")
    publish_request_change(request_id, "deleted")


def find_cleanup_candidates(db: Session, now: Optional[datetime] = None) -> List[CheckoutRequest]:
    """Returned requests whose last return is older than the retention period."""
    settings = get_settings()
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=settings.checkout.request_retention_days)

    picked_up = (
        db.query(CheckoutRequest)
        .options(selectinload(CheckoutRequest.checkouts))
        .filter(CheckoutRequest.picked_up == True)  # noqa: E712
        .order_by(CheckoutRequest.id)
        .all()
    )

    candidates = []
    for request in picked_up:
        if not request.is_returned:
            continue
        last_return = max(c.returned_at for c in request.checkouts if c.returned_at)
        if last_return < cutoff:
            candidates.append(request)
    return candidates


def cleanup_returned_requests(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Delete returned requests past the retention period."""
    with write_transaction(db):
        candidates = find_cleanup_candidates(db, now)
        request_ids = [r.id for r in candidates]
        for request in candidates:
            db.delete(request)

    if request_ids:
        logger.info("Cleaned up %d returned checkout request(s)", len(request_ids))
    for request_id in request_ids:
        publish_request_change(request_id, "deleted")
    return {"deleted": len(request_ids), "request_ids": request_ids}
