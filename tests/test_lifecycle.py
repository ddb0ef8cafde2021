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

"""Checkout request lifecycle tests."""

from datetime import date, datetime, timedelta

import pytest

from facilitydesk.config import CheckoutConfig, EmailConfig
from facilitydesk.exceptions import (
    AlreadyReturned,
    InsufficientAvailability,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from facilitydesk.models.checkout import RETURNED, Checkout, CheckoutRequest
from facilitydesk.models.inventory import InventoryItem
from facilitydesk.models.notification import NotificationLog
from facilitydesk.services import lifecycle
from facilitydesk.services.bus import CHECKOUT_REQUEST_UPDATED, get_bus
from facilitydesk.services.ledger import CheckoutLine, compute_available, request_checkout

from tests.conftest import FROM_DATE, TO_DATE, days_ago, reload_request

STAFF = "Dana Reyes"


def _available(db, item_id):
    db.expire_all()
    item = db.get(InventoryItem, item_id)
    return compute_available(item, item.checkouts)


# Submission


def test_submission_records_purpose_as_first_message(db, make_item, make_request):
    item_id = make_item()
    request_id = make_request({item_id: 2}, purpose="Spring concert")

    request = reload_request(db, request_id)
    assert request.status == "unseen"
    assert request.stage == "unseen"
    assert [(i.inventory_id, i.quantity) for i in request.items] == [(item_id, 2)]
    assert len(request.messages) == 1
    assert request.messages[0].sender_type == "requester"
    assert request.messages[0].message == "Spring concert"
    assert request.checkouts == []


def test_submission_without_purpose_gets_default_message(db, make_item, make_request):
    request_id = make_request({make_item(): 1})
    assert reload_request(db, request_id).messages[0].message == "Checkout request submitted"


def test_submission_reserves_nothing(db, make_item, make_request):
    item_id = make_item(quantity=2)
    make_request({item_id: 2})
    make_request({item_id: 2})

    assert _available(db, item_id) == 2


def test_submission_validation(db, make_item):
    enabled = make_item(quantity=2)
    disabled = make_item(name="Lab laptop", checkout_enabled=False)

    def submit(lines, name="Alex Kim", email="alex.kim@springfield-high.org"):
        return lifecycle.create_request(db, name, email, lines)

    with pytest.raises(ValidationError):
        submit([CheckoutLine(enabled, 1, FROM_DATE, TO_DATE)], name="")
    with pytest.raises(ValidationError):
        submit([])
    with pytest.raises(ValidationError):
        submit([CheckoutLine(enabled, 0, FROM_DATE, TO_DATE)])
    with pytest.raises(ValidationError):
        submit([CheckoutLine(enabled, 1, TO_DATE, FROM_DATE)])
    with pytest.raises(ValidationError):
        submit([CheckoutLine(disabled, 1, FROM_DATE, TO_DATE)])
    with pytest.raises(NotFound):
        submit([CheckoutLine(9999, 1, FROM_DATE, TO_DATE)])
    with pytest.raises(InsufficientAvailability):
        submit([CheckoutLine(enabled, 3, FROM_DATE, TO_DATE)])

    assert db.query(CheckoutRequest).count() == 0


# Status transitions


def test_seen_is_idempotent(db, make_item, make_request):
    request_id = make_request({make_item(): 1})

    lifecycle.mark_seen(db, request_id, STAFF)
    lifecycle.mark_seen(db, request_id, STAFF)

    assert reload_request(db, request_id).status == "seen"


def test_approve_records_approver(db, make_item, make_request):
    request_id = make_request({make_item(): 1})
    lifecycle.mark_seen(db, request_id, STAFF)

    lifecycle.approve(db, request_id, STAFF)

    request = reload_request(db, request_id)
    assert request.status == "approved"
    assert request.approved_by == STAFF
    assert request.approved_at is not None
    assert request.checkouts == []


def test_denial_requires_reason(db, make_item, make_request):
    request_id = make_request({make_item(): 1})

    for reason in (None, "", "   "):
        with pytest.raises(ValidationError):
            lifecycle.deny(db, request_id, reason, STAFF)

    request = reload_request(db, request_id)
    assert request.status == "unseen"
    assert len(request.messages) == 1


def test_denial_appends_staff_message(db, make_item, make_request):
    request_id = make_request({make_item(): 1})

    lifecycle.deny(db, request_id, "Projector is booked for exams", STAFF, "dana@springfield-high.org")

    request = reload_request(db, request_id)
    assert request.status == "denied"
    last = request.messages[-1]
    assert last.sender_type == "admin"
    assert last.sender_name == STAFF
    assert last.message == "Projector is booked for exams"


def test_denied_stays_denied_without_confirmation(db, make_item, make_request):
    request_id = make_request({make_item(): 1})
    lifecycle.deny(db, request_id, "Not this week", STAFF)

    with pytest.raises(InvalidTransition):
        lifecycle.approve(db, request_id, STAFF)
    with pytest.raises(InvalidTransition):
        lifecycle.deny(db, request_id, "Again", STAFF)
    with pytest.raises(InvalidTransition):
        lifecycle.mark_seen(db, request_id, STAFF)

    assert reload_request(db, request_id).status == "denied"

    lifecycle.approve(db, request_id, STAFF, confirm_reapproval=True)
    assert reload_request(db, request_id).status == "approved"


def test_reapproval_can_be_disabled(db, settings, make_item, make_request):
    settings.checkout = CheckoutConfig(allow_reapproval=False)
    request_id = make_request({make_item(): 1})
    lifecycle.deny(db, request_id, "No", STAFF)

    with pytest.raises(InvalidTransition):
        lifecycle.approve(db, request_id, STAFF, confirm_reapproval=True)


def test_approved_request_cannot_be_denied(db, make_item, approved_request):
    request_id = approved_request({make_item(): 1})

    with pytest.raises(InvalidTransition):
        lifecycle.deny(db, request_id, "Changed my mind", STAFF)

    assert reload_request(db, request_id).status == "approved"


def test_ready_requires_approval(db, make_item, make_request):
    request_id = make_request({make_item(): 1})

    with pytest.raises(InvalidTransition):
        lifecycle.set_ready(db, request_id)

    lifecycle.approve(db, request_id, STAFF)
    lifecycle.set_ready(db, request_id)

    request = reload_request(db, request_id)
    assert request.ready_for_pickup is True
    assert request.stage == "ready_for_pickup"
    assert request.checkouts == []


def test_schedule_pickup(db, make_item, approved_request):
    request_id = approved_request({make_item(): 1})

    with pytest.raises(InvalidTransition):
        lifecycle.schedule_pickup(db, request_id, date(2030, 3, 2), "08:30", "Front office")

    lifecycle.set_ready(db, request_id)

    with pytest.raises(ValidationError):
        lifecycle.schedule_pickup(db, request_id, date(2030, 3, 2), "", "Front office")

    lifecycle.schedule_pickup(db, request_id, date(2030, 3, 2), "08:30", "Front office")

    request = reload_request(db, request_id)
    assert request.pickup_date == date(2030, 3, 2)
    assert request.pickup_time == "08:30"
    assert request.pickup_location == "Front office"


def test_schedule_pickup_checks_access_token(db, make_item, approved_request):
    request_id = approved_request({make_item(): 1})
    lifecycle.set_ready(db, request_id)
    token = reload_request(db, request_id).access_token

    with pytest.raises(NotFound):
        lifecycle.schedule_pickup(db, request_id, date(2030, 3, 2), "08:30", "Front office", access_token="guess")

    lifecycle.schedule_pickup(db, request_id, date(2030, 3, 2), "08:30", "Front office", access_token=token)
    assert reload_request(db, request_id).pickup_location == "Front office"


# Pickup and return


def test_pickup_requires_approval(db, make_item, make_request):
    request_id = make_request({make_item(): 1})

    with pytest.raises(InvalidTransition):
        lifecycle.mark_picked_up(db, request_id, STAFF)

    assert db.query(Checkout).count() == 0


def test_pickup_creates_checkouts_for_every_line(db, make_item, approved_request):
    camera = make_item(name="Camera", quantity=3)
    tripod = make_item(name="Tripod", quantity=2)
    request_id = approved_request({camera: 2, tripod: 1})

    lifecycle.mark_picked_up(db, request_id, STAFF)

    request = reload_request(db, request_id)
    assert request.picked_up is True
    assert request.picked_up_at is not None
    assert request.stage == "picked_up"
    assert len(request.checkouts) == 3
    assert all(c.checked_out_by == "Alex Kim" for c in request.checkouts)
    assert all(c.from_date == FROM_DATE and c.due_date == TO_DATE for c in request.checkouts)
    assert _available(db, camera) == 1
    assert _available(db, tripod) == 1


def test_pickup_is_all_or_nothing(db, make_item, approved_request):
    camera = make_item(name="Camera", quantity=3)
    tripod = make_item(name="Tripod", quantity=2)
    request_id = approved_request({camera: 2, tripod: 2})

    # Someone else takes a tripod after approval
    request_checkout(db, tripod, 1, "Walk-in", FROM_DATE, TO_DATE)

    with pytest.raises(InsufficientAvailability) as exc_info:
        lifecycle.mark_picked_up(db, request_id, STAFF)

    assert [s["name"] for s in exc_info.value.shortages] == ["Tripod"]
    request = reload_request(db, request_id)
    assert request.picked_up is False
    assert request.checkouts == []
    assert _available(db, camera) == 3


def test_picked_up_request_is_terminal(db, make_item, approved_request):
    request_id = approved_request({make_item(): 1})
    lifecycle.mark_picked_up(db, request_id, STAFF)

    with pytest.raises(InvalidTransition):
        lifecycle.mark_picked_up(db, request_id, STAFF)
    with pytest.raises(InvalidTransition):
        lifecycle.deny(db, request_id, "Too late", STAFF)
    with pytest.raises(InvalidTransition):
        lifecycle.approve(db, request_id, STAFF)
    with pytest.raises(InvalidTransition):
        lifecycle.set_ready(db, request_id, False)

    request = reload_request(db, request_id)
    assert request.status == "approved"
    assert len(request.checkouts) == 1


def test_return_request_frees_all_units(db, make_item, approved_request):
    item_id = make_item(quantity=4)
    request_id = approved_request({item_id: 3})
    lifecycle.mark_picked_up(db, request_id, STAFF)
    assert _available(db, item_id) == 1

    lifecycle.return_request(db, request_id)

    request = reload_request(db, request_id)
    assert request.is_returned is True
    assert request.stage == "returned"
    assert all(c.status == RETURNED for c in request.checkouts)
    assert _available(db, item_id) == 4

    with pytest.raises(AlreadyReturned):
        lifecycle.return_request(db, request_id)


def test_return_before_pickup_is_rejected(db, make_item, approved_request):
    request_id = approved_request({make_item(): 1})

    with pytest.raises(InvalidTransition):
        lifecycle.return_request(db, request_id)


# Messages


def test_messages_in_any_state(db, make_item, make_request):
    request_id = make_request({make_item(): 1})
    lifecycle.deny(db, request_id, "Booked", STAFF)

    lifecycle.add_message(db, request_id, "Try again next week", STAFF)

    request = reload_request(db, request_id)
    assert request.status == "denied"
    assert request.messages[-1].message == "Try again next week"

    with pytest.raises(ValidationError):
        lifecycle.add_message(db, request_id, "  ", STAFF)


def test_requester_reply_is_not_emailed(db, settings, make_item, make_request):
    settings.email = EmailConfig(enabled=True, smtp_host="smtp.springfield-high.org")
    request_id = make_request({make_item(): 1})
    token = reload_request(db, request_id).access_token

    entry = lifecycle.add_requester_message(db, request_id, token, "Could I pick it up at lunch?")

    assert entry.sender_type == "requester"
    assert entry.sender_name == "Alex Kim"
    assert entry.sender_email == "alex.kim@springfield-high.org"
    types = [r.notification_type for r in db.query(NotificationLog).all()]
    assert types == ["request_received"]

    with pytest.raises(NotFound):
        lifecycle.add_requester_message(db, request_id, "guess", "Hello")
    with pytest.raises(NotFound):
        lifecycle.add_requester_message(db, request_id, "", "Hello")
    with pytest.raises(ValidationError):
        lifecycle.add_requester_message(db, request_id, token, "   ")
    assert len(reload_request(db, request_id).messages) == 2


# Combined staff update


def test_update_applies_fields_in_order(db, make_item, make_request):
    item_id = make_item(quantity=2)
    request_id = make_request({item_id: 2})

    update = lifecycle.RequestUpdate(
        status="approved",
        ready_for_pickup=True,
        pickup_date=date(2030, 3, 2),
        pickup_time="10:00",
        pickup_location="Gym storage",
        picked_up=True,
        message="Handed over at the gym",
    )
    lifecycle.apply_update(db, request_id, update, STAFF)

    request = reload_request(db, request_id)
    assert request.status == "approved"
    assert request.picked_up is True
    assert request.pickup_location == "Gym storage"
    assert len(request.checkouts) == 2
    assert request.messages[-1].message == "Handed over at the gym"
    assert _available(db, item_id) == 0


def test_update_denial_uses_message_as_reason(db, make_item, make_request):
    request_id = make_request({make_item(): 1})

    with pytest.raises(ValidationError):
        lifecycle.apply_update(db, request_id, lifecycle.RequestUpdate(status="denied"), STAFF)

    lifecycle.apply_update(
        db, request_id, lifecycle.RequestUpdate(status="denied", message="Out for repair"), STAFF
    )

    request = reload_request(db, request_id)
    assert request.status == "denied"
    assert [m.message for m in request.messages].count("Out for repair") == 1


def test_update_failure_rolls_back_everything(db, make_item, make_request):
    item_id = make_item(quantity=1)
    request_id = make_request({item_id: 1})
    request_checkout(db, item_id, 1, "Walk-in", FROM_DATE, TO_DATE)

    with pytest.raises(InsufficientAvailability):
        lifecycle.apply_update(
            db, request_id, lifecycle.RequestUpdate(status="approved", picked_up=True), STAFF
        )

    request = reload_request(db, request_id)
    assert request.status == "unseen"
    assert request.picked_up is False


def test_pickup_cannot_be_undone(db, make_item, approved_request):
    request_id = approved_request({make_item(): 1})
    lifecycle.mark_picked_up(db, request_id, STAFF)

    with pytest.raises(InvalidTransition):
        lifecycle.apply_update(db, request_id, lifecycle.RequestUpdate(picked_up=False), STAFF)


def test_unknown_status_is_rejected(db, make_item, make_request):
    request_id = make_request({make_item(): 1})

    with pytest.raises(ValidationError):
        lifecycle.apply_update(db, request_id, lifecycle.RequestUpdate(status="archived"), STAFF)


# Deletion


def test_delete_request_cascades_messages(db, make_item, make_request):
    request_id = make_request({make_item(): 1}, purpose="Assembly")

    lifecycle.delete_request(db, request_id)

    with pytest.raises(NotFound):
        lifecycle.get_request(db, request_id)


def test_delete_with_live_checkouts_needs_cascade(db, make_item, approved_request):
    item_id = make_item(quantity=2)
    request_id = approved_request({item_id: 2})
    lifecycle.mark_picked_up(db, request_id, STAFF)

    with pytest.raises(InvalidTransition):
        lifecycle.delete_request(db, request_id)

    lifecycle.delete_request(db, request_id, cascade=True)

    db.expire_all()
    checkouts = db.query(Checkout).filter(Checkout.inventory_id == item_id).all()
    assert len(checkouts) == 2
    assert all(c.status == RETURNED and c.request_id is None for c in checkouts)
    assert _available(db, item_id) == 2


def test_delete_unknown_request(db):
    with pytest.raises(NotFound):
        lifecycle.delete_request(db, 12345)


# Retention cleanup


def _returned_request(db, make_item, approved_request, returned_days_ago):
    request_id = approved_request({make_item(): 1})
    lifecycle.mark_picked_up(db, request_id, STAFF)
    lifecycle.return_request(db, request_id)
    for checkout in db.query(Checkout).filter(Checkout.request_id == request_id):
        checkout.returned_at = days_ago(returned_days_ago)
    db.commit()
    return request_id


def test_cleanup_deletes_only_old_returned_requests(db, make_item, approved_request, make_request):
    old = _returned_request(db, make_item, approved_request, 90)
    recent = _returned_request(db, make_item, approved_request, 10)
    pending = make_request({make_item(): 1})

    candidates = lifecycle.find_cleanup_candidates(db)
    assert [r.id for r in candidates] == [old]

    result = lifecycle.cleanup_returned_requests(db)

    assert result == {"deleted": 1, "request_ids": [old]}
    remaining = {r.id for r in db.query(CheckoutRequest).all()}
    assert remaining == {recent, pending}
    # Checkout history survives the purge
    assert db.query(Checkout).filter(Checkout.status == RETURNED).count() == 2


def test_cleanup_keeps_requests_with_equipment_out(db, make_item, approved_request):
    request_id = approved_request({make_item(quantity=2): 2})
    lifecycle.mark_picked_up(db, request_id, STAFF)
    first = db.query(Checkout).filter(Checkout.request_id == request_id).first()
    first.status = RETURNED
    first.returned_at = days_ago(200)
    db.commit()

    assert lifecycle.find_cleanup_candidates(db, now=datetime.utcnow() + timedelta(days=365)) == []


def _delete_item(db, item_id):
    db.expire_all()
    db.delete(db.get(InventoryItem, item_id))
    db.commit()


def test_returned_request_survives_item_deletion(db, make_item, approved_request):
    request_id = _returned_request(db, make_item, approved_request, 90)
    item_id = db.query(Checkout).filter(Checkout.request_id == request_id).one().inventory_id

    _delete_item(db, item_id)

    request = reload_request(db, request_id)
    assert request.is_returned
    assert request.stage == "returned"
    assert [c.inventory_id for c in request.checkouts] == [None]
    assert [r.id for r in lifecycle.find_cleanup_candidates(db)] == [request_id]


def test_open_requests_for_item(db, make_item, make_request, approved_request):
    item_id = make_item(quantity=5)
    waiting = make_request({item_id: 1})
    approved = approved_request({item_id: 1})
    denied = make_request({item_id: 1})
    lifecycle.deny(db, denied, "Not this week", STAFF)
    picked_up = approved_request({item_id: 1})
    lifecycle.mark_picked_up(db, picked_up, STAFF)

    assert lifecycle.open_requests_for_item(db, item_id) == [waiting, approved]


def test_denied_request_for_deleted_item_cannot_be_reapproved(db, make_item, make_request):
    item_id = make_item()
    request_id = make_request({item_id: 1})
    lifecycle.deny(db, request_id, "Projector is being repaired", STAFF)

    _delete_item(db, item_id)

    with pytest.raises(ValidationError):
        lifecycle.approve(db, request_id, STAFF, confirm_reapproval=True)
    request = reload_request(db, request_id)
    assert request.status == "denied"
    assert [line.inventory_id for line in request.items] == [None]


# Notifications


def test_transitions_publish_request_updates(db, make_item, make_request):
    seen = []
    get_bus().subscribe(CHECKOUT_REQUEST_UPDATED, lambda topic, payload: seen.append(payload))

    request_id = make_request({make_item(): 1})
    lifecycle.mark_seen(db, request_id, STAFF)
    lifecycle.mark_seen(db, request_id, STAFF)
    lifecycle.approve(db, request_id, STAFF)
    lifecycle.mark_picked_up(db, request_id, STAFF)

    assert [p["action"] for p in seen] == ["created", "status", "status", "picked_up"]
    assert all(p["request_id"] == request_id for p in seen)


def test_emails_are_queued_when_enabled(db, settings, make_item, make_request):
    settings.email = EmailConfig(enabled=True, smtp_host="smtp.springfield-high.org")
    request_id = make_request({make_item(): 1})
    lifecycle.approve(db, request_id, STAFF)
    lifecycle.set_ready(db, request_id)
    lifecycle.add_message(db, request_id, "Bring your ID", STAFF)

    rows = db.query(NotificationLog).order_by(NotificationLog.id).all()
    assert [r.notification_type for r in rows] == [
        "request_received",
        "request_status",
        "ready_for_pickup",
        "request_message",
    ]
    assert all(r.recipient_email == "alex.kim@springfield-high.org" for r in rows)
    assert all(r.reference_id == request_id and r.status == "pending" for r in rows)


def test_no_emails_queued_when_disabled(db, make_item, make_request):
    request_id = make_request({make_item(): 1})
    lifecycle.approve(db, request_id, STAFF)

    assert db.query(NotificationLog).count() == 0
