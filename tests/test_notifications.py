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

"""Requester email delivery and scheduled job tests."""

import asyncio
import threading

import aiosmtplib
import pytest

from facilitydesk import database
from facilitydesk.config import EmailConfig
from facilitydesk.models.checkout import RETURNED, Checkout, CheckoutRequest
from facilitydesk.models.notification import NotificationLog
from facilitydesk.services import email as email_service
from facilitydesk.services import lifecycle
from facilitydesk.services.ledger import request_checkout
from facilitydesk.services.notifications import (
    REQUEST_STATUS,
    process_pending_notifications,
    purge_notification_log,
    queue_request_notification,
)
from facilitydesk.services.scheduler import run_cron_job

from tests.conftest import FROM_DATE, TO_DATE, days_ago

STAFF = "Dana Reyes"


@pytest.fixture
def outbox(settings, monkeypatch):
    """Enable email and capture messages instead of talking to SMTP."""
    settings.email = EmailConfig(
        enabled=True,
        smtp_host="smtp.springfield-high.org",
        from_address="checkout@springfield-high.org",
    )
    monkeypatch.setattr(email_service, "_email_service", None)

    sent = []

    async def fake_send(message, **kwargs):
        sent.append((message, kwargs))
        return {}, "OK"

    monkeypatch.setattr(aiosmtplib, "send", fake_send)
    return sent


def test_pending_notifications_are_delivered(db, outbox, make_item, make_request):
    request_id = make_request({make_item(): 1})
    lifecycle.approve(db, request_id, STAFF)

    stats = asyncio.run(process_pending_notifications(db))

    assert stats == {"sent": 2, "failed": 0}
    assert [m["Subject"] for m, _ in outbox] == [
        "Equipment Checkout Request Received",
        "Equipment Checkout Request Approved",
    ]
    assert all(m["To"] == "alex.kim@springfield-high.org" for m, _ in outbox)
    assert outbox[0][1]["hostname"] == "smtp.springfield-high.org"

    rows = db.query(NotificationLog).all()
    assert all(r.status == "sent" and r.send_attempts == 1 and r.sent_at for r in rows)

    # Nothing left to send
    assert asyncio.run(process_pending_notifications(db)) == {"sent": 0, "failed": 0}
    assert len(outbox) == 2


def _bodies(message):
    return [part.get_payload(decode=True).decode() for part in message.walk() if not part.is_multipart()]


def test_email_links_carry_the_access_token(db, outbox, make_item, make_request):
    request_id = make_request({make_item(): 1})
    lifecycle.approve(db, request_id, STAFF)
    lifecycle.set_ready(db, request_id)
    token = db.get(CheckoutRequest, request_id).access_token

    asyncio.run(process_pending_notifications(db))

    received, ready = outbox[0][0], outbox[-1][0]
    assert ready["Subject"] == "Your Equipment is Ready for Pickup"
    assert all(f"/checkout/request/{request_id}?token={token}" in body for body in _bodies(received))
    assert all(f"/checkout/schedule/{request_id}?token={token}" in body for body in _bodies(ready))


def test_checkouts_proceed_while_email_is_sending(db, settings, monkeypatch, make_item, make_request):
    settings.email = EmailConfig(enabled=True, smtp_host="smtp.springfield-high.org")
    monkeypatch.setattr(email_service, "_email_service", None)
    item_id = make_item(quantity=2)
    make_request({item_id: 1})
    SessionLocal = database.get_session_local()
    results = []

    def checkout_elsewhere():
        session = SessionLocal()
        try:
            request_checkout(session, item_id, 1, "Coach Patel", FROM_DATE, TO_DATE)
            results.append("ok")
        except Exception as e:  # recorded so the assertion shows it
            results.append(repr(e))
        finally:
            session.close()

    async def slow_send(message, **kwargs):
        worker = threading.Thread(target=checkout_elsewhere)
        worker.start()
        worker.join()
        return {}, "OK"

    monkeypatch.setattr(aiosmtplib, "send", slow_send)

    stats = asyncio.run(process_pending_notifications(db))

    assert results == ["ok"]
    assert stats == {"sent": 1, "failed": 0}
    db.expire_all()
    assert db.query(Checkout).filter(Checkout.inventory_id == item_id).count() == 1
    assert db.query(NotificationLog).one().status == "sent"


def test_denial_reason_reaches_the_email(db, outbox, make_item, make_request):
    request_id = make_request({make_item(): 1})
    lifecycle.deny(db, request_id, "All projectors are booked for exams", STAFF)

    asyncio.run(process_pending_notifications(db))

    message, _ = outbox[-1]
    assert message["Subject"] == "Equipment Checkout Request Denied"
    bodies = _bodies(message)
    assert len(bodies) == 2
    assert all("All projectors are booked for exams" in body for body in bodies)


def test_failed_delivery_is_recorded(db, settings, monkeypatch, make_item, make_request):
    settings.email = EmailConfig(enabled=True, smtp_host="smtp.springfield-high.org")
    monkeypatch.setattr(email_service, "_email_service", None)

    async def refuse(message, **kwargs):
        raise aiosmtplib.SMTPConnectError("Connection refused")

    monkeypatch.setattr(aiosmtplib, "send", refuse)
    make_request({make_item(): 1})

    stats = asyncio.run(process_pending_notifications(db))

    assert stats == {"sent": 0, "failed": 1}
    row = db.query(NotificationLog).one()
    assert row.status == "failed"
    assert "Connection refused" in row.error_message
    assert row.send_attempts == 1


def test_processing_is_skipped_when_email_disabled(db):
    assert asyncio.run(process_pending_notifications(db)) == {"skipped": "Email disabled"}


def test_unknown_notification_type_is_rejected(db, settings, make_item, make_request):
    settings.email = EmailConfig(enabled=True)
    request_id = make_request({make_item(): 1})
    request = db.get(CheckoutRequest, request_id)

    with pytest.raises(ValueError):
        queue_request_notification(db, request, "weekly_digest")
    db.rollback()


def test_purge_keeps_pending_and_recent_rows(db):
    def add(status, age_days):
        db.add(
            NotificationLog(
                notification_type=REQUEST_STATUS,
                recipient_email="alex.kim@springfield-high.org",
                status=status,
                created_at=days_ago(age_days),
            )
        )

    add("sent", 45)
    add("failed", 45)
    add("pending", 45)
    add("sent", 5)
    db.commit()

    assert purge_notification_log(db) == 2
    remaining = sorted((r.status, r.created_at > days_ago(10)) for r in db.query(NotificationLog).all())
    assert remaining == [("pending", False), ("sent", True)]


def test_unknown_job_key(db):
    with pytest.raises(ValueError):
        asyncio.run(run_cron_job("rebuild_search_index", db))


def test_daily_cleanup_job(db, make_item, approved_request):
    request_id = approved_request({make_item(): 1})
    lifecycle.mark_picked_up(db, request_id, STAFF)
    lifecycle.return_request(db, request_id)
    for checkout in db.query(Checkout).filter(Checkout.request_id == request_id).all():
        checkout.returned_at = days_ago(90)
    db.commit()

    result = asyncio.run(run_cron_job("daily_cleanup", db))

    assert result["requests"] == {"deleted": 1, "request_ids": [request_id]}
    assert result["notification_logs_deleted"] == 0
    assert db.query(CheckoutRequest).count() == 0
    assert db.query(Checkout).filter(Checkout.status == RETURNED).count() == 1
