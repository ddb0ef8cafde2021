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

"""Requester email notifications for checkout requests."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from facilitydesk.config import get_settings
from facilitydesk.database import write_transaction
from facilitydesk.models.checkout import CheckoutRequest
from facilitydesk.models.notification import NotificationLog
from facilitydesk.services.email import get_email_service

logger = logging.getLogger(__name__)

REQUEST_RECEIVED = "request_received"
REQUEST_STATUS = "request_status"
READY_FOR_PICKUP = "ready_for_pickup"
REQUEST_MESSAGE = "request_message"

NOTIFICATION_TYPES = (REQUEST_RECEIVED, REQUEST_STATUS, READY_FOR_PICKUP, REQUEST_MESSAGE)


def queue_request_notification(
    db: Session,
    request: CheckoutRequest,
    notification_type: str,
    context: Optional[Dict[str, Any]] = None,
) -> Optional[NotificationLog]:
    """Queue an email to the requester.

    Nothing is queued when email is disabled. The row is added to the
    session and committed together with the caller's transaction.

    Args:
        db: Database session
        request: Checkout request the email is about
        notification_type: One of ``NOTIFICATION_TYPES``
        context: Values needed to render the email later (status, message)
    """
    settings = get_settings()

    if not settings.email.enabled:
        return None

    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {notification_type}")

    if not request.requester_email:
        return None

    # Links in the email open the request with its access token
    payload = dict(context or {})
    payload["access_token"] = request.access_token

    notification = NotificationLog(
        notification_type=notification_type,
        recipient_email=request.requester_email,
        recipient_name=request.requester_name,
        reference_id=request.id,
        reference_type="checkout_request",
        context=json.dumps(payload),
        scheduled_for=datetime.utcnow(),
        status="pending",
    )
    db.add(notification)
    return notification


@dataclass(frozen=True)
class PendingEmail:
    """What delivery needs from a queued row, read before sending."""

    id: int
    notification_type: str
    recipient_email: str
    recipient_name: Optional[str]
    reference_id: Optional[int]
    context: Dict[str, Any]

    @classmethod
    def from_row(cls, notification: NotificationLog) -> "PendingEmail":
        return cls(
            id=notification.id,
            notification_type=notification.notification_type,
            recipient_email=notification.recipient_email,
            recipient_name=notification.recipient_name,
            reference_id=notification.reference_id,
            context=json.loads(notification.context) if notification.context else {},
        )


async def _deliver(pending: PendingEmail) -> None:
    email_service = get_email_service()
    context = pending.context
    email = pending.recipient_email
    name = pending.recipient_name or email
    request_id = pending.reference_id
    access_token = context.get("access_token")

    if pending.notification_type == REQUEST_RECEIVED:
        await email_service.send_request_received(
            email=email, name=name, request_id=request_id, access_token=access_token
        )
    elif pending.notification_type == REQUEST_STATUS:
        await email_service.send_status_update(
            email=email,
            name=name,
            request_id=request_id,
            status=context.get("status", ""),
            message=context.get("message"),
        )
    elif pending.notification_type == READY_FOR_PICKUP:
        await email_service.send_ready_for_pickup(
            email=email, name=name, request_id=request_id, access_token=access_token
        )
    elif pending.notification_type == REQUEST_MESSAGE:
        await email_service.send_request_message(
            email=email,
            name=name,
            request_id=request_id,
            sender_name=context.get("sender_name", "Staff"),
            message=context.get("message", ""),
            access_token=access_token,
        )
    else:
        raise ValueError(f"Unknown notification type: {pending.notification_type}")


def _record_attempt(db: Session, notification_id: int, error: Optional[str] = None) -> None:
    with write_transaction(db):
        notification = db.get(NotificationLog, notification_id)
        if notification is None:
            return
        notification.send_attempts += 1
        if error is None:
            notification.status = "sent"
            notification.sent_at = datetime.utcnow()
        else:
            notification.status = "failed"
            notification.error_message = error


async def process_pending_notifications(db: Session) -> dict:
    """Send all pending notifications that are due.

    The batch is read and its transaction closed before any SMTP traffic.
    Each outcome is then written in its own short transaction.

    Returns:
        Statistics about processed notifications.
    """
    settings = get_settings()

    if not settings.email.enabled:
        return {"skipped": "Email disabled"}

    now = datetime.utcnow()

    rows = (
        db.query(NotificationLog)
        .filter(
            NotificationLog.status == "pending",
            NotificationLog.scheduled_for <= now,
        )
        .order_by(NotificationLog.id)
        .limit(100)  # Process in batches
        .all()
    )
    batch = [PendingEmail.from_row(row) for row in rows]
    db.commit()

    stats = {"sent": 0, "failed": 0}

    for pending in batch:
        try:
            await _deliver(pending)
        except Exception as e:
            logger.warning("Notification %d to %s failed: %s", pending.id, pending.recipient_email, e)
            _record_attempt(db, pending.id, error=str(e))
            stats["failed"] += 1
            continue

        _record_attempt(db, pending.id)
        stats["sent"] += 1

    return stats


def purge_notification_log(db: Session, now: Optional[datetime] = None) -> int:
    """Delete finished notification rows older than the retention period."""
    settings = get_settings()
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=settings.scheduler.notification_log_retention_days)

    with write_transaction(db):
        deleted = (
            db.query(NotificationLog)
            .filter(
                NotificationLog.created_at < cutoff,
                NotificationLog.status.in_(["sent", "skipped", "failed"]),
            )
            .delete(synchronize_session=False)
        )
    return deleted
