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

"""Outgoing email notification log."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from facilitydesk.database import Base


class NotificationLog(Base):
    """Requester email notification tracking."""

    __tablename__ = "notification_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # request_received, request_status, ready_for_pickup, request_message
    notification_type = Column(String(100), nullable=False, index=True)
    recipient_email = Column(String(255), nullable=False)
    recipient_name = Column(String(255), nullable=True)
    reference_id = Column(Integer, nullable=True)  # checkout request id
    reference_type = Column(String(50), nullable=True)
    # Rendering context captured at queue time (status, message body, sender)
    context = Column(Text, nullable=True)
    scheduled_for = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    sent_at = Column(DateTime, nullable=True)
    status = Column(String(50), nullable=False, default="pending")  # pending, sent, failed, skipped
    error_message = Column(Text, nullable=True)
    send_attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "notification_type": self.notification_type,
            "recipient_email": self.recipient_email,
            "reference_id": self.reference_id,
            "status": self.status,
            "send_attempts": self.send_attempts,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }

    def __repr__(self):
        return f"<NotificationLog(id={self.id}, type='{self.notification_type}', status='{self.status}')>"
