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

"""Checkout, checkout request and request message models."""

import secrets
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from facilitydesk.database import Base

CHECKED_OUT = "checked_out"
RETURNED = "returned"

REQUEST_STATUSES = ("unseen", "seen", "approved", "denied")


def new_access_token() -> str:
    """Unguessable token that lets a requester open their own request."""
    return secrets.token_urlsafe(24)


class Checkout(Base):
    """Single-unit loan of an inventory item."""

    __tablename__ = "checkouts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Cleared when the item is deleted; the loan history stays
    inventory_id = Column(
        Integer, ForeignKey("inventory_items.id", ondelete="SET NULL"), nullable=True, index=True
    )
    request_id = Column(
        Integer, ForeignKey("checkout_requests.id", ondelete="SET NULL"), nullable=True, index=True
    )
    checked_out_by = Column(String(255), nullable=False)
    checked_out_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    from_date = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=True)
    status = Column(String(50), nullable=False, default=CHECKED_OUT, index=True)
    returned_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('checked_out', 'returned')", name="ck_checkout_status"),
    )

    # Relationships
    item = relationship("InventoryItem", back_populates="checkouts")
    request = relationship("CheckoutRequest", back_populates="checkouts")

    @property
    def is_returned(self) -> bool:
        return self.status == RETURNED

    def to_dict(self, include_item: bool = True) -> dict:
        """Convert to dictionary."""
        result = {
            "id": self.id,
            "inventory_id": self.inventory_id,
            "request_id": self.request_id,
            "checked_out_by": self.checked_out_by,
            "checked_out_at": self.checked_out_at.isoformat() if self.checked_out_at else None,
            "from_date": self.from_date.isoformat() if self.from_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "status": self.status,
            "returned_at": self.returned_at.isoformat() if self.returned_at else None,
            "notes": self.notes,
        }

        if include_item and self.item:
            result["item_name"] = self.item.name
            result["item_location"] = self.item.location

        return result

    def __repr__(self):
        return (
            f"<Checkout(id={self.id}, inventory_id={self.inventory_id}, "
            f"status='{self.status}')>"
        )


class CheckoutRequest(Base):
    """Public multi-item checkout request progressed by staff."""

    __tablename__ = "checkout_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    access_token = Column(String(64), nullable=False, unique=True, index=True, default=new_access_token)
    requester_name = Column(String(255), nullable=False)
    requester_email = Column(String(255), nullable=False, index=True)
    requester_phone = Column(String(50), nullable=True)
    purpose = Column(Text, nullable=True)
    status = Column(String(50), nullable=False, default="unseen", index=True)
    approved_by = Column(String(255), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    ready_for_pickup = Column(Boolean, nullable=False, default=False)
    pickup_date = Column(Date, nullable=True)
    pickup_time = Column(String(20), nullable=True)
    pickup_location = Column(String(255), nullable=True)
    picked_up = Column(Boolean, nullable=False, default=False)
    picked_up_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('unseen', 'seen', 'approved', 'denied')", name="ck_checkout_request_status"
        ),
        CheckConstraint(
            "NOT picked_up OR status = 'approved'", name="ck_checkout_request_pickup_approved"
        ),
    )

    # Relationships
    items = relationship(
        "CheckoutRequestItem",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="CheckoutRequestItem.id",
    )
    messages = relationship(
        "CheckoutRequestMessage",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="CheckoutRequestMessage.id",
    )
    checkouts = relationship("Checkout", back_populates="request", order_by="Checkout.id")

    @property
    def is_returned(self) -> bool:
        """A picked-up request is returned once every checkout is returned."""
        if not self.picked_up or not self.checkouts:
            return False
        return all(c.status == RETURNED for c in self.checkouts)

    @property
    def has_live_checkouts(self) -> bool:
        return any(c.status == CHECKED_OUT for c in self.checkouts)

    @property
    def stage(self) -> str:
        """Most advanced stage reached, for display and filtering."""
        if self.is_returned:
            return "returned"
        if self.picked_up:
            return "picked_up"
        if self.ready_for_pickup:
            return "ready_for_pickup"
        return self.status

    def to_dict(
        self,
        include_messages: bool = True,
        include_checkouts: bool = True,
        include_token: bool = False,
    ) -> dict:
        """Convert to dictionary."""
        result = {
            "id": self.id,
            "requester_name": self.requester_name,
            "requester_email": self.requester_email,
            "requester_phone": self.requester_phone,
            "purpose": self.purpose,
            "items": [item.to_dict() for item in self.items],
            "status": self.status,
            "stage": self.stage,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "ready_for_pickup": self.ready_for_pickup,
            "pickup_date": self.pickup_date.isoformat() if self.pickup_date else None,
            "pickup_time": self.pickup_time,
            "pickup_location": self.pickup_location,
            "picked_up": self.picked_up,
            "picked_up_at": self.picked_up_at.isoformat() if self.picked_up_at else None,
            "returned": self.is_returned,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

        if include_messages:
            result["messages"] = [m.to_dict() for m in self.messages]

        if include_checkouts:
            result["checkouts"] = [c.to_dict(include_item=False) for c in self.checkouts]

        if include_token:
            result["access_token"] = self.access_token

        return result

    def __repr__(self):
        return (
            f"<CheckoutRequest(id={self.id}, status='{self.status}', "
            f"picked_up={self.picked_up})>"
        )


class CheckoutRequestItem(Base):
    """One requested line: an item, a quantity and a date range."""

    __tablename__ = "checkout_request_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(
        Integer, ForeignKey("checkout_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Cleared when the item is deleted from a denied or picked-up request
    inventory_id = Column(
        Integer, ForeignKey("inventory_items.id", ondelete="SET NULL"), nullable=True, index=True
    )
    quantity = Column(Integer, nullable=False)
    from_date = Column(DateTime, nullable=False)
    to_date = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_checkout_request_item_quantity"),
    )

    request = relationship("CheckoutRequest", back_populates="items")
    item = relationship("InventoryItem", back_populates="request_lines")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "inventory_id": self.inventory_id,
            "item_name": self.item.name if self.item else None,
            "quantity": self.quantity,
            "from_date": self.from_date.isoformat() if self.from_date else None,
            "to_date": self.to_date.isoformat() if self.to_date else None,
        }


class CheckoutRequestMessage(Base):
    """Append-only message on a checkout request."""

    __tablename__ = "checkout_request_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(
        Integer, ForeignKey("checkout_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_type = Column(String(20), nullable=False)  # requester, admin
    sender_name = Column(String(255), nullable=False)
    sender_email = Column(String(255), nullable=True)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("sender_type IN ('requester', 'admin')", name="ck_message_sender_type"),
    )

    request = relationship("CheckoutRequest", back_populates="messages")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "sender_type": self.sender_type,
            "sender_name": self.sender_name,
            "sender_email": self.sender_email,
            "message": self.message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
