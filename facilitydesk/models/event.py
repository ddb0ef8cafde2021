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

"""Calendar event models."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from facilitydesk.database import Base


class Event(Base):
    """Calendar event, optionally recurring."""

    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    category = Column(String(100), nullable=True)
    setup_time = Column(DateTime, nullable=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurrence_rule = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("end_time >= start_time", name="ck_event_time_order"),
    )

    # Relationships
    inventory_links = relationship(
        "EventInventory", back_populates="event", cascade="all, delete-orphan"
    )

    def to_dict(self, include_inventory: bool = True) -> dict:
        """Convert to dictionary."""
        result = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "category": self.category,
            "setup_time": self.setup_time.isoformat() if self.setup_time else None,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "is_recurring": self.is_recurring,
            "recurrence_rule": self.recurrence_rule,
        }
        if include_inventory:
            result["inventory"] = [link.to_dict() for link in self.inventory_links]
        return result

    def __repr__(self):
        return f"<Event(id={self.id}, title='{self.title}', recurring={self.is_recurring})>"


class EventInventory(Base):
    """Inventory item reserved for an event, with a per-link quantity."""

    __tablename__ = "event_inventory"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    inventory_id = Column(
        Integer, ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("event_id", "inventory_id", name="uq_event_inventory"),
        CheckConstraint("quantity > 0", name="ck_event_inventory_quantity"),
    )

    event = relationship("Event", back_populates="inventory_links")
    item = relationship("InventoryItem", back_populates="event_links")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "inventory_id": self.inventory_id,
            "item_name": self.item.name if self.item else None,
            "quantity": self.quantity,
        }
