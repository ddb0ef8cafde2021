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

"""Inventory item models."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import relationship

from facilitydesk.database import Base


inventory_item_tags = Table(
    "inventory_item_tags",
    Base.metadata,
    Column("inventory_id", Integer, ForeignKey("inventory_items.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("inventory_tags.id", ondelete="CASCADE"), primary_key=True),
)


class InventoryTag(Base):
    """Free-form tag attached to inventory items."""

    __tablename__ = "inventory_tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)

    items = relationship("InventoryItem", secondary=inventory_item_tags, back_populates="tags")

    def __repr__(self):
        return f"<InventoryTag(id={self.id}, name='{self.name}')>"


class InventoryItem(Base):
    """Inventory item model."""

    __tablename__ = "inventory_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    manufacturer = Column(String(255), nullable=True)
    model = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    # Optional ceiling below quantity, clamped at write time
    available_for_checkout = Column(Integer, nullable=True)
    checkout_enabled = Column(Boolean, nullable=False, default=False)
    location = Column(String(255), nullable=True)
    usage_notes = Column(Text, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    last_used_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventory_quantity"),
        CheckConstraint(
            "available_for_checkout IS NULL OR available_for_checkout >= 0",
            name="ck_inventory_available_for_checkout",
        ),
    )

    # Relationships
    # Deleting an item clears the link on its checkouts and request lines
    checkouts = relationship("Checkout", back_populates="item")
    request_lines = relationship("CheckoutRequestItem", back_populates="item")
    locations = relationship(
        "InventoryLocation",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="InventoryLocation.id",
    )
    tags = relationship("InventoryTag", secondary=inventory_item_tags, back_populates="items")
    event_links = relationship("EventInventory", back_populates="item", cascade="all, delete-orphan")

    @property
    def checkout_ceiling(self) -> int:
        """Maximum number of units that may be checked out at once."""
        if self.available_for_checkout is not None:
            return self.available_for_checkout
        return self.quantity or 0

    def to_dict(self, include_locations: bool = True) -> dict:
        """Convert to dictionary."""
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "quantity": self.quantity,
            "available_for_checkout": self.available_for_checkout,
            "checkout_enabled": self.checkout_enabled,
            "location": self.location,
            "usage_notes": self.usage_notes,
            "tags": sorted(t.name for t in self.tags),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "last_used_by": self.last_used_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_locations:
            result["locations"] = [loc.to_dict() for loc in self.locations]
        return result

    def __repr__(self):
        return f"<InventoryItem(id={self.id}, name='{self.name}', quantity={self.quantity})>"


class InventoryLocation(Base):
    """Per-location unit count for an inventory item."""

    __tablename__ = "inventory_locations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    inventory_id = Column(
        Integer, ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    location = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)

    item = relationship("InventoryItem", back_populates="locations")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {"location": self.location, "quantity": self.quantity}

    def __repr__(self):
        return f"<InventoryLocation(inventory_id={self.inventory_id}, location='{self.location}')>"
