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

"""Shared fixtures: a fresh SQLite database per test."""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from facilitydesk import database
from facilitydesk.config import DatabaseConfig, SchedulerConfig, Settings, update_settings
from facilitydesk.models.checkout import CheckoutRequest
from facilitydesk.models.inventory import InventoryItem
from facilitydesk.services import lifecycle
from facilitydesk.services.bus import get_bus
from facilitydesk.services.ledger import CheckoutLine

STAFF_HEADERS = {"X-Staff-Name": "Dana Reyes", "X-Staff-Email": "dana@springfield-high.org"}

FROM_DATE = datetime(2030, 3, 2, 9, 0)
TO_DATE = datetime(2030, 3, 6, 15, 0)


@pytest.fixture
def settings(tmp_path):
    test_settings = Settings(
        database=DatabaseConfig(path=str(tmp_path / "facilitydesk.db"), busy_timeout_seconds=30),
        scheduler=SchedulerConfig(enabled=False),
    )
    update_settings(test_settings)
    database.init_engine()
    database.create_tables()
    yield test_settings
    get_bus().clear()
    database.dispose_engine()


@pytest.fixture
def db(settings):
    session = database.get_session_local()()
    yield session
    session.close()


@pytest.fixture
def client(settings):
    from facilitydesk.main import create_app

    return TestClient(create_app())


@pytest.fixture
def make_item(db):
    """Create an inventory item and return its id."""

    def _make(name="Projector", quantity=5, available_for_checkout=None, checkout_enabled=True):
        item = InventoryItem(
            name=name,
            quantity=quantity,
            available_for_checkout=available_for_checkout,
            checkout_enabled=checkout_enabled,
        )
        db.add(item)
        db.flush()
        item_id = item.id
        db.commit()
        return item_id

    return _make


@pytest.fixture
def make_request(db):
    """Submit a checkout request for ``{inventory_id: quantity}`` and return its id."""

    def _make(quantities, name="Alex Kim", email="alex.kim@springfield-high.org", purpose=None):
        lines = [
            CheckoutLine(inventory_id, quantity, FROM_DATE, TO_DATE)
            for inventory_id, quantity in quantities.items()
        ]
        request = lifecycle.create_request(db, name, email, lines, purpose=purpose)
        return request.id

    return _make


@pytest.fixture
def approved_request(db, make_request):
    """Submit and approve a request, returning its id."""

    def _make(quantities):
        request_id = make_request(quantities)
        lifecycle.approve(db, request_id, "Dana Reyes")
        return request_id

    return _make


def reload_request(db, request_id) -> CheckoutRequest:
    db.expire_all()
    return db.query(CheckoutRequest).filter(CheckoutRequest.id == request_id).one()


def days_ago(days: int) -> datetime:
    return datetime.utcnow() - timedelta(days=days)
