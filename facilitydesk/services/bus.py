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

"""In-process publish/subscribe hook for inventory and checkout changes.

Services publish after their transaction commits, so subscribers only ever
see committed state.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

INVENTORY_UPDATED = "inventory_updated"
CHECKOUT_STATUS_UPDATED = "checkout_status_updated"
CHECKOUT_REQUEST_UPDATED = "checkout_request_updated"

Handler = Callable[[str, Dict[str, Any]], None]


class NotificationBus:
    """Topic based observer registry."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for a topic.

        Returns:
            Callable that removes the subscription.
        """
        with self._lock:
            self._handlers[topic].append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._handlers[topic]:
                    self._handlers[topic].remove(handler)

        return unsubscribe

    def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        """Deliver a payload to every handler of a topic.

        A failing handler is logged and skipped; it never fails the caller.

        Returns:
            Number of handlers that ran successfully.
        """
        with self._lock:
            handlers = list(self._handlers.get(topic, ()))

        delivered = 0
        for handler in handlers:
            try:
                handler(topic, payload)
                delivered += 1
            except Exception:
                logger.exception("Notification handler %r failed for %s", handler, topic)
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


# Global bus instance
_bus: Optional[NotificationBus] = None


def get_bus() -> NotificationBus:
    """Get the global notification bus."""
    global _bus
    if _bus is None:
        _bus = NotificationBus()
    return _bus
