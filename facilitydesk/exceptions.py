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

"""Domain errors raised by the checkout services.

Routes let these propagate; the handler registered in ``create_app`` turns
them into JSON responses using ``status_code`` and ``detail``.
"""

from typing import Any, Dict, List, Optional


class CheckoutError(Exception):
    """Base class for checkout domain errors."""

    status_code: int = 400

    def __init__(self, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self._detail = detail

    @property
    def detail(self) -> Any:
        """Response payload for this error."""
        if self._detail is None:
            return self.message
        return self._detail


class NotFound(CheckoutError):
    """Referenced item, checkout, request or event does not exist."""

    status_code = 404


class ValidationError(CheckoutError):
    """Malformed input (bad recurrence rule, missing reason, bad dates)."""

    status_code = 400


class InvalidTransition(CheckoutError):
    """Operation not allowed in the record's current state."""

    status_code = 409


class AlreadyReturned(InvalidTransition):
    """Checkout has already been returned."""

    status_code = 400


class InsufficientAvailability(CheckoutError):
    """Requested quantity exceeds what is currently available.

    ``shortages`` lists every offending line so the operator can adjust
    quantities and retry.
    """

    status_code = 400

    def __init__(self, shortages: List[Dict[str, Any]]):
        self.shortages = shortages
        names = ", ".join(
            f'"{s["name"]}" (requested {s["requested"]}, available {s["available"]})'
            for s in shortages
        )
        super().__init__(f"Insufficient availability for {names}")

    @property
    def detail(self) -> Any:
        return {"message": self.message, "shortages": self.shortages}
