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

"""Staff identity dependencies.

Sign-in happens in front of the service; the auth proxy forwards the
signed-in staff member in request headers.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status

from facilitydesk.utils.helpers import sanitize_input

STAFF_NAME_HEADER = "X-Staff-Name"
STAFF_EMAIL_HEADER = "X-Staff-Email"


@dataclass(frozen=True)
class Staff:
    """Authenticated staff member."""

    name: str
    email: Optional[str] = None


def get_staff_from_request(request: Request) -> Optional[Staff]:
    """Read the staff identity headers, if present."""
    name = sanitize_input(request.headers.get(STAFF_NAME_HEADER), 255)
    email = (request.headers.get(STAFF_EMAIL_HEADER) or "").strip().lower() or None

    if not name and not email:
        return None

    return Staff(name=name or email, email=email)


async def get_current_staff(request: Request) -> Staff:
    """Get the current staff member.

    Raises HTTPException if no identity was forwarded.
    """
    staff = get_staff_from_request(request)

    if staff is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    return staff

