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

"""Utility helper functions."""

import calendar
import html
import re
from datetime import datetime, timezone
from typing import Optional


def escape_html(text: Optional[str]) -> str:
    """Escape HTML special characters to prevent XSS.

    Args:
        text: Input text that may contain HTML.

    Returns:
        HTML-escaped string.
    """
    if text is None:
        return ""
    return html.escape(str(text))


def sanitize_input(text: Optional[str], max_length: Optional[int] = None) -> str:
    """Sanitize user input by stripping HTML tags and limiting length.

    Args:
        text: Input text to sanitize.
        max_length: Maximum allowed length (truncates if exceeded).

    Returns:
        Sanitized string.
    """
    if text is None:
        return ""

    # Remove HTML tags
    clean = re.sub(r"<[^>]+>", "", str(text))

    # Normalize whitespace
    clean = " ".join(clean.split())

    # Truncate if needed
    if max_length and len(clean) > max_length:
        clean = clean[:max_length]

    return clean


def sanitize_message(text: Optional[str], max_length: Optional[int] = None) -> str:
    """Like ``sanitize_input`` but keeps line breaks of multi-line messages."""
    if text is None:
        return ""

    clean = re.sub(r"<[^>]+>", "", str(text))
    lines = [" ".join(line.split()) for line in clean.strip().splitlines()]
    clean = "\n".join(lines).strip()

    if max_length and len(clean) > max_length:
        clean = clean[:max_length]

    return clean


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values pass through.

    All timestamps are stored as naive UTC.
    """
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def add_months(dt: datetime, months: int) -> datetime:
    """Add calendar months, keeping the day of month.

    Days that do not exist in the target month are clamped to its last
    day (Jan 31 + 1 month = Feb 28/29).
    """
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def add_years(dt: datetime, years: int) -> datetime:
    """Add calendar years; Feb 29 falls back to Feb 28 in common years."""
    return add_months(dt, 12 * years)
