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

"""Recurring event expansion.

Supports the RRULE subset written by the event editor and calendar import:
``FREQ=DAILY|WEEKLY|MONTHLY|YEARLY;INTERVAL=n;BYDAY=MO,WE;UNTIL=...|COUNT=n``.
Other parts (BYMONTHDAY, BYMONTH, WKST) are accepted and ignored because the
base event's date already carries them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from facilitydesk.config import get_settings
from facilitydesk.exceptions import ValidationError
from facilitydesk.utils.helpers import add_months, add_years

FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")

# Python weekday numbers (Monday == 0)
WEEKDAY_CODES = {"MO": 0, "TU": 1, "WE": 2, "TH": 3, "FR": 4, "SA": 5, "SU": 6}

_UNTIL_FORMATS = ("%Y%m%dT%H%M%SZ", "%Y%m%dT%H%M%S", "%Y%m%d")


@dataclass(frozen=True)
class RecurrenceRule:
    """Parsed recurrence rule."""

    freq: str
    interval: int = 1
    by_day: Tuple[int, ...] = ()
    until: Optional[datetime] = None
    count: Optional[int] = None

    def to_string(self) -> str:
        """Serialize back to RRULE text."""
        parts = [f"FREQ={self.freq}", f"INTERVAL={self.interval}"]
        if self.by_day:
            codes = {v: k for k, v in WEEKDAY_CODES.items()}
            parts.append("BYDAY=" + ",".join(codes[d] for d in self.by_day))
        if self.until is not None:
            parts.append("UNTIL=" + self.until.strftime("%Y%m%dT%H%M%SZ"))
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        return ";".join(parts)


def _parse_until(value: str) -> datetime:
    for fmt in _UNTIL_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if fmt == "%Y%m%d":
            # Date-only UNTIL includes the whole day
            parsed = parsed.replace(hour=23, minute=59, second=59)
        return parsed
    raise ValidationError(f"Invalid UNTIL value: {value}")


def _parse_positive_int(name: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(f"{name} must be a positive integer") from None
    if number < 1:
        raise ValidationError(f"{name} must be a positive integer")
    return number


def parse_rule(text: Optional[str]) -> RecurrenceRule:
    """Parse an RRULE-like string.

    Raises:
        ValidationError: if the rule is empty, has no valid FREQ, a bad
            INTERVAL/COUNT/UNTIL/BYDAY value, BYDAY on a non-weekly rule,
            or both UNTIL and COUNT.
    """
    if not text or not text.strip():
        raise ValidationError("Recurrence rule is empty")

    rule_text = text.strip().upper()
    if rule_text.startswith("RRULE:"):
        rule_text = rule_text[len("RRULE:"):]

    parts: Dict[str, str] = {}
    for chunk in rule_text.split(";"):
        if not chunk:
            continue
        if "=" not in chunk:
            raise ValidationError(f"Malformed recurrence rule part: {chunk}")
        key, value = chunk.split("=", 1)
        parts[key.strip()] = value.strip()

    freq = parts.get("FREQ")
    if freq not in FREQUENCIES:
        raise ValidationError(f"Unsupported or missing FREQ: {freq}")

    interval = _parse_positive_int("INTERVAL", parts["INTERVAL"]) if "INTERVAL" in parts else 1

    by_day: Tuple[int, ...] = ()
    if parts.get("BYDAY"):
        if freq != "WEEKLY":
            raise ValidationError("BYDAY is only supported with FREQ=WEEKLY")
        days = []
        for code in parts["BYDAY"].split(","):
            code = code.strip()
            if code not in WEEKDAY_CODES:
                raise ValidationError(f"Invalid BYDAY weekday: {code}")
            days.append(WEEKDAY_CODES[code])
        by_day = tuple(sorted(set(days)))

    if "UNTIL" in parts and "COUNT" in parts:
        raise ValidationError("UNTIL and COUNT cannot both be set")

    until = _parse_until(parts["UNTIL"]) if "UNTIL" in parts else None
    count = _parse_positive_int("COUNT", parts["COUNT"]) if "COUNT" in parts else None

    return RecurrenceRule(freq=freq, interval=interval, by_day=by_day, until=until, count=count)


@dataclass
class Occurrence:
    """One concrete realization of an event."""

    id: str
    event: Any
    index: Optional[int]
    start_time: datetime
    end_time: datetime
    setup_time: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start_time < end and start < self.end_time

    def to_dict(self) -> dict:
        """Base event fields with this occurrence's identity and times."""
        result = self.event.to_dict()
        result.update(
            {
                "id": self.id,
                "event_id": self.event.id,
                "occurrence_index": self.index,
                "start_time": self.start_time.isoformat(),
                "end_time": self.end_time.isoformat(),
                "setup_time": self.setup_time.isoformat() if self.setup_time else None,
            }
        )
        result.update(self.extra)
        return result


def _make_occurrence(event, index: int, start: datetime, duration: timedelta) -> Occurrence:
    setup_time = None
    if event.setup_time is not None:
        setup_time = start - (event.start_time - event.setup_time)
    return Occurrence(
        id=f"{event.id}_{index}",
        event=event,
        index=index,
        start_time=start,
        end_time=start + duration,
        setup_time=setup_time,
    )


def single_occurrence(event) -> Occurrence:
    """Wrap a non-recurring event as an occurrence keeping its own id."""
    return Occurrence(
        id=str(event.id),
        event=event,
        index=None,
        start_time=event.start_time,
        end_time=event.end_time,
        setup_time=event.setup_time,
    )


def _step(base: datetime, rule: RecurrenceRule, step: int) -> datetime:
    """Date of the ``step``-th period after ``base``, computed from base."""
    amount = step * rule.interval
    if rule.freq == "DAILY":
        return base + timedelta(days=amount)
    if rule.freq == "WEEKLY":
        return base + timedelta(weeks=amount)
    if rule.freq == "MONTHLY":
        return add_months(base, amount)
    return add_years(base, amount)


def expand(
    event,
    now: datetime,
    rule: Optional[RecurrenceRule] = None,
    horizon_days: Optional[int] = None,
    max_instances: Optional[int] = None,
) -> List[Occurrence]:
    """Expand a recurring event into occurrences starting in [now, now + horizon].

    Args:
        event: Object with ``id``, ``start_time``, ``end_time``, ``setup_time``
            and ``recurrence_rule``.
        now: Reference time; earlier occurrences are never produced.
        rule: Pre-parsed rule, parsed from the event when omitted.
        horizon_days: Outer bound in days, defaults to configuration.
        max_instances: Safety cap, defaults to configuration.

    Returns:
        Occurrences in chronological order. COUNT limits the number emitted.
    """
    settings = get_settings()
    if rule is None:
        rule = parse_rule(event.recurrence_rule)
    if horizon_days is None:
        horizon_days = settings.recurrence.horizon_days
    if max_instances is None:
        max_instances = settings.recurrence.max_instances

    horizon = now + timedelta(days=horizon_days)
    base = event.start_time
    duration = event.end_time - event.start_time

    limit = max_instances
    if rule.count is not None:
        limit = min(limit, rule.count)

    occurrences: List[Occurrence] = []

    if rule.freq == "WEEKLY" and rule.by_day:
        week_zero = (base - timedelta(days=base.weekday())).date()
        current = base
        while current <= horizon and len(occurrences) < limit:
            if rule.until is not None and current > rule.until:
                break
            week_index = (current.date() - week_zero).days // 7
            if (
                current.weekday() in rule.by_day
                and week_index % rule.interval == 0
                and current >= now
            ):
                occurrences.append(_make_occurrence(event, len(occurrences), current, duration))
            current += timedelta(days=1)
        return occurrences

    step = 0
    current = base
    while current <= horizon and len(occurrences) < limit:
        if rule.until is not None and current > rule.until:
            break
        if current >= now:
            occurrences.append(_make_occurrence(event, len(occurrences), current, duration))
        step += 1
        current = _step(base, rule, step)

    return occurrences
