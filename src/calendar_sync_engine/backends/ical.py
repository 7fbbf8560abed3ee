"""VEVENT extraction for CalDAV calendar objects."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from ..errors import EventParseError
from .base import NO_TITLE, CanonicalEvent, to_utc

STATUSES = {"TENTATIVE": "tentative", "CANCELLED": "cancelled"}


def _text(vevent, name: str) -> str | None:
    value = vevent.get(name)
    if value is None:
        return None
    return str(value) or None


def _instant(value: date | datetime) -> datetime:
    # Bare dates land on UTC midnight; floating times are read as UTC.
    if isinstance(value, datetime):
        return to_utc(value)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def parse_vevent(data: str | bytes, etag: str | None = None) -> CanonicalEvent | None:
    """Normalize the first VEVENT of an iCalendar object.

    Returns None when the object has no VEVENT, UID or DTSTART.
    Raises EventParseError on malformed data.
    """
    from icalendar import Calendar

    try:
        vevents = Calendar.from_ical(data).walk("VEVENT")
        if not vevents:
            return None
        vevent = vevents[0]

        uid = _text(vevent, "UID")
        dtstart = vevent.get("DTSTART")
        if not uid or dtstart is None:
            return None

        start_value = dtstart.dt
        all_day = not isinstance(start_value, datetime)
        start = _instant(start_value)

        dtend = vevent.get("DTEND")
        duration = vevent.get("DURATION")
        if dtend is not None:
            end = _instant(dtend.dt)
        elif duration is not None:
            end = start + duration.dt
        else:
            end = start + (timedelta(days=1) if all_day else timedelta(hours=1))

        rrule = vevent.get("RRULE")
        tzid = dtstart.params.get("TZID")
    except (ValueError, TypeError, AttributeError, KeyError) as exc:
        raise EventParseError(f"Malformed calendar object: {exc}") from exc

    return CanonicalEvent(
        external_id=uid,
        title=_text(vevent, "SUMMARY") or NO_TITLE,
        description=_text(vevent, "DESCRIPTION"),
        location=_text(vevent, "LOCATION"),
        start=start,
        end=end,
        all_day=all_day,
        timezone=str(tzid) if tzid else None,
        recurrence_rule=rrule.to_ical().decode() if rrule is not None else None,
        status=STATUSES.get((_text(vevent, "STATUS") or "").upper(), "confirmed"),
        etag=etag,
    )
