"""Render stored events as an RFC 5545 VCALENDAR document."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from icalendar.parser import Contentline

logger = logging.getLogger(__name__)

DEFAULT_PRODID = "-//CalSync//Calendar Feed 1.0//EN"
DEFAULT_UID_DOMAIN = "calsync.local"
DEFAULT_CALENDAR_NAME = "My Calendar"
CRLF = "\r\n"


def escape_text(value: str) -> str:
    """Escape a TEXT value: backslash, semicolon, comma, then newline."""
    normalized = value.replace("\r\n", "\n").replace("\r", "\n")
    return (
        normalized.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\n", "\\n")
    )


def format_utc_datetime(value: datetime) -> str:
    """Format an instant as ``YYYYMMDDTHHMMSSZ``."""
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def format_utc_date(value: datetime) -> str:
    """Format the UTC calendar date of an instant as ``YYYYMMDD``."""
    return value.astimezone(timezone.utc).strftime("%Y%m%d")


def fold_line(line: str) -> str:
    """Fold a content line at 75 octets with CRLF plus a space."""
    return Contentline(line).to_ical().decode("utf-8")


def derive_uid(internal_id: str, domain: str = DEFAULT_UID_DOMAIN) -> str:
    """Derive a stable UID from an internal event id.

    Each character is hex-encoded, the digits are padded with ``0`` or
    truncated to 32 and grouped 8-4-4-4-12.

    Args:
        internal_id: Opaque store id
        domain: Domain appended after ``@``

    Returns:
        UID string
    """
    digits = "".join(f"{ord(char):02x}" for char in internal_id).ljust(32, "0")[:32]
    grouped = "-".join(
        (digits[0:8], digits[8:12], digits[12:16], digits[16:20], digits[20:32])
    )
    return f"{grouped}@{domain}"


class ICSSerializer:
    """Serializes events into a single VCALENDAR document.

    Accepts any object exposing the event fields (``title``, ``start``,
    ``end``, ``all_day`` and the optional text fields), so both stored and
    freshly parsed events can be rendered.
    """

    def __init__(
        self,
        prodid: str = DEFAULT_PRODID,
        uid_domain: str = DEFAULT_UID_DOMAIN,
        calendar_name: str = DEFAULT_CALENDAR_NAME,
    ) -> None:
        self.prodid = prodid
        self.uid_domain = uid_domain
        self.calendar_name = calendar_name

    def serialize(self, events: Iterable[Any], calendar_name: Optional[str] = None) -> str:
        """Render events as an iCalendar document.

        Args:
            events: Events to include, emitted in the given order
            calendar_name: Overrides the configured X-WR-CALNAME

        Returns:
            CRLF-delimited iCalendar text with folded long lines
        """
        lines = [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            f"PRODID:{self.prodid}",
            "CALSCALE:GREGORIAN",
            "METHOD:PUBLISH",
            f"X-WR-CALNAME:{escape_text(calendar_name or self.calendar_name)}",
            "REFRESH-INTERVAL;VALUE=DURATION:PT1H",
            "X-PUBLISHED-TTL:PT1H",
            "BEGIN:VTIMEZONE",
            "TZID:UTC",
            "BEGIN:STANDARD",
            "DTSTART:19700101T000000",
            "TZOFFSETFROM:+0000",
            "TZOFFSETTO:+0000",
            "TZNAME:UTC",
            "END:STANDARD",
            "END:VTIMEZONE",
        ]

        count = 0
        for event in events:
            lines.extend(self.serialize_event(event))
            count += 1

        lines.append("END:VCALENDAR")
        logger.debug("Serialized %d events", count)
        return CRLF.join(fold_line(line) for line in lines) + CRLF

    def serialize_event(self, event: Any) -> list[str]:
        """Render the VEVENT lines for one event (unfolded)."""
        start: datetime = event.start
        end: datetime = event.end
        updated = getattr(event, "updated_at", None) or start
        created = getattr(event, "created_at", None) or start

        lines = [
            "BEGIN:VEVENT",
            f"UID:{self.event_uid(event)}",
            f"DTSTAMP:{format_utc_datetime(updated)}",
            "SEQUENCE:0",
            f"CREATED:{format_utc_datetime(created)}",
            f"LAST-MODIFIED:{format_utc_datetime(updated)}",
        ]

        if event.all_day:
            lines.append(f"DTSTART;VALUE=DATE:{format_utc_date(start)}")
            lines.append(f"DTEND;VALUE=DATE:{format_utc_date(end + timedelta(days=1))}")
        else:
            lines.append(f"DTSTART:{format_utc_datetime(start)}")
            lines.append(f"DTEND:{format_utc_datetime(end)}")

        lines.append(f"SUMMARY:{escape_text(event.title or '')}")
        lines.append("STATUS:CONFIRMED")
        lines.append("TRANSP:OPAQUE")

        if event.description:
            lines.append(f"DESCRIPTION:{escape_text(event.description)}")
        if event.location:
            lines.append(f"LOCATION:{escape_text(event.location)}")
        if event.rrule:
            lines.append(f"RRULE:{event.rrule}")

        lines.append("END:VEVENT")
        return lines

    def event_uid(self, event: Any) -> str:
        """Pick the UID to publish for an event."""
        source_uid = getattr(event, "source_event_uid", None) or getattr(event, "uid", None)
        if source_uid:
            return str(source_uid)
        return derive_uid(str(event.id), self.uid_domain)
