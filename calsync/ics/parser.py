"""iCalendar text parser producing :class:`ParsedEvent` records."""

import logging
import re
import secrets
import time
from datetime import datetime, time as dt_time, timedelta, timezone, tzinfo
from typing import Any, Callable, Optional, Union
from zoneinfo import ZoneInfo

from dateutil import parser as dateutil_parser, tz

from .models import ICSParseResult, ParsedEvent

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled Event"

# A line break followed by a single space or tab continues the previous line
_FOLD_RE = re.compile(r"(?:\r\n|\r|\n)[ \t]")
_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")
_TZID_PREFIX_RE = re.compile(r"^TZID=[^:]+:", re.IGNORECASE)
_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_DATETIME_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})(Z)?$", re.IGNORECASE)
_TEXT_ESCAPE_RE = re.compile(r"\\([\\;,nN])")

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

Patch = dict[str, Any]


def unfold_lines(content: str) -> list[str]:
    """Join folded lines and split the document into non-blank logical lines."""
    unfolded = _FOLD_RE.sub("", content)
    return [line for line in _LINE_SPLIT_RE.split(unfolded) if line.strip()]


def unescape_text(value: str) -> str:
    """Reverse RFC 5545 TEXT escaping in a single left-to-right pass."""

    def _replace(match: "re.Match[str]") -> str:
        char = match.group(1)
        return "\n" if char in ("n", "N") else char

    return _TEXT_ESCAPE_RE.sub(_replace, value)


def end_of_day(value: datetime) -> datetime:
    """Return 23:59:59.999 UTC on the UTC calendar date of ``value``."""
    return datetime.combine(
        value.astimezone(timezone.utc).date(),
        dt_time(23, 59, 59, 999000),
        tzinfo=timezone.utc,
    )


def _to_milliseconds(value: datetime) -> datetime:
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def _base36(number: int) -> str:
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_import_uid() -> str:
    """Synthesize a UID for events that arrive without one."""
    return f"imported-{int(time.time() * 1000)}-{_base36(secrets.randbits(40))}"


def resolve_timezone(name: Optional[Union[str, tzinfo]]) -> tzinfo:
    """Resolve the zone used for floating (zone-less) date-times.

    Args:
        name: IANA zone name, a tzinfo instance, or None for the host's local zone

    Returns:
        tzinfo instance
    """
    if name is None or name == "":
        return tz.tzlocal()
    if isinstance(name, tzinfo):
        return name
    return ZoneInfo(name)


class ICSParser:
    """Line-oriented iCalendar parser.

    Only the VEVENT properties the mirror cares about are interpreted. Every
    other property, and every component nested inside a VEVENT (VALARM and
    friends), is ignored.
    """

    def __init__(
        self,
        floating_timezone: Optional[Union[str, tzinfo]] = None,
        uid_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        """Initialize parser.

        Args:
            floating_timezone: Zone used for date-times without a ``Z`` suffix
            uid_factory: Callable producing UIDs for events that lack one
        """
        self.floating_timezone = resolve_timezone(floating_timezone)
        self.uid_factory = uid_factory or generate_import_uid

        self._handlers: dict[str, Callable[[str], Patch]] = {
            "UID": lambda value: {"uid": value.strip()},
            "SUMMARY": lambda value: {"title": unescape_text(value)},
            "DESCRIPTION": lambda value: {"description": unescape_text(value)},
            "LOCATION": lambda value: {"location": unescape_text(value)},
            "DTSTART": self._handle_dtstart,
            "DTEND": self._handle_dtend,
            "RRULE": lambda value: {"rrule": value.strip()},
        }

    def parse(self, content: str) -> ICSParseResult:
        """Parse an iCalendar document.

        Args:
            content: Raw iCalendar text

        Returns:
            Parse result holding the events that carried a usable DTSTART
        """
        result = ICSParseResult()

        if not content or not content.strip():
            result.warnings.append("Empty calendar content")
            return result

        if "BEGIN:VCALENDAR" not in content.upper():
            result.warnings.append("Content does not contain a VCALENDAR block")

        in_event = False
        nested_depth = 0
        patch: Patch = {}

        for line in unfold_lines(content):
            name, value = self._split_line(line)
            if name is None:
                continue

            if name == "BEGIN":
                component = value.strip().upper()
                if not in_event and component == "VEVENT":
                    in_event = True
                    nested_depth = 0
                    patch = {}
                elif in_event:
                    nested_depth += 1
                continue

            if name == "END":
                if in_event and nested_depth > 0:
                    nested_depth -= 1
                elif in_event and value.strip().upper() == "VEVENT":
                    event = self._build_event(patch)
                    if event is None:
                        result.skipped_count += 1
                    else:
                        result.events.append(event)
                    in_event = False
                continue

            if not in_event:
                if name == "X-WR-CALNAME" and result.calendar_name is None:
                    result.calendar_name = unescape_text(value)
                continue

            if nested_depth > 0:
                continue

            handler = self._handlers.get(name)
            if handler is not None:
                patch.update(handler(value))

        if in_event:
            result.warnings.append("Unterminated VEVENT block ignored")

        result.event_count = len(result.events)
        logger.debug(
            "Parsed %d events (%d skipped without DTSTART)",
            result.event_count,
            result.skipped_count,
        )
        return result

    def parse_events(self, content: str) -> list[ParsedEvent]:
        """Convenience wrapper returning only the parsed events."""
        return self.parse(content).events

    @staticmethod
    def _split_line(line: str) -> tuple[Optional[str], str]:
        """Split a logical line into upper-cased property name and raw value."""
        prop_part, sep, value = line.partition(":")
        if not sep:
            return None, ""
        return prop_part.split(";", 1)[0].strip().upper(), value

    def parse_date_value(self, value: str) -> Optional[tuple[datetime, bool]]:
        """Parse a DTSTART/DTEND value.

        Args:
            value: Property value, possibly prefixed with ``TZID=...:``

        Returns:
            Tuple of (UTC instant, is_date) or None when the value is unusable
        """
        raw = _TZID_PREFIX_RE.sub("", value.strip())

        date_match = _DATE_RE.match(raw)
        if date_match:
            year, month, day = (int(part) for part in date_match.groups())
            try:
                return datetime(year, month, day, tzinfo=timezone.utc), True
            except ValueError:
                return None

        datetime_match = _DATETIME_RE.match(raw)
        if datetime_match:
            parts = [int(part) for part in datetime_match.groups()[:6]]
            try:
                if datetime_match.group(7):
                    return datetime(*parts, tzinfo=timezone.utc), False
                local = datetime(*parts, tzinfo=self.floating_timezone)
                return local.astimezone(timezone.utc), False
            except ValueError:
                return None

        try:
            parsed = dateutil_parser.parse(raw)
        except (ValueError, OverflowError):
            logger.debug("Unparseable date value: %r", value)
            return None

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self.floating_timezone)
        return _to_milliseconds(parsed.astimezone(timezone.utc)), False

    def _handle_dtstart(self, value: str) -> Patch:
        parsed = self.parse_date_value(value)
        if parsed is None:
            return {}
        start, is_date = parsed
        return {"start": start, "all_day": is_date}

    def _handle_dtend(self, value: str) -> Patch:
        parsed = self.parse_date_value(value)
        if parsed is None:
            return {}
        return {"end": parsed[0]}

    def _build_event(self, patch: Patch) -> Optional[ParsedEvent]:
        """Apply defaults and end-time rules to a completed VEVENT patch."""
        start: Optional[datetime] = patch.get("start")
        if start is None:
            return None

        all_day = bool(patch.get("all_day", False))
        end: Optional[datetime] = patch.get("end")

        if all_day:
            # Wire DTEND is exclusive; store the last inclusive millisecond
            if end is not None:
                end = end_of_day(end - timedelta(days=1))
            if end is None or end < start:
                end = end_of_day(start)
        elif end is None:
            end = start + timedelta(hours=1)

        return ParsedEvent(
            uid=patch.get("uid") or self.uid_factory(),
            title=patch.get("title") or DEFAULT_TITLE,
            start=start,
            end=end,
            description=patch.get("description"),
            location=patch.get("location"),
            rrule=patch.get("rrule") or None,
            all_day=all_day,
        )
