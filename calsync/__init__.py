"""calsync - iCalendar subscription mirroring and feed publishing."""

__version__ = "1.0.0"
