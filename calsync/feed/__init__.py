"""Published iCalendar feeds with HTTP conditional GET support."""

from .cache import (
    compute_etag,
    compute_last_modified,
    fnv1a_32,
    format_http_date,
    is_not_modified,
    parse_http_date,
)
from .service import FeedResponse, FeedService, feed_filename

__all__ = [
    "FeedResponse",
    "FeedService",
    "compute_etag",
    "compute_last_modified",
    "feed_filename",
    "fnv1a_32",
    "format_http_date",
    "is_not_modified",
    "parse_http_date",
]
