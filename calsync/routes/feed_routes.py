"""Public iCalendar feed route."""

import logging
from typing import Any

from ..feed.cache import format_http_date

logger = logging.getLogger(__name__)


def register_feed_routes(app: Any, services: Any) -> None:
    """Register the token-authenticated feed routes.

    Args:
        app: aiohttp web application
        services: Wired application services
    """
    from aiohttp import web

    settings = services.settings
    feed_service = services.feed_service

    def _cache_headers(etag: str, last_modified: Any) -> dict:
        return {
            "ETag": etag,
            "Last-Modified": format_http_date(last_modified),
            "Cache-Control": f"private, must-revalidate, max-age={settings.feed_max_age}",
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Expose-Headers": "ETag, Last-Modified",
        }

    async def missing_token(_request: Any) -> Any:
        return web.Response(status=400, text="Invalid token")

    async def public_feed(request: Any) -> Any:
        """Serve a user's events as a subscribable calendar."""
        token = request.match_info.get("token", "").strip()
        if token.lower().endswith(".ics"):
            token = token[:-4]
        if not token:
            return web.Response(status=400, text="Invalid token")

        try:
            result = await feed_service.render_feed(
                token,
                if_none_match=request.headers.get("If-None-Match"),
                if_modified_since=request.headers.get("If-Modified-Since"),
            )
        except Exception:
            logger.exception("Failed to generate calendar feed")
            return web.Response(status=500, text="Failed to generate calendar feed")

        if result is None:
            return web.Response(status=404, text="Invalid or expired token")

        headers = _cache_headers(result.etag, result.last_modified)
        if result.not_modified:
            return web.Response(status=304, headers=headers)

        headers["Content-Disposition"] = f'inline; filename="{result.filename}"'
        return web.Response(
            text=result.body,
            content_type="text/calendar",
            charset="utf-8",
            headers=headers,
        )

    app.router.add_get("/feed", missing_token)
    app.router.add_get("/feed/", missing_token)
    app.router.add_get("/feed/{token}", public_feed)
