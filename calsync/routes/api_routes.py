"""JSON API routes: export/import, subscriptions and feed tokens."""

import functools
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from dateutil import parser as dateutil_parser

from ..feed.service import feed_filename
from ..ics.fetcher import normalize_calendar_url
from ..store.exceptions import DuplicateSubscriptionError, NotFoundError
from ..store.models import DEFAULT_SYNC_INTERVAL_MINUTES, FeedToken, Subscription

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"
MIN_SYNC_INTERVAL_MINUTES = 5
MAX_SYNC_INTERVAL_MINUTES = 24 * 60


def _check_bearer_token(request: Any, required_token: Optional[str]) -> bool:
    """Check if request has valid bearer token.

    Args:
        request: aiohttp request object
        required_token: Expected bearer token, or None to skip auth

    Returns:
        True if auth is valid or not required, False otherwise
    """
    if not required_token:
        return True

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return False

    provided_token = auth_header[7:]
    return hmac.compare_digest(provided_token.encode(), required_token.encode())


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def _parse_query_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 query value; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    parsed = dateutil_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_sync_interval(value: Any) -> Optional[int]:
    """Validate ``syncIntervalMinutes``; None when absent.

    Raises:
        ValueError: Not an integer between 5 and 1440
    """
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("syncIntervalMinutes must be an integer")
    if not MIN_SYNC_INTERVAL_MINUTES <= value <= MAX_SYNC_INTERVAL_MINUTES:
        raise ValueError(
            f"syncIntervalMinutes must be between {MIN_SYNC_INTERVAL_MINUTES} "
            f"and {MAX_SYNC_INTERVAL_MINUTES}"
        )
    return value


def subscription_to_api(subscription: Subscription) -> dict:
    return {
        "id": subscription.id,
        "name": subscription.name,
        "url": subscription.url,
        "color": subscription.color,
        "syncEnabled": subscription.sync_enabled,
        "syncIntervalMinutes": subscription.sync_interval_minutes,
        "lastSyncAt": _iso(subscription.last_sync_at),
        "lastSyncError": subscription.last_sync_error,
        "createdAt": _iso(subscription.created_at),
    }


def feed_token_to_api(feed_token: FeedToken) -> dict:
    """Listing form of a token; the secret itself is redacted."""
    return {
        "id": feed_token.id,
        "name": feed_token.name,
        "tokenPreview": feed_token.token_preview,
        "isActive": feed_token.is_active,
        "expiresAt": _iso(feed_token.expires_at),
        "accessCount": feed_token.access_count,
        "lastAccessedAt": _iso(feed_token.last_accessed_at),
        "createdAt": _iso(feed_token.created_at),
    }


def register_api_routes(app: Any, services: Any) -> None:
    """Register user-scoped JSON API routes.

    The fronting auth layer identifies the user through the ``X-User-Id``
    header. When ``api_token`` is configured a matching bearer token is also
    required.

    Args:
        app: aiohttp web application
        services: Wired application services
    """
    from aiohttp import web

    settings = services.settings

    def user_route(
        handler: Callable[[Any, str], Awaitable[Any]],
    ) -> Callable[[Any], Awaitable[Any]]:
        @functools.wraps(handler)
        async def wrapper(request: Any) -> Any:
            if not _check_bearer_token(request, settings.api_token):
                return web.json_response({"error": "unauthorized"}, status=401)
            user_id = request.headers.get(USER_HEADER, "").strip()
            if not user_id:
                return web.json_response({"error": "authentication required"}, status=401)
            try:
                return await handler(request, user_id)
            except NotFoundError as e:
                return web.json_response({"error": e.message}, status=404)
            except Exception:
                logger.exception("Unhandled error in %s", handler.__name__)
                return web.json_response({"error": "internal server error"}, status=500)

        return wrapper

    async def _read_json(request: Any) -> Optional[dict]:
        try:
            data = await request.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def _feed_url(request: Any, token: str) -> str:
        base = settings.public_url or f"{request.scheme}://{request.host}"
        return f"{base.rstrip('/')}/feed/{token}"

    async def health_check(_request: Any) -> Any:
        return web.json_response(
            {"status": "ok", "scheduler_running": services.scheduler.is_running}
        )

    @user_route
    async def export_calendar(request: Any, user_id: str) -> Any:
        """Download the user's events as an .ics attachment."""
        try:
            start = _parse_query_datetime(request.query.get("start"))
            end = _parse_query_datetime(request.query.get("end"))
        except (ValueError, OverflowError):
            return web.json_response({"error": "invalid start or end date"}, status=400)

        body = await services.feed_service.export_calendar(user_id, start, end)
        return web.Response(
            text=body,
            content_type="text/calendar",
            charset="utf-8",
            headers={
                "Content-Disposition": (
                    f'attachment; filename="{feed_filename(settings.calendar_name)}"'
                )
            },
        )

    @user_route
    async def import_calendar(request: Any, user_id: str) -> Any:
        """Import events from a multipart ``file`` upload or JSON ``icalData``."""
        ical_data: Optional[str] = None

        if request.content_type.startswith("multipart/"):
            form = await request.post()
            field = form.get("file")
            if field is not None and hasattr(field, "file"):
                ical_data = field.file.read().decode("utf-8", errors="replace")
            elif isinstance(field, str):
                ical_data = field
        elif request.content_type == "text/calendar":
            ical_data = await request.text()
        else:
            data = await _read_json(request)
            if data is not None and isinstance(data.get("icalData"), str):
                ical_data = data["icalData"]

        if not ical_data or not ical_data.strip():
            return web.json_response({"error": "No iCal data provided"}, status=400)

        result = await services.feed_service.import_calendar(user_id, ical_data)
        return web.json_response(
            {"success": True, "imported": result.imported, "skipped": result.skipped}
        )

    @user_route
    async def list_subscriptions(_request: Any, user_id: str) -> Any:
        subscriptions = await services.subscriptions.list_for_owner(user_id)
        return web.json_response(
            {"subscriptions": [subscription_to_api(s) for s in subscriptions]}
        )

    @user_route
    async def create_subscription(request: Any, user_id: str) -> Any:
        """Subscribe to a remote calendar and run its first sync."""
        data = await _read_json(request)
        if data is None:
            return web.json_response({"error": "invalid json"}, status=400)

        name = str(data.get("name") or "").strip()
        url = normalize_calendar_url(str(data.get("url") or ""))
        if not name or not url:
            return web.json_response({"error": "name and url are required"}, status=400)
        if not services.fetcher.validate_url(url):
            return web.json_response({"error": "url is not allowed"}, status=400)
        try:
            sync_interval = _parse_sync_interval(data.get("syncIntervalMinutes"))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)

        try:
            subscription = await services.subscriptions.create(
                user_id,
                name,
                url,
                color=data.get("color") or settings.default_event_color,
                sync_enabled=bool(data.get("syncEnabled", True)),
                sync_interval_minutes=sync_interval or DEFAULT_SYNC_INTERVAL_MINUTES,
            )
        except DuplicateSubscriptionError as e:
            return web.json_response({"error": e.message}, status=409)

        sync_result = None
        if subscription.sync_enabled:
            sync_result = await services.orchestrator.sync_subscription(subscription)
            subscription = await services.subscriptions.get(subscription.id) or subscription

        return web.json_response(
            {
                "subscription": subscription_to_api(subscription),
                "sync": sync_result.model_dump() if sync_result else None,
            },
            status=201,
        )

    @user_route
    async def update_subscription(request: Any, user_id: str) -> Any:
        data = await _read_json(request)
        if data is None:
            return web.json_response({"error": "invalid json"}, status=400)

        sync_enabled = data.get("syncEnabled")
        try:
            sync_interval = _parse_sync_interval(data.get("syncIntervalMinutes"))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)

        subscription = await services.subscriptions.update(
            request.match_info["subscription_id"],
            user_id,
            name=data.get("name"),
            color=data.get("color"),
            sync_enabled=None if sync_enabled is None else bool(sync_enabled),
            sync_interval_minutes=sync_interval,
        )
        if subscription is None:
            raise NotFoundError("Subscription not found")
        return web.json_response({"subscription": subscription_to_api(subscription)})

    @user_route
    async def delete_subscription(request: Any, user_id: str) -> Any:
        """Delete a subscription and every event mirrored from it."""
        deleted = await services.subscriptions.delete(
            request.match_info["subscription_id"], user_id
        )
        if not deleted:
            raise NotFoundError("Subscription not found")
        return web.json_response({"success": True})

    @user_route
    async def sync_subscription(request: Any, user_id: str) -> Any:
        result = await services.orchestrator.sync_by_id(
            request.match_info["subscription_id"], user_id
        )
        return web.json_response(result.model_dump())

    @user_route
    async def sync_all_subscriptions(_request: Any, user_id: str) -> Any:
        results = await services.orchestrator.sync_all(user_id)
        return web.json_response({"results": [result.model_dump() for result in results]})

    @user_route
    async def list_feed_tokens(request: Any, user_id: str) -> Any:
        tokens = await services.feed_tokens.list_for_owner(user_id)
        return web.json_response({"tokens": [feed_token_to_api(t) for t in tokens]})

    @user_route
    async def create_feed_token(request: Any, user_id: str) -> Any:
        """Issue a feed token. The secret is only ever returned here."""
        data = await _read_json(request) or {}
        name = str(data.get("name") or "Calendar feed").strip()

        expires_at = None
        expires_in_days = data.get("expiresInDays")
        if expires_in_days is not None:
            try:
                days = int(expires_in_days)
            except (TypeError, ValueError):
                return web.json_response({"error": "expiresInDays must be an integer"}, status=400)
            if days <= 0:
                return web.json_response({"error": "expiresInDays must be positive"}, status=400)
            expires_at = datetime.now(timezone.utc) + timedelta(days=days)

        feed_token = await services.feed_tokens.create(user_id, name, expires_at)
        feed_url = _feed_url(request, feed_token.token)
        return web.json_response(
            {
                "id": feed_token.id,
                "name": feed_token.name,
                "token": feed_token.token,
                "feedUrl": feed_url,
                "webcalUrl": "webcal://" + feed_url.split("://", 1)[-1],
                "expiresAt": _iso(feed_token.expires_at),
            },
            status=201,
        )

    @user_route
    async def delete_feed_token(request: Any, user_id: str) -> Any:
        """Revoke a feed token, or delete it with ``?permanent=true``."""
        token_id = request.match_info["token_id"]
        permanent = request.query.get("permanent", "").lower() in ("1", "true", "yes")
        if permanent:
            done = await services.feed_tokens.delete(token_id, user_id)
        else:
            done = await services.feed_tokens.revoke(token_id, user_id)
        if not done:
            raise NotFoundError("Feed token not found")
        return web.json_response({"success": True})

    app.router.add_get("/health", health_check)
    app.router.add_get("/api/export", export_calendar)
    app.router.add_post("/api/import", import_calendar)
    app.router.add_get("/api/subscriptions", list_subscriptions)
    app.router.add_post("/api/subscriptions", create_subscription)
    app.router.add_post("/api/subscriptions/sync", sync_all_subscriptions)
    app.router.add_patch("/api/subscriptions/{subscription_id}", update_subscription)
    app.router.add_delete("/api/subscriptions/{subscription_id}", delete_subscription)
    app.router.add_post("/api/subscriptions/{subscription_id}/sync", sync_subscription)
    app.router.add_get("/api/feed-tokens", list_feed_tokens)
    app.router.add_post("/api/feed-tokens", create_feed_token)
    app.router.add_delete("/api/feed-tokens/{token_id}", delete_feed_token)
