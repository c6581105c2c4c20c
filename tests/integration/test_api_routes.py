"""Integration tests for the HTTP feed and JSON API routes."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Callable

import httpx
import pytest
import pytest_asyncio
from aiohttp import FormData
from aiohttp.test_utils import TestClient, TestServer

from calsync.api.server import create_app
from calsync.api.services import build_services

pytestmark = pytest.mark.integration

TEAM_URL = "https://cal.example.com/team.ics"
ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


@pytest.fixture
def remote(make_calendar) -> Callable[[httpx.Request], httpx.Response]:
    body = make_calendar(["UID:standup", "SUMMARY:Standup", "DTSTART:20250115T100000Z"])

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) != TEAM_URL:
            return httpx.Response(404)
        if request.method == "HEAD":
            return httpx.Response(200)
        return httpx.Response(200, text=body, headers={"Content-Type": "text/calendar"})

    return handler


@asynccontextmanager
async def api_client(
    settings: SimpleNamespace, handler: Callable[[httpx.Request], httpx.Response]
) -> AsyncIterator[TestClient]:
    services = build_services(settings, transport=httpx.MockTransport(handler))
    async with TestClient(TestServer(create_app(services))) as client:
        yield client


@pytest_asyncio.fixture
async def client(test_settings: SimpleNamespace, remote) -> AsyncIterator[TestClient]:
    async with api_client(test_settings, remote) as test_client:
        yield test_client


async def issue_token(client: TestClient, headers: dict = ALICE) -> dict:
    response = await client.post("/api/feed-tokens", json={"name": "Phone"}, headers=headers)
    assert response.status == 201
    return await response.json()


async def import_events(client: TestClient, content: str, headers: dict = ALICE) -> dict:
    response = await client.post("/api/import", json={"icalData": content}, headers=headers)
    assert response.status == 200
    return await response.json()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_when_called_then_ok(self, client: TestClient) -> None:
        response = await client.get("/health")

        assert response.status == 200
        assert (await response.json())["status"] == "ok"


class TestFeedRoute:
    """Tests for GET /feed/{token}."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/feed", "/feed/"])
    async def test_feed_when_token_missing_then_400(self, client: TestClient, path: str) -> None:
        response = await client.get(path)

        assert response.status == 400
        assert await response.text() == "Invalid token"

    @pytest.mark.asyncio
    async def test_feed_when_unknown_token_then_404(self, client: TestClient) -> None:
        response = await client.get("/feed/not-a-real-token")

        assert response.status == 404
        assert await response.text() == "Invalid or expired token"

    @pytest.mark.asyncio
    async def test_feed_when_valid_token_then_calendar_with_cache_headers(
        self, client: TestClient, make_calendar
    ) -> None:
        await import_events(
            client, make_calendar(["UID:1", "SUMMARY:Dentist", "DTSTART:20250203T150000Z"])
        )
        token = await issue_token(client)

        response = await client.get(f"/feed/{token['token']}")

        assert response.status == 200
        assert response.content_type == "text/calendar"
        assert response.charset == "utf-8"
        assert response.headers["Cache-Control"] == "private, must-revalidate, max-age=300"
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert response.headers["Access-Control-Expose-Headers"] == "ETag, Last-Modified"
        assert response.headers["Content-Disposition"] == 'inline; filename="test-calendar.ics"'
        assert response.headers["ETag"].startswith('"')
        assert response.headers["Last-Modified"].endswith("GMT")
        body = await response.text()
        assert "SUMMARY:Dentist" in body
        assert body.endswith("END:VCALENDAR\r\n")

    @pytest.mark.asyncio
    async def test_feed_when_ics_suffix_then_same_feed(self, client: TestClient) -> None:
        token = await issue_token(client)

        response = await client.get(f"/feed/{token['token']}.ics")

        assert response.status == 200

    @pytest.mark.asyncio
    async def test_feed_when_etag_revalidated_then_304_without_body(
        self, client: TestClient
    ) -> None:
        token = await issue_token(client)
        first = await client.get(f"/feed/{token['token']}")

        second = await client.get(
            f"/feed/{token['token']}", headers={"If-None-Match": first.headers["ETag"]}
        )

        assert second.status == 304
        assert second.headers["ETag"] == first.headers["ETag"]
        assert await second.read() == b""

    @pytest.mark.asyncio
    async def test_feed_when_token_revoked_then_404(self, client: TestClient) -> None:
        token = await issue_token(client)

        response = await client.delete(f"/api/feed-tokens/{token['id']}", headers=ALICE)
        feed = await client.get(f"/feed/{token['token']}")

        assert response.status == 200
        assert feed.status == 404


class TestFeedTokenRoutes:
    """Tests for /api/feed-tokens."""

    @pytest.mark.asyncio
    async def test_create_when_called_then_feed_and_webcal_urls(self, client: TestClient) -> None:
        token = await issue_token(client)

        assert len(token["token"]) == 32
        assert token["feedUrl"] == f"https://cal.example.org/feed/{token['token']}"
        assert token["webcalUrl"] == f"webcal://cal.example.org/feed/{token['token']}"
        assert token["expiresAt"] is None

    @pytest.mark.asyncio
    async def test_create_when_expiry_days_then_expires_at_set(self, client: TestClient) -> None:
        response = await client.post(
            "/api/feed-tokens", json={"name": "Laptop", "expiresInDays": 7}, headers=ALICE
        )

        assert response.status == 201
        assert (await response.json())["expiresAt"].endswith("Z")

    @pytest.mark.asyncio
    async def test_create_when_expiry_invalid_then_400(self, client: TestClient) -> None:
        response = await client.post(
            "/api/feed-tokens", json={"expiresInDays": "soon"}, headers=ALICE
        )

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_list_when_tokens_then_secret_redacted(self, client: TestClient) -> None:
        token = await issue_token(client)
        await issue_token(client, headers=BOB)

        response = await client.get("/api/feed-tokens", headers=ALICE)

        [listed] = (await response.json())["tokens"]
        assert "token" not in listed
        assert listed["tokenPreview"] == token["token"][:8] + "..."
        assert listed["isActive"] is True

    @pytest.mark.asyncio
    async def test_delete_when_other_users_token_then_404(self, client: TestClient) -> None:
        token = await issue_token(client)

        response = await client.delete(f"/api/feed-tokens/{token['id']}", headers=BOB)

        assert response.status == 404

    @pytest.mark.asyncio
    async def test_delete_when_permanent_then_removed_from_listing(
        self, client: TestClient
    ) -> None:
        token = await issue_token(client)

        await client.delete(f"/api/feed-tokens/{token['id']}?permanent=true", headers=ALICE)
        response = await client.get("/api/feed-tokens", headers=ALICE)

        assert (await response.json())["tokens"] == []


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_api_when_user_header_missing_then_401(self, client: TestClient) -> None:
        response = await client.get("/api/subscriptions")

        assert response.status == 401

    @pytest.mark.asyncio
    async def test_api_when_bearer_token_configured_then_required(
        self, test_settings: SimpleNamespace, remote
    ) -> None:
        test_settings.api_token = "s3cret"

        async with api_client(test_settings, remote) as client:
            denied = await client.get("/api/subscriptions", headers=ALICE)
            wrong = await client.get(
                "/api/subscriptions", headers={**ALICE, "Authorization": "Bearer nope"}
            )
            allowed = await client.get(
                "/api/subscriptions", headers={**ALICE, "Authorization": "Bearer s3cret"}
            )

        assert denied.status == 401
        assert wrong.status == 401
        assert allowed.status == 200


class TestImportExportRoutes:
    """Tests for /api/import and /api/export."""

    @pytest.mark.asyncio
    async def test_import_when_json_then_counts(self, client: TestClient, make_calendar) -> None:
        content = make_calendar(
            ["UID:1", "SUMMARY:Flight", "DTSTART:20250201T080000Z"],
            ["UID:2", "SUMMARY:Flight", "DTSTART:20250201T080000Z"],
        )

        data = await import_events(client, content)

        assert data == {"success": True, "imported": 1, "skipped": 1}

    @pytest.mark.asyncio
    async def test_import_when_multipart_file_then_imported(
        self, client: TestClient, make_calendar
    ) -> None:
        form = FormData()
        form.add_field(
            "file",
            make_calendar(["UID:1", "SUMMARY:Flight", "DTSTART:20250201T080000Z"]).encode(),
            filename="trip.ics",
            content_type="text/calendar",
        )

        response = await client.post("/api/import", data=form, headers=ALICE)

        assert response.status == 200
        assert (await response.json())["imported"] == 1

    @pytest.mark.asyncio
    async def test_import_when_raw_calendar_body_then_imported(
        self, client: TestClient, make_calendar
    ) -> None:
        response = await client.post(
            "/api/import",
            data=make_calendar(["UID:1", "SUMMARY:Flight", "DTSTART:20250201T080000Z"]),
            headers={**ALICE, "Content-Type": "text/calendar"},
        )

        assert (await response.json())["imported"] == 1

    @pytest.mark.asyncio
    async def test_import_when_no_data_then_400(self, client: TestClient) -> None:
        response = await client.post("/api/import", json={}, headers=ALICE)

        assert response.status == 400
        assert (await response.json())["error"] == "No iCal data provided"

    @pytest.mark.asyncio
    async def test_export_when_events_then_attachment(
        self, client: TestClient, make_calendar
    ) -> None:
        await import_events(
            client,
            make_calendar(
                ["UID:1", "SUMMARY:January", "DTSTART:20250110T080000Z"],
                ["UID:2", "SUMMARY:March", "DTSTART:20250310T080000Z"],
            ),
        )

        response = await client.get(
            "/api/export",
            params={"start": "2025-03-01T00:00:00Z", "end": "2025-03-31T23:59:59Z"},
            headers=ALICE,
        )

        assert response.status == 200
        assert response.headers["Content-Disposition"] == (
            'attachment; filename="test-calendar.ics"'
        )
        body = await response.text()
        assert "SUMMARY:March" in body
        assert "SUMMARY:January" not in body

    @pytest.mark.asyncio
    async def test_export_when_invalid_date_then_400(self, client: TestClient) -> None:
        response = await client.get("/api/export", params={"start": "next week"}, headers=ALICE)

        assert response.status == 400


class TestSubscriptionRoutes:
    """Tests for /api/subscriptions."""

    @pytest.mark.asyncio
    async def test_create_when_valid_then_synced_immediately(self, client: TestClient) -> None:
        response = await client.post(
            "/api/subscriptions",
            json={"name": "Team", "url": "webcal://cal.example.com/team.ics"},
            headers=ALICE,
        )

        assert response.status == 201
        data = await response.json()
        assert data["subscription"]["url"] == TEAM_URL
        assert data["subscription"]["color"] == "#3b82f6"
        assert data["subscription"]["lastSyncAt"] is not None
        assert data["sync"]["success"] is True
        assert data["sync"]["inserted"] == 1

    @pytest.mark.asyncio
    async def test_create_when_duplicate_then_409(self, client: TestClient) -> None:
        payload = {"name": "Team", "url": TEAM_URL, "syncEnabled": False}
        await client.post("/api/subscriptions", json=payload, headers=ALICE)

        response = await client.post("/api/subscriptions", json=payload, headers=ALICE)

        assert response.status == 409

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"name": "Team"},
            {"url": TEAM_URL},
            {"name": "Internal", "url": "http://127.0.0.1:8080/cal.ics"},
            {"name": "Files", "url": "file:///etc/passwd"},
        ],
    )
    async def test_create_when_invalid_then_400(self, client: TestClient, payload: dict) -> None:
        response = await client.post("/api/subscriptions", json=payload, headers=ALICE)

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_list_when_other_user_then_not_visible(self, client: TestClient) -> None:
        await client.post(
            "/api/subscriptions",
            json={"name": "Team", "url": TEAM_URL, "syncEnabled": False},
            headers=ALICE,
        )

        response = await client.get("/api/subscriptions", headers=BOB)

        assert (await response.json())["subscriptions"] == []

    @pytest.mark.asyncio
    async def test_update_when_patched_then_fields_changed(self, client: TestClient) -> None:
        created = await client.post(
            "/api/subscriptions",
            json={"name": "Team", "url": TEAM_URL, "syncEnabled": False},
            headers=ALICE,
        )
        subscription_id = (await created.json())["subscription"]["id"]

        response = await client.patch(
            f"/api/subscriptions/{subscription_id}",
            json={"name": "Team (work)", "color": "#ff8800"},
            headers=ALICE,
        )

        data = (await response.json())["subscription"]
        assert data["name"] == "Team (work)"
        assert data["color"] == "#ff8800"
        assert data["syncEnabled"] is False

    @pytest.mark.asyncio
    async def test_create_when_interval_given_then_returned(self, client: TestClient) -> None:
        default = await client.post(
            "/api/subscriptions",
            json={"name": "Team", "url": TEAM_URL, "syncEnabled": False},
            headers=ALICE,
        )
        custom = await client.post(
            "/api/subscriptions",
            json={
                "name": "Slow",
                "url": "https://cal.example.com/slow.ics",
                "syncEnabled": False,
                "syncIntervalMinutes": 120,
            },
            headers=ALICE,
        )

        assert (await default.json())["subscription"]["syncIntervalMinutes"] == 60
        assert custom.status == 201
        assert (await custom.json())["subscription"]["syncIntervalMinutes"] == 120

    @pytest.mark.asyncio
    @pytest.mark.parametrize("interval", [0, 4, 1441, "30", 12.5, True])
    async def test_create_when_interval_invalid_then_400(
        self, client: TestClient, interval
    ) -> None:
        response = await client.post(
            "/api/subscriptions",
            json={"name": "Team", "url": TEAM_URL, "syncIntervalMinutes": interval},
            headers=ALICE,
        )

        assert response.status == 400
        assert "syncIntervalMinutes" in (await response.json())["error"]

    @pytest.mark.asyncio
    async def test_update_when_interval_patched_then_changed(self, client: TestClient) -> None:
        created = await client.post(
            "/api/subscriptions",
            json={"name": "Team", "url": TEAM_URL, "syncEnabled": False},
            headers=ALICE,
        )
        subscription_id = (await created.json())["subscription"]["id"]

        rejected = await client.patch(
            f"/api/subscriptions/{subscription_id}",
            json={"syncIntervalMinutes": 2000},
            headers=ALICE,
        )
        response = await client.patch(
            f"/api/subscriptions/{subscription_id}",
            json={"syncIntervalMinutes": 15},
            headers=ALICE,
        )

        assert rejected.status == 400
        data = (await response.json())["subscription"]
        assert data["syncIntervalMinutes"] == 15
        assert data["name"] == "Team"

    @pytest.mark.asyncio
    async def test_update_when_unknown_then_404(self, client: TestClient) -> None:
        response = await client.patch(
            "/api/subscriptions/missing", json={"name": "x"}, headers=ALICE
        )

        assert response.status == 404

    @pytest.mark.asyncio
    async def test_sync_when_triggered_then_result_returned(self, client: TestClient) -> None:
        created = await client.post(
            "/api/subscriptions",
            json={"name": "Team", "url": TEAM_URL, "syncEnabled": False},
            headers=ALICE,
        )
        subscription_id = (await created.json())["subscription"]["id"]

        single = await client.post(f"/api/subscriptions/{subscription_id}/sync", headers=ALICE)
        everything = await client.post("/api/subscriptions/sync", headers=ALICE)

        assert (await single.json())["inserted"] == 1
        assert (await everything.json())["results"] == []

    @pytest.mark.asyncio
    async def test_sync_when_other_users_subscription_then_404(self, client: TestClient) -> None:
        created = await client.post(
            "/api/subscriptions",
            json={"name": "Team", "url": TEAM_URL, "syncEnabled": False},
            headers=ALICE,
        )
        subscription_id = (await created.json())["subscription"]["id"]

        response = await client.post(f"/api/subscriptions/{subscription_id}/sync", headers=BOB)

        assert response.status == 404

    @pytest.mark.asyncio
    async def test_delete_when_subscribed_then_mirrored_events_removed(
        self, client: TestClient
    ) -> None:
        created = await client.post(
            "/api/subscriptions", json={"name": "Team", "url": TEAM_URL}, headers=ALICE
        )
        subscription_id = (await created.json())["subscription"]["id"]

        deleted = await client.delete(f"/api/subscriptions/{subscription_id}", headers=ALICE)
        again = await client.delete(f"/api/subscriptions/{subscription_id}", headers=ALICE)
        export = await client.get("/api/export", headers=ALICE)

        assert deleted.status == 200
        assert again.status == 404
        assert "SUMMARY:Standup" not in await export.text()
