"""Tests for API endpoints."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.models import SyncStatus


async def _entry_for(services, remote_id, calendar_id="primary"):
    return await services.store.find_by_remote_id(calendar_id, remote_id)


@pytest.fixture
def seeded(fake_google):
    fake_google.add_event("primary", "Standup", event_id="e1")
    fake_google.add_event("primary", "Review", event_id="e2")
    return fake_google


@pytest.mark.asyncio
async def test_health_check(async_client):
    response = await async_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "connected", "syncing": False}


@pytest.mark.asyncio
async def test_health_check_without_services(async_client):
    from app.main import app

    app.state.services = None
    response = await async_client.get("/health")
    assert response.status_code == 503

    response = await async_client.get("/api/sync/status")
    assert response.status_code == 503


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_status_before_first_sync(async_client):
    response = await async_client.get("/api/sync/status")
    assert response.status_code == 200
    data = response.json()
    assert data["is_syncing"] is False
    assert data["last_sync_at"] is None
    assert data["pending_count"] == 0
    assert data["conflict_count"] == 0


@pytest.mark.asyncio
async def test_full_sync_endpoint(async_client, services, seeded):
    response = await async_client.post("/api/sync/full")

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["added"] == 2
    assert data["calendars_synced"] == 1
    assert len(await services.store.list_entries()) == 2

    status = (await async_client.get("/api/sync/status")).json()
    assert status["last_sync_at"] is not None
    assert status["last_success_at"] is not None


@pytest.mark.asyncio
async def test_foreground_sync_endpoint(async_client, seeded):
    await async_client.post("/api/sync/full")
    seeded.add_event("primary", "New one", event_id="e3")

    data = (await async_client.post("/api/sync/foreground")).json()

    assert data["success"] is True
    assert data["added"] == 1


@pytest.mark.asyncio
async def test_push_endpoint(async_client, services, fake_google):
    await async_client.post("/api/calendars/refresh")
    start = datetime.now(timezone.utc) + timedelta(days=1)
    entry = await services.store.create_local_entry("primary", "Dentist", start, start + timedelta(hours=1))

    data = (await async_client.post("/api/sync/push")).json()

    assert data["added"] == 1
    assert (await services.store.get_entry(entry.id)).sync_status == SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_push_retry_failed(async_client, services, fake_google):
    await async_client.post("/api/calendars/refresh")
    start = datetime.now(timezone.utc) + timedelta(days=1)
    entry = await services.store.create_local_entry("primary", "Flaky", start, start)
    fake_google.fail("POST", 400)

    first = (await async_client.post("/api/sync/push")).json()
    assert first["added"] == 0
    assert len(first["errors"]) == 1

    data = (await async_client.post("/api/sync/push", params={"retry_failed": "true"})).json()
    assert data["added"] == 1
    assert (await services.store.get_entry(entry.id)).retry_count == 0


@pytest.mark.asyncio
async def test_sync_logs_and_stats(async_client, seeded):
    await async_client.post("/api/sync/full")
    await async_client.post("/api/sync/foreground")

    logs = (await async_client.get("/api/sync/logs")).json()
    assert len(logs) == 2
    assert logs[0]["used_sync_token"] is True
    assert logs[1]["used_sync_token"] is False
    assert logs[1]["added_count"] == 2
    assert logs[0]["level"] == "info"

    limited = (await async_client.get("/api/sync/logs", params={"limit": 1})).json()
    assert len(limited) == 1

    stats = (await async_client.get("/api/sync/stats")).json()
    assert stats["total_sessions"] == 2
    assert stats["failed_count"] == 0
    assert stats["total_api_requests"] > 0


@pytest.mark.asyncio
async def test_export_and_clear_logs(async_client, seeded):
    await async_client.post("/api/sync/full")

    response = await async_client.get("/api/sync/logs/export")
    assert response.status_code == 200
    assert "attachment" in response.headers["content-disposition"]
    assert response.text.startswith("Schedule Sync Logs")
    assert "Total Logs: 1" in response.text

    assert (await async_client.delete("/api/sync/logs")).json() == {"status": "ok"}
    assert (await async_client.get("/api/sync/logs")).json() == []


@pytest.mark.asyncio
async def test_reset_tokens(async_client, services, seeded):
    await async_client.post("/api/sync/full")
    assert await services.token_store.get("primary") is not None

    response = await async_client.post("/api/sync/tokens/reset")

    assert response.json()["status"] == "ok"
    assert await services.token_store.get("primary") is None


@pytest.mark.asyncio
async def test_rebuild_is_rate_limited(async_client, services, seeded):
    first = await async_client.post("/api/sync/rebuild")
    assert first.status_code == 200
    assert first.json()["added"] == 2

    await async_client.post("/api/sync/rebuild")
    third = await async_client.post("/api/sync/rebuild")
    assert third.status_code == 429


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


async def _make_conflict(async_client, services, fake):
    await async_client.post("/api/sync/full")
    e1 = await _entry_for(services, "e1")
    e1.title = "Local title"
    await services.store.mark_edited(e1)
    fake.edit_event("primary", "e1", summary="Remote title")
    await async_client.post("/api/sync/foreground")
    return e1.id


@pytest.mark.asyncio
async def test_list_and_resolve_conflict(async_client, services, seeded):
    entry_id = await _make_conflict(async_client, services, seeded)

    conflicts = (await async_client.get("/api/sync/conflicts")).json()
    assert [c["id"] for c in conflicts] == [entry_id]
    assert conflicts[0]["title"] == "Local title"
    assert conflicts[0]["remote"]["summary"] == "Remote title"

    response = await async_client.post(
        f"/api/sync/conflicts/{entry_id}/resolve", json={"resolution": "use_remote"}
    )
    assert response.status_code == 200
    assert response.json()["title"] == "Remote title"
    assert (await async_client.get("/api/sync/conflicts")).json() == []


@pytest.mark.asyncio
async def test_resolve_conflict_errors(async_client, services, seeded):
    await async_client.post("/api/sync/full")
    e1 = await _entry_for(services, "e1")

    not_conflicted = await async_client.post(
        f"/api/sync/conflicts/{e1.id}/resolve", json={"resolution": "use_local"}
    )
    assert not_conflicted.status_code == 409

    missing = await async_client.post("/api/sync/conflicts/99999/resolve", json={"resolution": "use_local"})
    assert missing.status_code == 404

    invalid = await async_client.post(f"/api/sync/conflicts/{e1.id}/resolve", json={"resolution": "merge"})
    assert invalid.status_code == 422


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_refresh_and_list_calendars(async_client, fake_google):
    fake_google.add_calendar("work", "Work", accessRole="reader")

    refreshed = (await async_client.post("/api/calendars/refresh")).json()
    assert refreshed["added"] == 2
    assert refreshed["used_sync_token"] is False

    calendars = (await async_client.get("/api/calendars")).json()
    assert [c["calendar_id"] for c in calendars] == ["primary", "work"]
    assert calendars[0]["is_primary"] is True
    work = calendars[1]
    assert work["is_writable"] is False
    assert work["is_sync_enabled"] is True


@pytest.mark.asyncio
async def test_update_calendar_flags(async_client, services, fake_google):
    await async_client.post("/api/calendars/refresh")

    response = await async_client.patch("/api/calendars/primary", json={"is_sync_enabled": False})

    assert response.status_code == 200
    assert response.json()["is_sync_enabled"] is False
    assert response.json()["is_visible"] is True
    assert (await services.store.get_calendar("primary")).is_sync_enabled is False


@pytest.mark.asyncio
async def test_update_unknown_calendar(async_client):
    response = await async_client.patch("/api/calendars/nope", json={"is_visible": False})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_refresh_calendars_maps_auth_failure(async_client, fake_google):
    fake_google.fail("GET", 401, path_contains="calendarList")

    response = await async_client.post("/api/calendars/refresh")

    assert response.status_code == 401


# ---------------------------------------------------------------------------
# Trash
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_trash_list_and_restore(async_client, services, seeded):
    await async_client.post("/api/sync/full")
    seeded.cancel_event("primary", "e2")
    await async_client.post("/api/sync/foreground")

    trash = (await async_client.get("/api/trash")).json()
    assert trash["retention_days"] == 30
    assert trash["auto_purge"] is True
    (entry,) = trash["entries"]
    assert entry["title"] == "Review"
    assert entry["expires_at"] is not None
    assert entry["pending_remote_delete"] is False

    response = await async_client.post(f"/api/trash/{entry['id']}/restore")
    assert response.json() == {"status": "ok", "sync_status": "synced"}
    assert (await async_client.get("/api/trash")).json()["entries"] == []


@pytest.mark.asyncio
async def test_trash_delete_permanently(async_client, services, seeded):
    await async_client.post("/api/sync/full")
    e1 = await _entry_for(services, "e1")
    await services.store.soft_delete_entry(e1)

    response = await async_client.delete(f"/api/trash/{e1.id}")

    assert response.status_code == 200
    assert await services.store.get_entry(e1.id) is None
    assert (await async_client.delete(f"/api/trash/{e1.id}")).status_code == 404


@pytest.mark.asyncio
async def test_trash_delete_waits_for_remote_delete(async_client, services, seeded):
    await async_client.post("/api/sync/full")
    e1 = await _entry_for(services, "e1")
    await services.store.mark_edited(e1)
    await async_client.post("/api/sync/push")
    await services.store.delete_local_entry(await _entry_for(services, "e1"))

    response = await async_client.delete(f"/api/trash/{e1.id}")

    assert response.status_code == 409
    assert await services.store.get_entry(e1.id) is not None


@pytest.mark.asyncio
async def test_restore_entry_not_in_trash(async_client, services, seeded):
    await async_client.post("/api/sync/full")
    e1 = await _entry_for(services, "e1")

    assert (await async_client.post(f"/api/trash/{e1.id}/restore")).status_code == 404


@pytest.mark.asyncio
async def test_purge_trash(async_client, services, seeded):
    await async_client.post("/api/sync/full")
    e1 = await _entry_for(services, "e1")
    await services.store.soft_delete_entry(e1, now=datetime.now(timezone.utc) - timedelta(days=45))
    e2 = await _entry_for(services, "e2")
    await services.store.soft_delete_entry(e2)

    response = await async_client.post("/api/trash/purge")

    assert response.json() == {"purged": 1}
    assert await services.store.get_entry(e1.id) is None
    assert await services.store.get_entry(e2.id) is not None
