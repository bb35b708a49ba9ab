from __future__ import annotations

from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from digestcron.apps.api.deps import get_store, get_tick_dependencies
from digestcron.apps.api.main import create_app
from digestcron.core.config import get_settings
from digestcron.domain.documents import BreakerError, JobRunLogEntry
from digestcron.services.notifications.breaker import (
    TargetRef,
    load_breaker_state,
    record_send_failure,
    save_breaker_state,
)
from digestcron.services.notifications.identity import ServiceCredentials
from digestcron.services.scheduler.orchestrator import TickDependencies
from digestcron.services.scheduler.run_log import JobRunLog
from digestcron.tests.utils.fakes import MONDAY_9AM, RecordingEmailSender, recording_senders, seed_folder


CRON_AUTH = {"Authorization": "Bearer cron-secret"}
ADMIN_AUTH = {"Authorization": "Bearer admin-token"}


def _app(store):
    # Bind every route to the test's in-memory store.
    app = create_app()
    app.dependency_overrides[get_store] = lambda: store
    return app


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_uses_success_envelope(store) -> None:
    async with _client(_app(store)) as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-1"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["data"] == {"status": "ok"}
    assert payload["meta"] == {"request_id": "req-1", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-1"


@pytest.mark.asyncio
async def test_cron_run_requires_the_cron_secret(store) -> None:
    async with _client(_app(store)) as client:
        missing = await client.post("/v1/cron/run")
        wrong = await client.get("/v1/cron/run", headers={"Authorization": "Bearer nope"})
        admin = await client.get("/v1/cron/run", headers=ADMIN_AUTH)
    for response in (missing, wrong, admin):
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert missing.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_cron_secret_unset_denies_everyone(store, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", "")
    get_settings.cache_clear()
    async with _client(_app(store)) as client:
        response = await client.post("/v1/cron/run", headers={"Authorization": "Bearer "})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_cron_run_accepts_get_and_post(store) -> None:
    async with _client(_app(store)) as client:
        posted = await client.post("/v1/cron/run", headers=CRON_AUTH)
        fetched = await client.get("/v1/cron/run", headers=CRON_AUTH)
    for response in (posted, fetched):
        assert response.status_code == 200
        assert response.json()["data"] == {"ok": True, "ranJobs": []}


@pytest.mark.asyncio
async def test_ops_endpoints_require_admin_token(store) -> None:
    async with _client(_app(store)) as client:
        response = await client.get("/v1/ops/status", headers=CRON_AUTH)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_ops_status_and_job_runs(store, folder_id) -> None:
    await JobRunLog(store, folder_id=folder_id).append(
        JobRunLogEntry(ts=MONDAY_9AM, job_id="weekly", type="week_in_review", ok=False, error="index offline")
    )
    async with _client(_app(store)) as client:
        status = await client.get("/v1/ops/status", headers=ADMIN_AUTH)
        tail = await client.get("/v1/ops/job-runs", headers=ADMIN_AUTH)
        month = await client.get("/v1/ops/job-runs", params={"month": "202601", "limit": 1}, headers=ADMIN_AUTH)
        bad = await client.get("/v1/ops/job-runs", params={"month": "jan"}, headers=ADMIN_AUTH)

    assert status.status_code == 200
    data = status.json()["data"]
    assert data["lastRuns"]["weekly"]["error"] == "index offline"
    assert data["lock"]["held"] is False
    assert [item["jobId"] for item in tail.json()["data"]["items"]] == ["weekly"]
    assert month.json()["data"]["month"] == "202601"
    assert len(month.json()["data"]["items"]) == 1
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "BAD_REQUEST"


@pytest.mark.asyncio
async def test_ops_targets_list_and_unmute(store, folder_id) -> None:
    state = await load_breaker_state(store, folder_id=folder_id)
    target = TargetRef(channel="webhook", target_key="OPS_HOOK")
    # Muted relative to the wall clock so the listing sees a live mute.
    now = datetime.now(timezone.utc)
    for _ in range(3):
        record_send_failure(state, target, BreakerError(message="down", status=503), now=now)
    await save_breaker_state(store, folder_id=folder_id, state=state)

    async with _client(_app(store)) as client:
        listed = await client.get("/v1/ops/targets", headers=ADMIN_AUTH)
        unmuted = await client.post(
            "/v1/ops/targets",
            json={"action": "unmute", "channel": "webhook", "targetKey": "ops_hook"},
            headers=ADMIN_AUTH,
        )
        relisted = await client.get("/v1/ops/targets", headers=ADMIN_AUTH)
        no_recipient = await client.post(
            "/v1/ops/targets", json={"action": "unmute", "channel": "email"}, headers=ADMIN_AUTH
        )
        bad_action = await client.post(
            "/v1/ops/targets", json={"action": "mute", "channel": "slack", "targetKey": "OPS"}, headers=ADMIN_AUTH
        )

    assert [entry["key"] for entry in listed.json()["data"]["muted"]] == ["webhook:OPS_HOOK"]
    assert unmuted.status_code == 200
    assert unmuted.json()["data"]["target"]["state"] == "open"
    assert relisted.json()["data"]["muted"] == []
    assert no_recipient.status_code == 400
    assert bad_action.status_code == 422
    assert bad_action.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_schedule_read_and_strict_write(store) -> None:
    valid = {
        "version": 1,
        "jobs": [{"id": "alerts", "type": "alerts", "schedule": {"cron": "*/15 * * * *"}}],
        "recipientProfiles": [],
    }
    invalid = {
        "jobs": [
            {
                "id": "weekly",
                "type": "week_in_review",
                "schedule": {"cron": "0 9 * * MON"},
                "notify": {"enabled": True, "mode": "routes", "routes": [{"profileId": "ghost"}]},
            }
        ]
    }
    async with _client(_app(store)) as client:
        initial = await client.get("/v1/ops/schedule", headers=ADMIN_AUTH)
        written = await client.put("/v1/ops/schedule", json=valid, headers=ADMIN_AUTH)
        rejected = await client.put("/v1/ops/schedule", json=invalid, headers=ADMIN_AUTH)
        after = await client.get("/v1/ops/schedule", headers=ADMIN_AUTH)

    assert initial.json()["data"]["config"]["jobs"] == []
    assert written.status_code == 200
    assert written.json()["data"]["config"]["jobs"][0]["id"] == "alerts"
    assert rejected.status_code == 400
    assert rejected.json()["error"]["code"] == "CONFIG_INVALID"
    assert [job["id"] for job in after.json()["data"]["config"]["jobs"]] == ["alerts"]


@pytest.mark.asyncio
async def test_run_now_uses_overridden_tick_wiring(store, folder_id) -> None:
    schedule = {
        "jobs": [
            {
                "id": "pulse",
                "type": "alerts",
                "schedule": {"cron": "* * * * *"},
                "notify": {"enabled": True, "to": ["team@example.com"], "sendWhenEmpty": True},
            }
        ]
    }
    await seed_folder(store, folder_id, schedule=schedule)
    email = RecordingEmailSender()

    async def credentials(settings) -> ServiceCredentials:
        return ServiceCredentials(provider="noop")

    app = _app(store)
    app.dependency_overrides[get_tick_dependencies] = lambda: TickDependencies(
        store=store,
        credentials_resolver=credentials,
        senders_factory=lambda creds, settings: recording_senders(email=email),
    )
    async with _client(app) as client:
        response = await client.post("/v1/ops/run-now", headers=ADMIN_AUTH)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["ok"] is True
    assert [job["jobId"] for job in data["ranJobs"]] == ["pulse"]
    assert data["ranJobs"][0]["email"]["ok"] is True
    assert [message.to for message in email.sent] == [["team@example.com"]]
