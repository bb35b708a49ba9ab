from __future__ import annotations

import pytest

from digestcron.core.config import get_settings
from digestcron.persistence.blob_store import InMemoryBlobStore, set_blob_store
from digestcron.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch) -> None:
    # Pin every test to the in-memory store, noop mail and known secrets.
    monkeypatch.setenv("BLOB_BACKEND", "memory")
    monkeypatch.setenv("EMAIL_PROVIDER", "noop")
    monkeypatch.setenv("CRON_SECRET", "cron-secret")
    monkeypatch.setenv("ADMIN_API_TOKEN", "admin-token")
    monkeypatch.setenv("APP_BASE_URL", "https://app.example")
    monkeypatch.setenv("REPORT_LINK_TEMPLATE", "https://files.example/{file_id}")
    get_settings.cache_clear()
    reset_telemetry()
    set_blob_store(None)
    yield
    set_blob_store(None)
    get_settings.cache_clear()


@pytest.fixture
def store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
async def folder_id(store: InMemoryBlobStore) -> str:
    return await store.ensure_folder(get_settings().app_folder_name)
