"""Pytest configuration.

Settings are read from the environment at import time, so the test defaults
are set here before anything from ``src`` or ``main`` is imported.
"""
import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("JWT_ALGORITHM", "HS256")
os.environ.setdefault("EXPORT_JOB_STORE", "memory")
os.environ.setdefault("EXPORT_RUNNER", "inline")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

import functools
from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport

from main import app
from src.db.models import MediaCategory
from src.export.routes import get_export_service
from src.export.runner import AsyncioJobRunner
from src.export.schemas import LocationItem, TagItem
from src.export.service import ExportService
from src.tasks.export_worker import run_export_job
from tests.fakes import (
    TTL_SECONDS,
    FakeBlobStore,
    FakeClock,
    FakeRecordStore,
    RecordingStore,
    make_record,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> RecordingStore:
    return RecordingStore(ttl_seconds=TTL_SECONDS, clock=clock)


@pytest.fixture
def export_root(tmp_path):
    root = tmp_path / "exports"
    root.mkdir()
    return root


@pytest.fixture
def journal():
    """Two owners; alice has tagged and located entries with media."""
    records = {
        "alice": [
            make_record(
                "a1",
                minutes=0,
                tags=[TagItem(key="mood", value="happy"), TagItem(key="trip")],
                locations=[LocationItem(latitude=6.5, longitude=3.4, city="Lagos", country_code="NG")],
            ),
            make_record("a2", minutes=5),
        ],
        "bob": [make_record("b1", minutes=1)],
    }
    media = {
        ("a1", MediaCategory.images): ["/images/alice/a1/sunset.jpg", "/images/alice/a1/beach.jpg"],
        ("a1", MediaCategory.audio): ["/audio/alice/a1/note.m4a"],
        ("b1", MediaCategory.images): ["/images/bob/b1/cat.png"],
    }
    assets = {
        "/images/alice/a1/sunset.jpg": b"sunset-bytes",
        "/images/alice/a1/beach.jpg": b"beach-bytes",
        "/audio/alice/a1/note.m4a": b"voice-note",
        "/images/bob/b1/cat.png": b"meow",
    }
    return FakeRecordStore(records=records, media=media), FakeBlobStore(assets)


@pytest.fixture
def make_service(store, export_root):
    def _make(record_store, blob_store) -> ExportService:
        job_fn = functools.partial(
            run_export_job,
            store=store,
            record_store=record_store,
            blob_store=blob_store,
            export_root=export_root,
        )
        return ExportService(store, AsyncioJobRunner(job_fn, store))
    return _make


@pytest.fixture
def service(make_service, journal) -> ExportService:
    record_store, blob_store = journal
    return make_service(record_store, blob_store)


@pytest.fixture
async def client(service) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_export_service] = lambda: service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await service.runner.join()
    app.dependency_overrides.clear()
