from __future__ import annotations

import json
import os
import re
import sys
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from imagemin.app.core import db as db_module
from imagemin.app.core.config import settings as app_settings
from imagemin.app.core.reporting import NoopPurger, set_purger, set_reporter, LoggingReporter
from imagemin.app.main import create_app
from imagemin.app.models import Base, JobStatus, OptimizationJob
from imagemin.app.optimization.api_client import MinificationClient
from imagemin.app.optimization.file_manager import FileManager
from imagemin.app.optimization.job_store import generate_secret
from imagemin.app.workers import tasks as tasks_module

START = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
SAAS_URL = "https://saas.test/"
CONTENT_URL = "https://example.test/wp-content"

# Real task objects, kept before the ``tasks`` fixture swaps in recorders.
REAL_TASKS = SimpleNamespace(
    run_file_scanner=tasks_module.run_file_scanner,
    run_queue_worker=tasks_module.run_queue_worker,
    queue_worker_tick=tasks_module.queue_worker_tick,
    queue_worker_healthcheck=tasks_module.queue_worker_healthcheck,
    enqueue_attachments=tasks_module.enqueue_attachments,
)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeMinificationService:
    """In-memory stand-in for the remote service behind ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.created: list[dict[str, str]] = []
        self.states: dict[str, str] = {}
        self.payloads: dict[str, bytes] = {}
        self.acknowledged: list[str] = []
        self.overrides: dict[str, list[httpx.Response]] = {}
        self.extra_data: dict[str, Any] = {}
        self.default_payload = b"y" * 400

    def fail_next(self, operation: str, response: httpx.Response) -> None:
        self.overrides.setdefault(operation, []).append(response)

    def calls(self, operation: str) -> list[httpx.Request]:
        return [request for request in self.requests if self._operation(request) == operation]

    @staticmethod
    def _operation(request: httpx.Request) -> str:
        path = request.url.path
        if path.startswith("/v1/image-minification/download/"):
            return "download"
        if path == "/v1/image-minification/ack/":
            return "acknowledge"
        if path == "/v1/image-minification" and request.method == "POST":
            return "create_job"
        if re.fullmatch(r"/v1/image-minification/[^/]+/", path):
            return "get_job"
        return "unknown"

    def _json(self, data: dict[str, Any], status_code: int = 200) -> httpx.Response:
        body = {"status": status_code, "data": {**data, **self.extra_data}}
        return httpx.Response(status_code, content=json.dumps(body), headers={"Content-Type": "application/json"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        operation = self._operation(request)
        queued = self.overrides.get(operation)
        if queued:
            return queued.pop(0)

        if operation == "create_job":
            form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
            job_id = f"ext-{len(self.created) + 1}"
            self.created.append({**form, "id": job_id})
            self.states[job_id] = "processing"
            return self._json({"id": job_id})
        if operation == "get_job":
            job_id = request.url.path.rstrip("/").rsplit("/", 1)[-1]
            return self._json({"state": self.states.get(job_id, "processing")})
        if operation == "acknowledge":
            form = parse_qs(request.content.decode())
            self.acknowledged.append(form["id"][0])
            return self._json({})
        if operation == "download":
            job_id = request.url.path.rstrip("/").rsplit("/", 1)[-1]
            return httpx.Response(200, content=self.payloads.get(job_id, self.default_payload))
        return httpx.Response(404)


class RecordingReporter:
    def __init__(self) -> None:
        self.reports: list[dict[str, Any]] = []

    def report(self, message: str, *, context, tags) -> None:
        self.reports.append({"message": message, "context": dict(context), "tags": dict(tags)})


class RecordingPurger:
    def __init__(self) -> None:
        self.calls = 0

    def purge(self) -> None:
        self.calls += 1


@pytest.fixture()
def engine() -> Iterator:
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)


@pytest.fixture()
def session(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def content_dir(tmp_path: Path) -> Path:
    path = tmp_path / "wp-content"
    (path / "uploads").mkdir(parents=True)
    return path


@pytest.fixture()
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, content_dir: Path):
    """The shared settings object pointed at a temporary site."""

    overrides = {
        "IMAGE_OPTIMIZATION_ENABLED": True,
        "SAAS_URL": SAAS_URL,
        "SAAS_KEY": "s3cret-key",
        "UNIQUE_ID": "site-1",
        "SITE_URL": "https://example.test",
        "PUBLIC_URL": "https://example.test/",
        "CONTENT_DIR": str(content_dir),
        "CONTENT_URL": CONTENT_URL,
        "SOURCE_FOLDER": "uploads",
        "BACKUP_DIR": str(tmp_path / "imagemin" / "backup"),
        "DOWNLOAD_DIR": str(tmp_path / "imagemin" / "download"),
        "SCANNER_BATCH_SIZE": 100,
        "WORKER_MAX_RETRIES": 10,
        "DEFAULT_CONCURRENCY_LIMIT": 20,
    }
    for key, value in overrides.items():
        monkeypatch.setattr(app_settings, key, value)
    return app_settings


@pytest.fixture()
def service() -> FakeMinificationService:
    return FakeMinificationService()


@pytest.fixture()
def make_client(service: FakeMinificationService):
    clients: list[MinificationClient] = []

    def _make(**overrides: Any) -> MinificationClient:
        options = {
            "base_url": SAAS_URL,
            "unique_id": "site-1",
            "secret_key": "s3cret-key",
            "site_url": "https://example.test",
            "transport": httpx.MockTransport(service.handler),
        }
        options.update(overrides)
        client = MinificationClient(**options)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


@pytest.fixture()
def client(make_client) -> MinificationClient:
    return make_client()


@pytest.fixture()
def file_manager(settings) -> FileManager:
    manager = FileManager.from_settings(settings)
    manager.create_dirs()
    return manager


@pytest.fixture()
def reporter() -> Iterator[RecordingReporter]:
    recording = RecordingReporter()
    set_reporter(recording)
    try:
        yield recording
    finally:
        set_reporter(LoggingReporter())


@pytest.fixture()
def purger() -> Iterator[RecordingPurger]:
    recording = RecordingPurger()
    set_purger(recording)
    try:
        yield recording
    finally:
        set_purger(NoopPurger())


@pytest.fixture()
def write_image(content_dir: Path):
    """Create ``uploads/<relative>`` with ``size`` bytes and an optional mtime."""

    def _write(relative: str, size: int = 1000, mtime: int | None = None) -> Path:
        path = content_dir / "uploads" / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x" * size)
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    return _write


@pytest.fixture()
def image_url():
    def _url(relative: str) -> str:
        return f"{CONTENT_URL}/uploads/{relative}"

    return _url


@pytest.fixture()
def make_job(session: Session, clock: FakeClock):
    """Insert a job directly in the given state."""

    def _make(
        url: str,
        *,
        format: str = "original",
        status: JobStatus = JobStatus.NEW,
        job_id: str | None = None,
        retries: int = 0,
        priority: int = 0,
        postponed_until: datetime | None = None,
        modified_at: datetime | None = None,
    ) -> OptimizationJob:
        job = OptimizationJob(
            url=url,
            format=format,
            status=status.value,
            secret=generate_secret(),
            job_id=job_id,
            retries=retries,
            priority=priority,
            created_at=clock(),
            modified_at=modified_at or clock(),
            postponed_until=postponed_until,
        )
        session.add(job)
        session.commit()
        return job

    return _make


@pytest.fixture()
def real_tasks() -> SimpleNamespace:
    return REAL_TASKS


@pytest.fixture()
def tasks(monkeypatch: pytest.MonkeyPatch, session_factory: sessionmaker, make_client) -> SimpleNamespace:
    """Route task dispatch into lists instead of a broker."""

    calls = SimpleNamespace(ticks=[], scheduled=[], scans=[])

    class _TickTask:
        def delay(self, token: str | None = None) -> SimpleNamespace:
            calls.ticks.append(token)
            return SimpleNamespace(id=f"tick-{token}")

        def apply_async(self, args=None, kwargs=None, eta=None, **options) -> SimpleNamespace:
            calls.scheduled.append({"kwargs": kwargs or {}, "eta": eta})
            return SimpleNamespace(id="tick-scheduled")

    class _ScanTask:
        def delay(self, discovered: int = 0) -> SimpleNamespace:
            calls.scans.append(discovered)
            return SimpleNamespace(id="scan")

    monkeypatch.setattr(db_module, "SessionLocal", session_factory)
    monkeypatch.setattr(tasks_module, "SessionLocal", session_factory)
    monkeypatch.setattr(tasks_module, "queue_worker_tick", _TickTask())
    monkeypatch.setattr(tasks_module, "run_file_scanner", _ScanTask())
    monkeypatch.setattr(tasks_module, "build_client", lambda: make_client())
    return calls


def _session_ctx(factory: sessionmaker):
    def _get_session() -> Iterator[Session]:
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _get_session


@pytest.fixture()
def app(session_factory: sessionmaker, settings, tasks) -> TestClient:
    app = create_app()
    app.dependency_overrides[db_module.get_session] = _session_ctx(session_factory)
    return TestClient(app)
