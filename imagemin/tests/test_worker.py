from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from imagemin.app.core.clock import to_timestamp
from imagemin.app.models import JobStatus
from imagemin.app.optimization.control_state import (
    AUTH_FAILED_401,
    AUTH_FAILED_CONFIG,
    CONCURRENCY_LIMIT,
    QUOTA_EXCEEDED,
    RATE_LIMIT,
    SAAS_NOT_AVAILABLE,
    ControlStateStore,
    Postponement,
    Stop,
)
from imagemin.app.optimization.failures import seconds_until_next_month
from imagemin.app.optimization.job_store import JobStore
from imagemin.app.optimization.manager import add_file_to_queue
from imagemin.app.optimization.signals import (
    optimization_complete,
    optimization_postponed,
    optimization_stopped,
)
from imagemin.app.optimization.worker import QueueWorker

RETURN_URL = "https://example.test/api/imagemin"


@pytest.fixture()
def worker(session, client, file_manager, clock, settings) -> QueueWorker:
    return QueueWorker(
        session,
        client=client,
        file_manager=file_manager,
        clock=clock,
        return_url=RETURN_URL,
        settings=settings,
    )


@pytest.fixture()
def control(session, clock) -> ControlStateStore:
    return ControlStateStore(session, clock=clock)


@pytest.fixture()
def received():
    events = {"postponed": [], "stopped": [], "complete": []}

    def on_postponed(sender=None, descriptor=None, **kwargs):
        events["postponed"].append(descriptor)

    def on_stopped(sender=None, descriptor=None, **kwargs):
        events["stopped"].append(descriptor)

    def on_complete(sender=None, stats=None, **kwargs):
        events["complete"].append(stats)

    optimization_postponed.connect(on_postponed, weak=False)
    optimization_stopped.connect(on_stopped, weak=False)
    optimization_complete.connect(on_complete, weak=False)
    try:
        yield events
    finally:
        optimization_postponed.disconnect(on_postponed)
        optimization_stopped.disconnect(on_stopped)
        optimization_complete.disconnect(on_complete)


def test_full_run_replaces_images(
    worker, session, clock, control, service, write_image, image_url, purger, received
) -> None:
    original = write_image("2024/05/a.jpg", size=1000, mtime=1_700_000_000)
    assert add_file_to_queue(session, image_url("2024/05/a.jpg")) == 2
    session.commit()
    store = JobStore(session, clock=clock)

    first = worker.tick()
    assert first.did_work is True
    assert first.next_due == clock()
    assert worker.tick().did_work is True
    assert [job["format"] for job in service.created] == ["original", "webp"]
    assert service.created[0]["return_url"] == RETURN_URL
    assert store.count_pending() == 2

    waiting = worker.tick()
    assert waiting.did_work is False
    assert waiting.finished is False
    assert waiting.next_due == clock() + timedelta(seconds=60)

    clock.advance(61)
    service.states.update({"ext-1": "complete", "ext-2": "complete"})
    for _ in range(4):
        assert worker.tick().did_work is True

    done = worker.tick()
    assert done.finished is True
    assert original.read_bytes() == b"y" * 400
    assert int(original.stat().st_mtime) == 1_700_000_000
    assert (original.parent / "a.jpg.webp").read_bytes() == b"y" * 400
    assert service.acknowledged == ["ext-1", "ext-2"]
    assert sum(store.count_by_status().values()) == 0

    summary = {"uploaded": 2, "downloaded": 2, "failed": 0, "finished_at": to_timestamp(clock())}
    assert control.get_completed() == summary
    assert received["complete"] == [summary]
    assert purger.calls == 1


def test_stop_short_circuits_the_tick(worker, session, control, service, make_job, image_url) -> None:
    make_job(image_url("a.jpg"))
    control.stop(Stop(reason=AUTH_FAILED_401))
    control.start_run(RETURN_URL)
    session.commit()

    result = worker.tick()

    assert result.stopped is True
    assert service.requests == []
    stop = control.get_stop()
    assert stop.reason == AUTH_FAILED_401
    assert stop.process_info["uploaded"] == 0
    assert "stopped_by_error_at" in stop.process_info
    assert control.get_run() is None


def test_postponement_defers_until_due(worker, session, clock, control, service, make_job, image_url) -> None:
    make_job(image_url("a.jpg"))
    control.postpone(Postponement(reason=RATE_LIMIT, next_retry_in=120))
    session.commit()
    due = clock() + timedelta(seconds=120)

    clock.advance(60)
    deferred = worker.tick()
    assert deferred.postponed is True
    assert deferred.next_due == due
    assert service.requests == []
    assert control.get_postponement().retries == 0

    clock.advance(61)
    resumed = worker.tick()
    assert resumed.did_work is True
    assert len(service.created) == 1
    assert control.get_postponement() is None


def test_unavailable_service_backs_off_further(worker, session, clock, control) -> None:
    control.save_postponement(
        Postponement(reason=SAAS_NOT_AVAILABLE, next_retry_in=300, retries=12, created_at=to_timestamp(clock()) - 400)
    )
    session.commit()

    result = worker.tick()

    assert result.postponed is True
    assert control.get_postponement().next_retry_in == 3600
    assert result.next_due == clock() + timedelta(seconds=3200)


def test_exhausted_auth_retries_stop_the_process(worker, session, clock, control, received) -> None:
    control.save_postponement(
        Postponement(
            reason=AUTH_FAILED_401,
            next_retry_in=900,
            retries=96,
            max_retries=96,
            created_at=to_timestamp(clock()) - 1000,
        )
    )
    session.commit()

    result = worker.tick()

    assert result.stopped is True
    assert control.get_stop().reason == AUTH_FAILED_401
    assert control.get_postponement() is None
    assert [stop.reason for stop in received["stopped"]] == [AUTH_FAILED_401]


def test_server_error_postpones_without_failing_the_job(
    worker, clock, control, service, make_job, image_url, reporter, received
) -> None:
    job = make_job(image_url("a.jpg"))
    service.fail_next("create_job", httpx.Response(500))

    result = worker.tick()

    assert result.postponed is True
    assert result.next_due == clock() + timedelta(seconds=300)
    assert job.status == JobStatus.NEW.value
    assert control.get_postponement().reason == SAAS_NOT_AVAILABLE
    assert control.get_run_stats().failed == 0
    assert len(reporter.reports) == 1
    assert [descriptor.reason for descriptor in received["postponed"]] == [SAAS_NOT_AVAILABLE]


def test_missing_configuration_stops_the_process(
    session, make_client, file_manager, clock, control, settings, service, make_job, image_url
) -> None:
    job = make_job(image_url("a.jpg"))
    worker = QueueWorker(
        session, client=make_client(unique_id=""), file_manager=file_manager, clock=clock, settings=settings
    )

    result = worker.tick()

    assert result.stopped is True
    assert control.get_stop().reason == AUTH_FAILED_CONFIG
    assert job.status == JobStatus.NEW.value
    assert service.requests == []


def test_quota_exceeded_postpones_until_next_month(worker, clock, control, service, make_job, image_url) -> None:
    job = make_job(image_url("a.jpg"), status=JobStatus.PENDING, job_id="ext-1", retries=1, postponed_until=clock())
    service.extra_data = {"usage": "exceeded"}

    result = worker.tick()

    assert result.postponed is True
    assert result.next_due == clock() + timedelta(seconds=seconds_until_next_month(clock()))
    assert control.get_postponement().reason == QUOTA_EXCEEDED
    assert job.status == JobStatus.PENDING.value
    assert job.retries == 2


def test_concurrency_limit_only_blocks_uploads(worker, clock, control, service, make_job, image_url) -> None:
    make_job(image_url("a.jpg"))
    second = make_job(image_url("b.jpg"))
    service.extra_data = {"concurrency_limit": 1}

    assert worker.tick().did_work is True
    assert control.get_concurrency_limit(20) == 1

    blocked = worker.tick()
    assert blocked.did_work is False
    assert blocked.next_due == clock() + timedelta(seconds=60)
    assert control.get_postponement().reason == CONCURRENCY_LIMIT
    assert second.status == JobStatus.NEW.value

    again = worker.tick()
    assert again.did_work is False
    assert len(service.created) == 1

    clock.advance(61)
    service.states["ext-1"] = "complete"
    assert worker.tick().did_work is True
    assert control.get_postponement() is None


def test_concurrency_limit_lifts_when_pending_jobs_leave_without_progress(
    worker, clock, control, service, make_job, image_url
) -> None:
    control.save_concurrency_limit(1, ttl=3600)
    pending = make_job(
        image_url("a.jpg"),
        status=JobStatus.PENDING,
        job_id="ext-1",
        retries=10,
        postponed_until=clock() + timedelta(seconds=100),
    )
    new = make_job(image_url("b.jpg"))

    first = worker.tick()
    assert first.next_due == clock() + timedelta(seconds=100)
    assert control.get_postponement().reason == CONCURRENCY_LIMIT

    clock.advance(1000)
    second = worker.tick()
    assert pending.status == JobStatus.FAILED.value
    assert second.next_due == clock()
    assert second.postponed is False
    assert control.get_postponement() is None

    third = worker.tick()
    assert third.did_work is True
    assert new.status == JobStatus.PENDING.value
    assert len(service.calls("create_job")) == 1


def test_active_postponement_keeps_precedence_over_auth_failure(
    worker, session, clock, control, service, make_job, image_url
) -> None:
    control.postpone(Postponement(reason=RATE_LIMIT, next_retry_in=300))
    session.commit()
    clock.advance(301)
    job = make_job(image_url("a.jpg"), status=JobStatus.PENDING, job_id="ext-1", retries=1, postponed_until=clock())
    service.fail_next("get_job", httpx.Response(401))

    result = worker.tick()

    assert result.postponed is True
    postponement = control.get_postponement()
    assert postponement.reason == RATE_LIMIT
    assert postponement.next_retry_in == 300
    assert postponement.retries == 1
    assert job.status == JobStatus.PENDING.value
    assert control.get_stop() is None


def test_failed_remote_job_is_marked_failed(worker, clock, control, service, make_job, image_url, reporter) -> None:
    job = make_job(image_url("a.jpg"), status=JobStatus.PENDING, job_id="ext-1", retries=1, postponed_until=clock())
    service.states["ext-1"] = "failed"
    service.extra_data = {"error": "corrupt image"}

    result = worker.tick()

    assert result.did_work is True
    assert job.status == JobStatus.FAILED.value
    assert job.error_code == "job_failed_in_saas"
    assert job.error_message == "corrupt image"
    assert control.get_run_stats().failed == 1

    report = reporter.reports[0]
    assert report["tags"] == {"feature": "image_optimization", "unique_id": "site-1"}
    assert report["context"]["job_id"] == "ext-1"
    assert "secret" not in report["context"]


def test_max_retries_fail_without_polling(worker, clock, control, service, make_job, image_url, purger) -> None:
    job = make_job(image_url("a.jpg"), status=JobStatus.PENDING, job_id="ext-1", retries=10, postponed_until=clock())

    result = worker.tick()

    assert job.status == JobStatus.FAILED.value
    assert job.error_code == "max_retries"
    assert service.calls("get_job") == []
    assert result.finished is True
    assert control.get_completed()["failed"] == 1
    assert purger.calls == 0


def test_unknown_remote_state_is_postponed(worker, clock, service, make_job, image_url) -> None:
    job = make_job(image_url("a.jpg"), status=JobStatus.PENDING, job_id="ext-1", retries=1, postponed_until=clock())
    service.states["ext-1"] = "exploded"

    result = worker.tick()

    assert job.status == JobStatus.PENDING.value
    assert job.postponed_until_utc == clock() + timedelta(seconds=240)
    assert result.next_due == job.postponed_until_utc


def test_missing_source_drops_the_job(worker, session, service, make_job, image_url) -> None:
    job = make_job(image_url("gone.jpg"), status=JobStatus.TO_DOWNLOAD, job_id="ext-1")

    result = worker.tick()

    assert JobStore(session).find(job.id) is None
    assert service.calls("download") == []
    assert result.finished is True


def test_download_not_found_fails_the_job(worker, service, write_image, make_job, image_url) -> None:
    write_image("a.jpg")
    job = make_job(image_url("a.jpg"), status=JobStatus.TO_DOWNLOAD, job_id="ext-1")
    service.fail_next("download", httpx.Response(404))

    worker.tick()

    assert job.status == JobStatus.FAILED.value
    assert job.error_code == "image_download_failed"


def test_download_outage_returns_job_to_the_queue(worker, control, service, write_image, make_job, image_url) -> None:
    write_image("a.jpg")
    job = make_job(image_url("a.jpg"), status=JobStatus.TO_DOWNLOAD, job_id="ext-1")
    service.fail_next("download", httpx.Response(503))

    result = worker.tick()

    assert result.postponed is True
    assert job.status == JobStatus.TO_DOWNLOAD.value
    assert control.get_postponement().reason == SAAS_NOT_AVAILABLE


def test_stale_download_is_resumed(worker, session, clock, write_image, make_job, image_url) -> None:
    path = write_image("a.jpg", size=1000)
    job = make_job(
        image_url("a.jpg"),
        status=JobStatus.DOWNLOADING,
        job_id="ext-1",
        modified_at=clock() - timedelta(hours=1),
    )

    assert worker.tick().did_work is True
    assert JobStore(session).find(job.id) is None
    assert path.read_bytes() == b"y" * 400


def test_empty_queue_completes_without_purging(worker, control, purger, received) -> None:
    result = worker.tick()

    assert result.finished is True
    assert control.get_completed()["downloaded"] == 0
    assert received["complete"] == []
    assert purger.calls == 0
