"""Celery tasks driving the image optimization pipeline."""
from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy.orm import Session

from ..core.clock import to_timestamp, utcnow
from ..core.config import settings
from ..core.db import SessionLocal
from ..core.metrics import record_task_result
from ..optimization.api_client import MinificationClient
from ..optimization.control_state import FILE_SCANNER_LOCK, QUEUE_WORKER_LOCK, ControlStateStore
from ..optimization.file_manager import FileManager
from ..optimization.manager import Manager
from ..optimization.scanner import FileScanner
from ..optimization.signals import file_discovered
from ..optimization.worker import QueueWorker
from .celery_app import celery_app

logger = logging.getLogger(__name__)


def build_client() -> MinificationClient:
    return MinificationClient.from_settings(settings)


def build_file_manager() -> FileManager:
    return FileManager.from_settings(settings)


def build_scanner() -> FileScanner:
    return FileScanner(settings.CONTENT_DIR, settings.BACKUP_DIR, settings.SOURCE_FOLDER, settings.CONTENT_URL)


def build_manager(session: Session) -> Manager:
    """Manager wired to dispatch work through the Celery tasks below."""

    return Manager(
        session,
        dispatch_tick=lambda token: queue_worker_tick.delay(token),
        dispatch_scan=lambda: run_file_scanner.delay(),
        settings=settings,
    )


def _release(session: Session, name: str) -> None:
    try:
        ControlStateStore(session).release_lock(name)
        session.commit()
    except Exception:  # pragma: no cover - defensive
        session.rollback()
        logger.exception("Failed to release %s lock", name)


@celery_app.task(name="workers.run_file_scanner")
def run_file_scanner(discovered: int = 0) -> str:
    """Scan one batch of changed images and queue them.

    Unfinished scans re-enqueue themselves; a finished scan that found
    anything starts the queue worker.
    """

    if not settings.IMAGE_OPTIMIZATION_ENABLED:
        return "disabled"

    session = SessionLocal()
    control = ControlStateStore(session)
    locked = False

    try:
        if not control.acquire_lock(FILE_SCANNER_LOCK, ttl=settings.WORKER_LOCK_TTL):
            session.commit()
            logger.info("File scanner already running; skipping")
            return "locked"
        locked = True
        session.commit()

        batch = build_scanner().scan(control.get_checkpoint(), settings.SCANNER_BATCH_SIZE)
        for url, _relative_path in batch.files:
            file_discovered.send(sender=FileScanner, url=url, priority=0, session=session)
        control.save_checkpoint(batch.checkpoint)
        session.commit()

        discovered += len(batch.files)
        logger.info(
            "Scanned %s of %s candidate images (finished=%s)", len(batch.files), batch.candidates, batch.finished
        )

        if not batch.finished:
            _release(session, FILE_SCANNER_LOCK)
            locked = False
            run_file_scanner.delay(discovered)
            record_task_result("run_file_scanner", "continued")
            return "continued"

        if discovered:
            build_manager(session).run_queue_worker()
        record_task_result("run_file_scanner", "finished")
        return "finished"
    except Exception as exc:  # pragma: no cover - defensive logging
        session.rollback()
        logger.exception("File scanner failed: %s", exc)
        record_task_result("run_file_scanner", "failed")
        return "failed"
    finally:
        if locked:
            _release(session, FILE_SCANNER_LOCK)
        session.close()


@celery_app.task(name="workers.run_queue_worker")
def run_queue_worker() -> str:
    """Periodic trigger starting a queue worker run."""

    if not settings.IMAGE_OPTIMIZATION_ENABLED:
        return "disabled"

    session = SessionLocal()
    try:
        started = build_manager(session).run_queue_worker()
        status = "started" if started else "skipped"
        record_task_result("run_queue_worker", status)
        return status
    except Exception as exc:  # pragma: no cover - defensive logging
        session.rollback()
        logger.exception("Failed to start the queue worker: %s", exc)
        record_task_result("run_queue_worker", "failed")
        return "failed"
    finally:
        session.close()


@celery_app.task(name="workers.queue_worker_tick")
def queue_worker_tick(token: str | None = None) -> str:
    """Advance the queue by one step and schedule the next tick."""

    if not settings.IMAGE_OPTIMIZATION_ENABLED:
        return "disabled"

    session = SessionLocal()
    control = ControlStateStore(session)
    locked = False

    try:
        run = control.get_run()
        if run is None:
            return "no_run"
        if token is not None and token != run.token:
            logger.debug("Dropping superseded queue worker tick %s", token)
            return "superseded"
        if not control.acquire_lock(QUEUE_WORKER_LOCK, ttl=settings.WORKER_LOCK_TTL):
            session.commit()
            return "locked"
        locked = True
        session.commit()

        with build_client() as client:
            worker = QueueWorker(
                session,
                client=client,
                file_manager=build_file_manager(),
                control=control,
                return_url=run.return_url,
                settings=settings,
            )
            result = worker.tick()

        if result.stopped:
            status = "stopped"
        elif result.finished:
            status = "finished"
        else:
            run = control.schedule_run(result.next_due)
            session.commit()
            if run is not None:
                queue_worker_tick.apply_async(kwargs={"token": run.token}, eta=result.next_due)
            status = "postponed" if result.postponed else "scheduled"

        record_task_result("queue_worker_tick", status)
        return status
    except Exception as exc:  # pragma: no cover - defensive logging
        session.rollback()
        logger.exception("Queue worker tick failed: %s", exc)
        record_task_result("queue_worker_tick", "failed")
        return "failed"
    finally:
        if locked:
            _release(session, QUEUE_WORKER_LOCK)
        session.close()


@celery_app.task(name="workers.queue_worker_healthcheck")
def queue_worker_healthcheck() -> str:
    """Re-arm a run whose scheduled tick never arrived."""

    session = SessionLocal()
    control = ControlStateStore(session)

    try:
        run = control.get_run()
        if run is None:
            return "idle"
        if control.is_locked(QUEUE_WORKER_LOCK):
            return "busy"

        due = run.next_due if run.next_due is not None else run.started_at
        if due + settings.WORKER_HEALTHCHECK_INTERVAL > to_timestamp(utcnow()):
            return "ok"

        run = control.rearm_run()
        session.commit()
        logger.warning("Queue worker tick overdue since %s; re-arming the run", due)
        queue_worker_tick.delay(run.token)
        record_task_result("queue_worker_healthcheck", "rearmed")
        return "rearmed"
    except Exception as exc:  # pragma: no cover - defensive logging
        session.rollback()
        logger.exception("Queue worker health check failed: %s", exc)
        record_task_result("queue_worker_healthcheck", "failed")
        return "failed"
    finally:
        session.close()


@celery_app.task(name="workers.enqueue_attachments")
def enqueue_attachments(urls: Iterable[str], priority: int = 10) -> str:
    """Queue newly uploaded images with a higher priority than scanned ones."""

    if not settings.IMAGE_OPTIMIZATION_ENABLED:
        return "disabled"

    urls = list(urls)
    session = SessionLocal()
    try:
        created = build_manager(session).add_attachments_to_queue(urls, priority)
        logger.info("Queued %s jobs for %s new attachments", created, len(urls))
        return "queued"
    except Exception as exc:  # pragma: no cover - defensive logging
        session.rollback()
        logger.exception("Failed to queue attachments: %s", exc)
        return "failed"
    finally:
        session.close()
