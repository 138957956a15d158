"""Entry points used by tasks and routes to drive the optimization pipeline."""
from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable

from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import Settings, get_settings
from ..models import ImageFormat
from .api_client import MinificationClient
from .control_state import (
    CHECKPOINT_KEY,
    FILE_SCANNER_LOCK,
    QUEUE_WORKER_LOCK,
    ControlStateStore,
    Running,
)
from .file_manager import FileManager
from .job_store import JobStore
from .notices import build_notices
from .signals import file_discovered

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/api/imagemin"


def add_file_to_queue(session: Session, url: str, priority: int = 0) -> int:
    """Queue ``url`` in every output format; returns the number of new jobs."""

    store = JobStore(session)
    created = 0
    for image_format in ImageFormat:
        if store.create_if_absent(url, image_format.value, priority) is not None:
            created += 1
    return created


@file_discovered.connect
def enqueue_discovered_file(sender=None, url=None, priority=0, session=None, **kwargs):
    add_file_to_queue(session, url, priority)


class Manager:
    """Starts, stops and inspects the scanner and queue worker.

    Task dispatch is injected so that callers decide how work is scheduled.
    """

    def __init__(
        self,
        session: Session,
        *,
        dispatch_tick: Callable[[str], Any],
        dispatch_scan: Callable[[], Any],
        clock: Callable[[], datetime] = utcnow,
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.dispatch_tick = dispatch_tick
        self.dispatch_scan = dispatch_scan
        self.clock = clock
        self.settings = settings or get_settings()
        self.control = ControlStateStore(session, clock=clock)
        self.store = JobStore(session, clock=clock)

    def callback_url(self) -> str:
        return self.settings.PUBLIC_URL.rstrip("/") + CALLBACK_PATH

    # Queue

    def add_file_to_queue(self, url: str, priority: int = 0) -> int:
        return add_file_to_queue(self.session, url, priority)

    def add_attachments_to_queue(self, urls: Iterable[str], priority: int = 10) -> int:
        """Queue freshly uploaded images ahead of the scanner backlog."""

        created = sum(self.add_file_to_queue(url, priority) for url in urls)
        self.session.commit()
        self.run_queue_worker()
        return created

    # Processes

    def run_rescan(self) -> bool:
        if self.control.is_locked(FILE_SCANNER_LOCK):
            logger.info("File scanner already running; rescan skipped")
            return False
        self.dispatch_scan()
        return True

    def run_queue_worker(self) -> bool:
        """Start (or wake up) the queue worker unless it is stopped, postponed or busy."""

        state = self.control.pipeline_state()
        if not isinstance(state, Running):
            logger.info("Queue worker not started: process is %s", state.kind)
            return False
        if self.control.is_locked(QUEUE_WORKER_LOCK):
            logger.debug("Queue worker tick in progress; not starting another")
            return False

        self.control.start_run(self.callback_url())
        run = self.control.rearm_run()
        self.session.commit()
        self.dispatch_tick(run.token)
        return True

    def interrupt(self, remove: bool = False) -> None:
        """Cancel the current run.

        With ``remove`` the queue and the scanner checkpoint are dropped,
        otherwise every job restarts from NEW.
        """

        if remove:
            removed = self.store.delete_all()
            self.control.delete(CHECKPOINT_KEY)
            logger.info("Image optimization interrupted; removed %s jobs", removed)
        else:
            reset = self.store.reset_all_to_new()
            logger.info("Image optimization interrupted; reset %s jobs", reset)
        self.control.clear_process_state()
        self.session.commit()

    def restart(self) -> None:
        self.interrupt()
        if self.settings.IMAGE_OPTIMIZATION_ENABLED:
            self.run_rescan()
            self.run_queue_worker()

    # Reporting

    def status(self, *, file_manager: FileManager, client: MinificationClient) -> Dict[str, Any]:
        state = self.control.pipeline_state()
        if isinstance(state, Running):
            descriptor = None
        elif state.kind == "postponed":
            descriptor = state.postponement.to_dict()
        else:
            descriptor = state.stop.to_dict()

        run = self.control.get_run()
        return {
            "enabled": self.settings.IMAGE_OPTIMIZATION_ENABLED,
            "state": state.kind,
            "descriptor": descriptor,
            "queue": self.store.count_by_status(),
            "run": asdict(run) if run else None,
            "stats": asdict(self.control.get_run_stats()),
            "completed": self.control.get_completed(),
            "notices": [
                asdict(notice)
                for notice in build_notices(
                    self.session,
                    file_manager=file_manager,
                    client=client,
                    control=self.control,
                    store=self.store,
                )
            ],
        }
