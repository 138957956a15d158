"""Queue worker: advances the optimization queue one step per invocation.

Every call to :meth:`QueueWorker.tick` runs a single decision cascade:

1. a stored stop descriptor ends the run;
2. a stored postponement either defers the tick or, for the concurrency
   limit, only forbids uploads;
3. download one optimized image;
4. poll the status of one pending job;
5. upload one new image;
6. otherwise work out when the next tick is due or finish the run.

The first phase that makes progress ends the tick. The caller is expected to
schedule the next tick at :attr:`TickResult.next_due`.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..core.clock import from_timestamp, to_timestamp, utcnow
from ..core.config import Settings, get_settings
from ..core.metrics import record_tick
from ..core.reporting import get_reporter, redact
from ..models import JobStatus, OptimizationJob
from .api_client import ApiError, ApiResult, MinificationClient
from .control_state import (
    COMPLETED_KEY,
    CONCURRENCY_LIMIT,
    PROCESS_INFO_KEY,
    SAAS_NOT_AVAILABLE,
    ControlStateStore,
    Postponement,
    RunStats,
    Stop,
)
from .failures import (
    UNAVAILABLE_WIDENED_AFTER,
    UNAVAILABLE_WIDENED_RETRY_IN,
    descriptor_for,
    quota_postponement,
    wait_time,
)
from .file_manager import FileManager, FileManagerError
from .job_store import JobStore
from .signals import optimization_complete, optimization_postponed, optimization_stopped

logger = logging.getLogger(__name__)

CONCURRENCY_RETRY_IN = 300


class StepOutcome(enum.Enum):
    IDLE = "idle"
    PROGRESS = "progress"
    FAILED = "failed"


@dataclass
class TickResult:
    did_work: bool = False
    next_due: Optional[datetime] = None
    finished: bool = False
    stopped: bool = False
    postponed: bool = False


class QueueWorker:
    def __init__(
        self,
        session: Session,
        *,
        client: MinificationClient,
        file_manager: FileManager,
        control: ControlStateStore | None = None,
        store: JobStore | None = None,
        clock: Callable[[], datetime] = utcnow,
        return_url: str = "",
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.client = client
        self.file_manager = file_manager
        self.clock = clock
        self.control = control or ControlStateStore(session, clock=clock)
        self.store = store or JobStore(session, clock=clock)
        self.return_url = return_url
        self.settings = settings or get_settings()

        self.stats = RunStats()
        self._now = clock()
        self._uploads_forbidden = False
        self._raised_postponement: Postponement | None = None
        self._raised_stop: Stop | None = None

    def tick(self) -> TickResult:
        """Run one decision cascade and commit its effects."""

        self._now = self.clock()
        self._uploads_forbidden = False
        self._raised_postponement = None
        self._raised_stop = None
        self.stats = self.control.get_run_stats()

        result = self._cascade()
        if not (result.finished or result.stopped):
            self.control.save_run_stats(self.stats)
        self.session.commit()

        if result.stopped:
            outcome = "stopped"
        elif result.finished:
            outcome = "finished"
        elif result.postponed:
            outcome = "postponed"
        else:
            outcome = "progress" if result.did_work else "idle"
        record_tick(outcome)
        logger.debug("Queue worker tick finished: %s next_due=%s", outcome, result.next_due)
        return result

    # Cascade

    def _cascade(self) -> TickResult:
        stop = self.control.get_stop()
        if stop is not None:
            return self._finish_stopped(stop)

        deferred = self._check_postponement()
        if deferred is not None:
            return deferred

        for step in (self._download_step, self._pending_check_step, self._upload_step):
            outcome = step()

            if self._raised_stop is not None:
                return self._finish_stopped(self._raised_stop)
            if self._raised_postponement is not None:
                return TickResult(
                    did_work=outcome is not StepOutcome.IDLE,
                    next_due=from_timestamp(self._raised_postponement.due_at()),
                    postponed=True,
                )
            if outcome is StepOutcome.PROGRESS:
                self.control.clear_postponement()
                return TickResult(did_work=True, next_due=self._now)
            if outcome is StepOutcome.FAILED:
                return TickResult(did_work=True, next_due=self._now)

        return self._drain()

    def _check_postponement(self) -> TickResult | None:
        postponement = self.control.get_postponement()
        if postponement is None:
            return None

        if postponement.reason == CONCURRENCY_LIMIT:
            # Status checks and downloads are still allowed.
            self._uploads_forbidden = not self._release_concurrency_limit()
            return None

        if postponement.retries_exhausted():
            logger.warning(
                "Postponement %s exhausted %s retries; stopping the process",
                postponement.reason,
                postponement.retries,
            )
            self._raise_stop(Stop(reason=postponement.reason, severity="error"))
            return self._finish_stopped(self._raised_stop)

        if postponement.reason == SAAS_NOT_AVAILABLE and postponement.retries >= UNAVAILABLE_WIDENED_AFTER:
            postponement.next_retry_in = UNAVAILABLE_WIDENED_RETRY_IN

        now = to_timestamp(self._now)
        due = postponement.due_at()
        if due > now:
            self.control.save_postponement(postponement)
            logger.info("Process postponed until %s (reason: %s)", from_timestamp(due), postponement.reason)
            return TickResult(next_due=from_timestamp(due), postponed=True)

        postponement.retries += 1
        postponement.last_attempt = now
        self.control.save_postponement(postponement)
        logger.debug("Postponement %s expired; attempt %s", postponement.reason, postponement.retries)
        return None

    def _drain(self) -> TickResult:
        if self.store.has_more_processable(exclude_new=self._uploads_forbidden):
            return TickResult(next_due=self._now)

        earliest = self.store.earliest_postponed()
        if earliest is not None:
            logger.debug("Next pending job is due at %s", earliest.postponed_until_utc)
            return TickResult(next_due=self._not_before_now(earliest.postponed_until_utc))

        if self._uploads_forbidden and self._release_concurrency_limit():
            return TickResult(next_due=self._now)

        if self._uploads_forbidden:
            postponement = self.control.get_postponement()
            if postponement is not None:
                due = self._not_before_now(from_timestamp(postponement.due_at()))
                return TickResult(next_due=due, postponed=True)

        return self._finish_completed()

    def _release_concurrency_limit(self) -> bool:
        """Drop the concurrency postponement once pending jobs fall below the limit."""

        limit = self.control.get_concurrency_limit(self.settings.DEFAULT_CONCURRENCY_LIMIT)
        if self.store.count_pending() >= limit:
            return False
        logger.debug("Pending jobs below the concurrency limit of %s; uploads resumed", limit)
        self.control.clear_postponement()
        return True

    def _not_before_now(self, due: datetime) -> datetime:
        return max(due, self._now)

    # Steps

    def _download_step(self) -> StepOutcome:
        stale_before = self._now - timedelta(seconds=self.settings.DOWNLOAD_STALE_AFTER)
        self.store.revert_stale_downloads(stale_before)

        job = self.store.next_ready_to_download()
        if job is None:
            return StepOutcome.IDLE

        try:
            source_exists = self.file_manager.original_file_exists(job.url)
        except FileManagerError as exc:
            self._handle_failure(job, exc.code, exc.message, exc.data)
            return StepOutcome.IDLE
        if not source_exists:
            logger.info("Original file for %s no longer exists; dropping job %s", job.url, job.id)
            self.store.delete(job.id)
            return StepOutcome.IDLE

        if not self.store.to_downloading(job.id):
            return StepOutcome.IDLE
        self.session.commit()

        logger.debug("Downloading minified image from %s", self.client.download_url(job.job_id))
        result = self.client.download(job.job_id)
        if not result.ok:
            self._handle_api_failure(job, result.error)
            return StepOutcome.IDLE

        try:
            saved = self.file_manager.save_image(job.url, job.format, result.data)
        except FileManagerError as exc:
            self._handle_failure(job, exc.code, exc.message, exc.data)
            return StepOutcome.IDLE
        logger.info("Optimized image saved for %s (%s): %s", job.url, job.format, saved.value)

        ack = self.client.acknowledge(job.job_id)
        self._absorb(ack)
        if not ack.ok:
            logger.warning("Acknowledging job %s failed: %s", job.job_id, ack.error.message)
            self._classify(ack.error)

        self.store.delete(job.id)
        self.stats.downloaded += 1
        return StepOutcome.PROGRESS

    def _pending_check_step(self) -> StepOutcome:
        job = self.store.next_pending_due()
        if job is None:
            return StepOutcome.IDLE

        if job.retries >= self.settings.WORKER_MAX_RETRIES:
            self._handle_failure(job, "max_retries", "Max retries reached")
            return StepOutcome.IDLE

        logger.debug("Checking job %s for %s (%s)", job.job_id, job.url, job.format)
        result = self.client.get_job(job.job_id)
        self._absorb(result)
        if not result.ok:
            self._handle_api_failure(job, result.error)
            return StepOutcome.FAILED

        state = result.data.get("state")
        if state in ("new", "processing"):
            self.store.postpone(job.id, wait_time)
            return StepOutcome.PROGRESS
        if state == "failed":
            self._handle_failure(job, "job_failed_in_saas", result.data.get("error"))
            return StepOutcome.FAILED
        if state == "complete":
            self.store.to_download(job.id)
            return StepOutcome.PROGRESS

        # Push the job back so an unknown state cannot be polled in a tight loop.
        logger.warning("Job %s reported unknown state %r", job.job_id, state)
        self.store.postpone(job.id, wait_time)
        return StepOutcome.IDLE

    def _upload_step(self) -> StepOutcome:
        if self._uploads_forbidden:
            return StepOutcome.IDLE

        limit = self.control.get_concurrency_limit(self.settings.DEFAULT_CONCURRENCY_LIMIT)
        if self.store.count_pending() >= limit:
            logger.info("Concurrency limit of %s pending jobs reached; uploads postponed", limit)
            descriptor = self.control.postpone(
                Postponement(reason=CONCURRENCY_LIMIT, severity="warning", next_retry_in=CONCURRENCY_RETRY_IN)
            )
            optimization_postponed.send(sender=self, descriptor=descriptor)
            self._uploads_forbidden = True
            return StepOutcome.IDLE

        job = self.store.next_ready_to_upload()
        if job is None:
            return StepOutcome.IDLE

        logger.debug("Sending %s in format %s to the minification service", job.url, job.format)
        result = self.client.create_job(job.url, job.format, job.secret, self.return_url)
        self._absorb(result)
        if not result.ok:
            self._handle_api_failure(job, result.error)
            return StepOutcome.FAILED

        self.store.to_pending(job.id, result.data, wait_time)
        self.stats.uploaded += 1
        return StepOutcome.PROGRESS

    # Completion

    def _finish_completed(self) -> TickResult:
        summary: Dict[str, Any] = asdict(self.stats)
        summary["finished_at"] = to_timestamp(self._now)
        self.control.save_completed(summary)
        self.control.delete(PROCESS_INFO_KEY)
        self.control.clear_postponement()
        self.control.clear_stop()
        self.control.clear_run()
        logger.info("Image optimization queue is empty: %s", summary)

        if self.stats.downloaded > 0:
            optimization_complete.send(sender=self, stats=summary)
        return TickResult(finished=True)

    def _finish_stopped(self, stop: Stop) -> TickResult:
        if stop.process_info is None:
            info: Dict[str, Any] = asdict(self.stats)
            info["stopped_by_error_at"] = to_timestamp(self._now)
            stop.process_info = info
            self.control.save_stop(stop)
        self.control.delete(PROCESS_INFO_KEY)
        self.control.delete(COMPLETED_KEY)
        self.control.clear_postponement()
        self.control.clear_run()
        logger.warning("Image optimization process stopped: %s", stop.reason)
        return TickResult(stopped=True)

    # Failure handling

    def _absorb(self, result: ApiResult) -> None:
        if result.concurrency_limit is not None:
            self.control.save_concurrency_limit(
                result.concurrency_limit, ttl=self.settings.CONCURRENCY_LIMIT_TTL
            )
        if result.quota_exceeded:
            self._raise_postponement(quota_postponement(self._now))

    def _classify(self, error: ApiError) -> None:
        descriptor = descriptor_for(error)
        if isinstance(descriptor, Stop):
            self._raise_stop(descriptor)
        elif isinstance(descriptor, Postponement):
            self._raise_postponement(descriptor)

    def _raise_postponement(self, incoming: Postponement) -> None:
        merged = self.control.postpone(incoming)
        self._raised_postponement = merged
        logger.info("Process postponed (reason: %s, next retry in %ss)", merged.reason, merged.next_retry_in)
        optimization_postponed.send(sender=self, descriptor=merged)

    def _raise_stop(self, stop: Stop) -> None:
        stored = self.control.stop(stop)
        self._raised_stop = stored
        optimization_stopped.send(sender=self, descriptor=stored)

    def _handle_api_failure(self, job: OptimizationJob, error: ApiError) -> None:
        self._classify(error)
        data = dict(error.data)
        if error.status is not None:
            data.setdefault("status", error.status)
        self._handle_failure(job, error.code, error.message, data)

    def _handle_failure(
        self,
        job: OptimizationJob,
        error_code: str,
        error_message: Optional[str] = "",
        error_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Report a failed job and decide whether the failure is the job's fault.

        When this tick raised a postponement or a stop, the job is left alone
        so it can be retried once the process resumes.
        """

        context: Dict[str, Any] = {
            "wp_job_id": job.id,
            "unique_id": self.settings.UNIQUE_ID,
            "url": job.url,
            "format": job.format,
            "status": job.status,
            "retries": job.retries,
            "error_code": error_code,
            "error_message": error_message,
        }
        if job.job_id:
            context["job_id"] = job.job_id
        if error_data:
            context["error_data"] = error_data

        get_reporter().report(
            error_message or error_code,
            context=redact(context),
            tags={"feature": "image_optimization", "unique_id": self.settings.UNIQUE_ID},
        )

        if self._raised_postponement is not None or self._raised_stop is not None:
            logger.debug("Ignoring failure of job %s because the process was postponed", job.id)
            if job.status == JobStatus.DOWNLOADING.value:
                self.store.to_download(job.id)
            return

        self.stats.failed += 1
        self.store.to_failed(job.id, error_code, error_message)
