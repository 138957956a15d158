"""Persistence helpers for the image optimization queue table."""
from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, Iterable

from sqlalchemy import Select, delete, func, or_, select, update
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.metrics import record_transition
from ..models import JobStatus, OptimizationJob

logger = logging.getLogger(__name__)

SECRET_ALPHABET = string.ascii_letters + string.digits
SECRET_LENGTH = 16

Backoff = Callable[[int], int]

# Allowed source states for each transition. Anything else is a no-op.
_TO_PENDING_FROM = (JobStatus.NEW,)
_POSTPONE_FROM = (JobStatus.PENDING,)
_TO_DOWNLOAD_FROM = (JobStatus.PENDING, JobStatus.DOWNLOADING)
_TO_DOWNLOADING_FROM = (JobStatus.TO_DOWNLOAD,)
_TO_FAILED_FROM = (
    JobStatus.NEW,
    JobStatus.PENDING,
    JobStatus.TO_DOWNLOAD,
    JobStatus.DOWNLOADING,
)


def generate_secret() -> str:
    """Return the token the minification service echoes back on completion."""

    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(SECRET_LENGTH))


class JobStore:
    """Query and transition helpers for :class:`OptimizationJob` rows.

    Transition methods operate by primary key and return ``False`` when the
    row no longer exists or is not in an allowed source state. They are
    check-then-act, so callers must not assume success.
    """

    def __init__(self, session: Session, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.session = session
        self.clock = clock

    # Creation and lookup

    def create_if_absent(self, url: str, format: str, priority: int = 0) -> OptimizationJob | None:
        """Insert a NEW job unless a non-failed job already covers (url, format)."""

        if self.has_active(url, format):
            return None

        now = self.clock()
        job = OptimizationJob(
            url=url,
            format=format,
            priority=priority,
            status=JobStatus.NEW.value,
            secret=generate_secret(),
            retries=0,
            created_at=now,
            modified_at=now,
        )
        self.session.add(job)
        self.session.flush()
        record_transition(JobStatus.NEW.value)
        logger.debug("Added image to the optimization queue: %s (%s)", url, format)
        return job

    def has_active(self, url: str, format: str) -> bool:
        stmt = select(func.count(OptimizationJob.id)).where(
            OptimizationJob.url == url,
            OptimizationJob.format == format,
            OptimizationJob.status != JobStatus.FAILED.value,
        )
        return int(self.session.execute(stmt).scalar_one()) > 0

    def find(self, job_pk: int) -> OptimizationJob | None:
        return self.session.get(OptimizationJob, job_pk)

    def find_by_external_id(self, external_id: str) -> OptimizationJob | None:
        stmt = select(OptimizationJob).where(OptimizationJob.job_id == external_id).limit(1)
        return self.session.execute(stmt).scalars().first()

    # Work selection

    def next_ready_to_upload(self) -> OptimizationJob | None:
        stmt = (
            select(OptimizationJob)
            .where(OptimizationJob.status == JobStatus.NEW.value)
            .order_by(
                OptimizationJob.priority.desc(),
                OptimizationJob.created_at.asc(),
                OptimizationJob.id.asc(),
            )
        )
        return self._first(stmt)

    def next_ready_to_download(self) -> OptimizationJob | None:
        stmt = (
            select(OptimizationJob)
            .where(OptimizationJob.status == JobStatus.TO_DOWNLOAD.value)
            .order_by(OptimizationJob.modified_at.asc(), OptimizationJob.id.asc())
        )
        return self._first(stmt)

    def next_pending_due(self) -> OptimizationJob | None:
        """Return the PENDING job whose postponement expired the longest ago."""

        stmt = (
            select(OptimizationJob)
            .where(
                OptimizationJob.status == JobStatus.PENDING.value,
                OptimizationJob.postponed_until.is_not(None),
                OptimizationJob.postponed_until <= self.clock(),
            )
            .order_by(OptimizationJob.postponed_until.asc(), OptimizationJob.id.asc())
        )
        return self._first(stmt)

    def earliest_postponed(self) -> OptimizationJob | None:
        stmt = (
            select(OptimizationJob)
            .where(
                OptimizationJob.status == JobStatus.PENDING.value,
                OptimizationJob.postponed_until.is_not(None),
            )
            .order_by(OptimizationJob.postponed_until.asc(), OptimizationJob.id.asc())
        )
        return self._first(stmt)

    def has_more_processable(self, exclude_new: bool = False) -> bool:
        """Whether any job can be worked on right now.

        That is a job waiting for download, a NEW job (unless uploads are
        currently forbidden) or a PENDING job whose postponement expired.
        """

        statuses = [JobStatus.TO_DOWNLOAD.value]
        if not exclude_new:
            statuses.append(JobStatus.NEW.value)

        stmt = select(func.count(OptimizationJob.id)).where(
            or_(
                OptimizationJob.status.in_(statuses),
                (OptimizationJob.status == JobStatus.PENDING.value)
                & OptimizationJob.postponed_until.is_not(None)
                & (OptimizationJob.postponed_until <= self.clock()),
            )
        )
        return int(self.session.execute(stmt).scalar_one()) > 0

    # Counts

    def count_pending(self) -> int:
        return self._count(OptimizationJob.status == JobStatus.PENDING.value)

    def count_not_failed(self, format: str) -> int:
        return self._count(
            OptimizationJob.format == format,
            OptimizationJob.status != JobStatus.FAILED.value,
        )

    def count_by_status(self) -> dict[str, int]:
        stmt = select(OptimizationJob.status, func.count(OptimizationJob.id)).group_by(OptimizationJob.status)
        counts = {status.value: 0 for status in JobStatus}
        for status, count in self.session.execute(stmt).all():
            counts[status] = int(count)
        return counts

    # Transitions

    def to_pending(self, job_pk: int, external_id: str, backoff: Backoff) -> bool:
        """Record a successful upload and schedule the first status check.

        The wait is taken from the retry count before it is incremented, so a
        fresh upload is checked after ``backoff(0)`` (60 s). Postponing a
        pending job uses ``backoff(retries + 1)`` instead, which would give
        120 s for this first check.
        """

        job = self._load_in(job_pk, _TO_PENDING_FROM)
        if job is None:
            return False

        now = self.clock()
        wait = backoff(job.retries)
        job.job_id = external_id
        job.retries = job.retries + 1
        job.postponed_until = now + timedelta(seconds=wait)
        job.mark_status(JobStatus.PENDING, now=now)
        self.session.flush()
        record_transition(JobStatus.PENDING.value)
        return True

    def postpone(self, job_pk: int, backoff: Backoff) -> bool:
        """Push the next status check of a PENDING job further out."""

        job = self._load_in(job_pk, _POSTPONE_FROM)
        if job is None:
            return False

        now = self.clock()
        wait = backoff(job.retries + 1)
        job.retries = job.retries + 1
        job.postponed_until = now + timedelta(seconds=wait)
        job.modified_at = now
        self.session.flush()
        return True

    def to_download(self, job_pk: int) -> bool:
        return self._transition(job_pk, JobStatus.TO_DOWNLOAD, _TO_DOWNLOAD_FROM)

    def to_downloading(self, job_pk: int) -> bool:
        return self._transition(job_pk, JobStatus.DOWNLOADING, _TO_DOWNLOADING_FROM)

    def to_failed(self, job_pk: int, error_code: str, error_message: str | None = "") -> bool:
        return self._transition(
            job_pk,
            JobStatus.FAILED,
            _TO_FAILED_FROM,
            error_code=error_code[:64],
            error_message=error_message,
        )

    # Bulk maintenance

    def delete(self, job_pk: int) -> bool:
        result = self.session.execute(delete(OptimizationJob).where(OptimizationJob.id == job_pk))
        self.session.flush()
        return bool(result.rowcount)

    def delete_all(self) -> int:
        result = self.session.execute(delete(OptimizationJob))
        self.session.flush()
        return int(result.rowcount or 0)

    def reset_all_to_new(self) -> int:
        """Restart every job from scratch, keeping the queue contents."""

        stmt = update(OptimizationJob).values(
            status=JobStatus.NEW.value,
            retries=0,
            error_code=None,
            error_message=None,
            postponed_until=None,
            modified_at=self.clock(),
        )
        result = self.session.execute(stmt.execution_options(synchronize_session="fetch"))
        self.session.flush()
        return int(result.rowcount or 0)

    def revert_stale_downloads(self, older_than: datetime) -> int:
        """Hand DOWNLOADING jobs abandoned by a crashed tick back to the queue."""

        stale = self.session.execute(
            select(OptimizationJob).where(
                OptimizationJob.status == JobStatus.DOWNLOADING.value,
                OptimizationJob.modified_at < older_than,
            )
        ).scalars().all()
        now = self.clock()
        for job in stale:
            logger.warning("Reverting stale download of job %s (%s)", job.id, job.url)
            job.mark_status(JobStatus.TO_DOWNLOAD, now=now)
        if stale:
            self.session.flush()
        return len(stale)

    # Internals

    def _transition(
        self,
        job_pk: int,
        status: JobStatus,
        allowed: Iterable[JobStatus],
        *,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        job = self._load_in(job_pk, allowed)
        if job is None:
            return False

        job.mark_status(status, now=self.clock(), error_code=error_code, error_message=error_message)
        self.session.flush()
        record_transition(status.value)
        return True

    def _load_in(self, job_pk: int, allowed: Iterable[JobStatus]) -> OptimizationJob | None:
        job = self.find(job_pk)
        if job is None:
            return None
        if job.status not in {status.value for status in allowed}:
            logger.debug("Job %s is %s; transition skipped", job_pk, job.status)
            return None
        return job

    def _first(self, stmt: Select) -> OptimizationJob | None:
        return self.session.execute(stmt.limit(1)).scalars().first()

    def _count(self, *criteria) -> int:
        stmt = select(func.count(OptimizationJob.id)).where(*criteria)
        return int(self.session.execute(stmt).scalar_one())
