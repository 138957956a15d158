"""Durable key/value control state for the scanner and queue worker.

Each entry is independently lifecycled and may carry a TTL. Typed accessors
wrap the raw JSON values so that the worker deals with dataclasses rather
than loose dictionaries.
"""
from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Union

from sqlalchemy import delete
from sqlalchemy.orm import Session

from ..core.clock import ensure_utc, from_timestamp, to_timestamp, utcnow
from ..models import ControlStateEntry

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "scanner_checkpoint"
CONCURRENCY_LIMIT_KEY = "concurrency_limit"
PROCESS_INFO_KEY = "process_info"
POSTPONED_KEY = "process_postponed"
STOPPED_KEY = "process_stopped"
COMPLETED_KEY = "process_completed"
RUN_KEY = "queue_worker_run"
LOCK_PREFIX = "lock:"

QUEUE_WORKER_LOCK = "queue_worker"
FILE_SCANNER_LOCK = "file_scanner"

CONCURRENCY_LIMIT = "concurrency_limit"
RATE_LIMIT = "rate_limit"
AUTH_FAILED_401 = "auth_failed_401"
AUTH_FAILED_CONFIG = "auth_failed_config"
SAAS_NOT_AVAILABLE = "saas_not_available"
QUOTA_EXCEEDED = "quota_exceeded"


@dataclass
class ScanCheckpoint:
    """Resume point of the file scanner."""

    last_mtime: int = 0
    last_relative_path: str = ""


@dataclass
class RunStats:
    uploaded: int = 0
    downloaded: int = 0
    failed: int = 0


@dataclass
class Postponement:
    """Global, reason-tagged delay of the queue worker."""

    reason: str
    next_retry_in: int
    severity: str = "warning"
    retries: int = 0
    created_at: int = 0
    last_attempt: int | None = None
    max_retries: int | None = None

    def due_at(self) -> int:
        """Epoch second at which the worker may try again."""

        anchor = self.last_attempt if self.last_attempt is not None else self.created_at
        return anchor + self.next_retry_in

    def retries_exhausted(self) -> bool:
        return self.max_retries is not None and self.retries >= self.max_retries

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Postponement":
        return cls(
            reason=str(data["reason"]),
            next_retry_in=int(data.get("next_retry_in", 0)),
            severity=str(data.get("severity") or "warning"),
            retries=int(data.get("retries", 0)),
            created_at=int(data.get("created_at", 0)),
            last_attempt=int(data["last_attempt"]) if data.get("last_attempt") is not None else None,
            max_retries=int(data["max_retries"]) if data.get("max_retries") is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.max_retries is None:
            data.pop("max_retries")
        if self.last_attempt is None:
            data.pop("last_attempt")
        return data


@dataclass
class Stop:
    """Terminal global condition; cleared only by an operator."""

    reason: str
    severity: str = "error"
    created_at: int = 0
    process_info: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Stop":
        return cls(
            reason=str(data["reason"]),
            severity=str(data.get("severity") or "error"),
            created_at=int(data.get("created_at", 0)),
            process_info=data.get("process_info"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.process_info is None:
            data.pop("process_info")
        return data


@dataclass
class WorkerRun:
    """Bookkeeping of the logical queue-worker run in progress.

    ``token`` identifies the live chain of scheduled ticks. Re-arming the run
    issues a new token, and ticks carrying an older one are dropped.
    """

    started_at: int
    return_url: str = ""
    execution_count: int = 0
    next_due: int | None = None
    token: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkerRun":
        next_due = data.get("next_due")
        return cls(
            started_at=int(data.get("started_at", 0)),
            return_url=str(data.get("return_url") or ""),
            execution_count=int(data.get("execution_count", 0)),
            next_due=int(next_due) if next_due is not None else None,
            token=str(data.get("token") or ""),
        )


@dataclass(frozen=True)
class Running:
    kind: str = field(default="running", init=False)


@dataclass(frozen=True)
class Postponed:
    postponement: Postponement
    kind: str = field(default="postponed", init=False)


@dataclass(frozen=True)
class Stopped:
    stop: Stop
    kind: str = field(default="stopped", init=False)


PipelineState = Union[Running, Postponed, Stopped]


def merge_postponement(existing: Postponement | None, incoming: Postponement, now: int) -> Postponement:
    """Combine a newly raised postponement with the one already stored.

    A first postponement, or one replacing a concurrency-limit pause, starts
    fresh. The same reason keeps its retry bookkeeping and only refreshes the
    timer parameters. A different reason never displaces an active
    postponement.
    """

    fresh = replace(incoming, retries=0, created_at=now, last_attempt=None)
    if existing is None:
        return fresh
    if existing.reason == CONCURRENCY_LIMIT and incoming.reason != CONCURRENCY_LIMIT:
        return fresh
    if existing.reason != incoming.reason:
        logger.debug(
            "Keeping active postponement %s; ignoring %s", existing.reason, incoming.reason
        )
        return existing
    return replace(
        existing,
        severity=incoming.severity,
        next_retry_in=incoming.next_retry_in,
        max_retries=incoming.max_retries if incoming.max_retries is not None else existing.max_retries,
    )


class ControlStateStore:
    """Typed access to :class:`ControlStateEntry` rows."""

    def __init__(self, session: Session, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.session = session
        self.clock = clock

    # Raw access

    def get(self, key: str) -> Any | None:
        entry = self.session.get(ControlStateEntry, key)
        if entry is None:
            return None
        expires_at = ensure_utc(entry.expires_at)
        if expires_at is not None and expires_at <= self.clock():
            self.session.delete(entry)
            self.session.flush()
            return None
        return entry.value

    def set(self, key: str, value: Any, *, ttl: int | None = None) -> None:
        now = self.clock()
        expires_at = now + timedelta(seconds=ttl) if ttl else None
        entry = self.session.get(ControlStateEntry, key)
        if entry is None:
            entry = ControlStateEntry(key=key)
            self.session.add(entry)
        entry.value = value
        entry.expires_at = expires_at
        entry.updated_at = now
        self.session.flush()

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        self.session.execute(delete(ControlStateEntry).where(ControlStateEntry.key.in_(keys)))
        self.session.flush()

    # Scanner checkpoint

    def get_checkpoint(self) -> ScanCheckpoint:
        value = self.get(CHECKPOINT_KEY)
        if not isinstance(value, dict):
            return ScanCheckpoint()
        return ScanCheckpoint(
            last_mtime=int(value.get("last_mtime", 0)),
            last_relative_path=str(value.get("last_relative_path") or ""),
        )

    def save_checkpoint(self, checkpoint: ScanCheckpoint) -> None:
        self.set(CHECKPOINT_KEY, asdict(checkpoint))

    def clear_checkpoint(self) -> None:
        self.delete(CHECKPOINT_KEY)

    # Concurrency limit cache

    def get_concurrency_limit(self, default: int) -> int:
        value = self.get(CONCURRENCY_LIMIT_KEY)
        if isinstance(value, bool) or not isinstance(value, int):
            return default
        return value

    def save_concurrency_limit(self, limit: int, *, ttl: int) -> None:
        self.set(CONCURRENCY_LIMIT_KEY, int(limit), ttl=ttl)

    # Run statistics

    def get_run_stats(self) -> RunStats:
        value = self.get(PROCESS_INFO_KEY)
        if not isinstance(value, dict):
            return RunStats()
        return RunStats(
            uploaded=int(value.get("uploaded", 0)),
            downloaded=int(value.get("downloaded", 0)),
            failed=int(value.get("failed", 0)),
        )

    def save_run_stats(self, stats: RunStats) -> None:
        self.set(PROCESS_INFO_KEY, asdict(stats))

    def get_completed(self) -> dict[str, Any] | None:
        value = self.get(COMPLETED_KEY)
        return value if isinstance(value, dict) and value else None

    def save_completed(self, summary: dict[str, Any]) -> None:
        self.set(COMPLETED_KEY, summary)

    # Postponement

    def get_postponement(self) -> Postponement | None:
        value = self.get(POSTPONED_KEY)
        if not isinstance(value, dict) or "reason" not in value:
            return None
        return Postponement.from_dict(value)

    def save_postponement(self, postponement: Postponement) -> None:
        self.set(POSTPONED_KEY, postponement.to_dict())

    def postpone(self, incoming: Postponement) -> Postponement:
        """Merge ``incoming`` into the stored postponement and persist it."""

        merged = merge_postponement(self.get_postponement(), incoming, to_timestamp(self.clock()))
        self.save_postponement(merged)
        return merged

    def clear_postponement(self) -> None:
        self.delete(POSTPONED_KEY)

    # Stop

    def get_stop(self) -> Stop | None:
        value = self.get(STOPPED_KEY)
        if not isinstance(value, dict) or "reason" not in value:
            return None
        return Stop.from_dict(value)

    def stop(self, stop: Stop) -> Stop:
        stored = replace(stop, created_at=to_timestamp(self.clock()))
        self.save_stop(stored)
        return stored

    def save_stop(self, stop: Stop) -> None:
        self.set(STOPPED_KEY, stop.to_dict())

    def clear_stop(self) -> None:
        self.delete(STOPPED_KEY)

    def pipeline_state(self) -> PipelineState:
        stop = self.get_stop()
        if stop is not None:
            return Stopped(stop)
        postponement = self.get_postponement()
        if postponement is not None:
            return Postponed(postponement)
        return Running()

    # Worker run

    def get_run(self) -> WorkerRun | None:
        value = self.get(RUN_KEY)
        if not isinstance(value, dict):
            return None
        return WorkerRun.from_dict(value)

    def start_run(self, return_url: str) -> WorkerRun:
        run = self.get_run()
        if run is None:
            run = WorkerRun(
                started_at=to_timestamp(self.clock()),
                return_url=return_url,
                token=uuid.uuid4().hex,
            )
            self.save_run(run)
        return run

    def save_run(self, run: WorkerRun) -> None:
        self.set(RUN_KEY, asdict(run))

    def rearm_run(self) -> WorkerRun | None:
        """Start a new tick chain for the current run, due immediately."""

        run = self.get_run()
        if run is None:
            return None
        run.token = uuid.uuid4().hex
        run.next_due = to_timestamp(self.clock())
        self.save_run(run)
        return run

    def schedule_run(self, next_due: datetime | None) -> WorkerRun | None:
        run = self.get_run()
        if run is None:
            return None
        run.execution_count += 1
        run.next_due = to_timestamp(next_due) if next_due is not None else None
        self.save_run(run)
        return run

    def run_due_at(self) -> datetime | None:
        run = self.get_run()
        if run is None or run.next_due is None:
            return None
        return from_timestamp(run.next_due)

    def clear_run(self) -> None:
        self.delete(RUN_KEY)

    # Re-entrancy heartbeat

    def acquire_lock(self, name: str, *, ttl: int) -> bool:
        """Record a heartbeat for ``name`` unless a live one already exists.

        Advisory only: two processes racing between the read and the write
        can both succeed.
        """

        key = LOCK_PREFIX + name
        if self.get(key) is not None:
            return False
        self.set(
            key,
            {"owner": f"{socket.gethostname()}:{os.getpid()}", "acquired_at": to_timestamp(self.clock())},
            ttl=ttl,
        )
        return True

    def is_locked(self, name: str) -> bool:
        return self.get(LOCK_PREFIX + name) is not None

    def release_lock(self, name: str) -> None:
        self.delete(LOCK_PREFIX + name)

    # Reset

    def clear_process_state(self) -> None:
        """Forget everything about the current and previous worker runs."""

        self.delete(
            CONCURRENCY_LIMIT_KEY,
            POSTPONED_KEY,
            STOPPED_KEY,
            PROCESS_INFO_KEY,
            COMPLETED_KEY,
            RUN_KEY,
        )
