"""Mapping of minification API failures to global postpone/stop decisions."""
from __future__ import annotations

from datetime import datetime, timedelta

from .api_client import ApiError, ErrorKind
from .control_state import (
    AUTH_FAILED_401,
    AUTH_FAILED_CONFIG,
    QUOTA_EXCEEDED,
    RATE_LIMIT,
    SAAS_NOT_AVAILABLE,
    Postponement,
    Stop,
)

BASE_WAIT = 60
DEFAULT_RETRY_AFTER = 300
AUTH_RETRY_IN = 900
AUTH_MAX_RETRIES = 96
UNAVAILABLE_RETRY_IN = 300
UNAVAILABLE_WIDENED_AFTER = 12
UNAVAILABLE_WIDENED_RETRY_IN = 3600
QUOTA_RESET_HOUR = 4


def wait_time(attempt: int) -> int:
    """Exponential per-job backoff in seconds: 60, 120, 240, ..."""

    return BASE_WAIT * 2 ** max(attempt, 0)


def descriptor_for(error: ApiError | None) -> Postponement | Stop | None:
    """Return the global effect of ``error``, or ``None`` for a job-only failure."""

    if error is None:
        return None
    if error.kind is ErrorKind.CONFIGURATION:
        return Stop(reason=AUTH_FAILED_CONFIG, severity="error")
    if error.kind is ErrorKind.RATE_LIMIT:
        return Postponement(
            reason=RATE_LIMIT,
            severity="warning",
            next_retry_in=error.retry_after if error.retry_after is not None else DEFAULT_RETRY_AFTER,
        )
    if error.kind is ErrorKind.AUTH:
        return Postponement(
            reason=AUTH_FAILED_401,
            severity="warning",
            next_retry_in=AUTH_RETRY_IN,
            max_retries=AUTH_MAX_RETRIES,
        )
    if error.kind in (ErrorKind.NETWORK, ErrorKind.SERVER):
        return Postponement(
            reason=SAAS_NOT_AVAILABLE,
            severity="warning",
            next_retry_in=UNAVAILABLE_RETRY_IN,
        )
    return None


def seconds_until_next_month(now: datetime) -> int:
    """Seconds from ``now`` until 04:00 local time on the 1st of next month."""

    local = now.astimezone()
    if local.month == 12:
        first = local.replace(year=local.year + 1, month=1, day=1)
    else:
        first = local.replace(month=local.month + 1, day=1)
    target = first.replace(hour=QUOTA_RESET_HOUR, minute=0, second=0, microsecond=0)
    return max(int((target - local) / timedelta(seconds=1)), 0)


def quota_postponement(now: datetime) -> Postponement:
    return Postponement(
        reason=QUOTA_EXCEEDED,
        severity="warning",
        next_retry_in=seconds_until_next_month(now),
    )
