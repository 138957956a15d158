"""Error-tracking and cache-purge integration hooks."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

logger = logging.getLogger(__name__)

# Only these keys ever leave the process; secrets and auth headers are dropped.
REPORTABLE_KEYS = (
    "wp_job_id",
    "unique_id",
    "job_id",
    "url",
    "format",
    "status",
    "retries",
    "error_code",
    "error_message",
    "error_data",
)


class ErrorReporter(Protocol):
    """Protocol implemented by error-tracking transports."""

    def report(
        self,
        message: str,
        *,
        context: Mapping[str, Any],
        tags: Mapping[str, str],
    ) -> None:
        """Forward a failure to the tracking backend."""


class CachePurger(Protocol):
    """Protocol implemented by page-cache/CDN purge integrations."""

    def purge(self) -> None:
        """Flush caches after optimized images were swapped in."""


class LoggingReporter:
    """Default reporter used in development."""

    def report(
        self,
        message: str,
        *,
        context: Mapping[str, Any],
        tags: Mapping[str, str],
    ) -> None:
        logger.warning("Image optimization failure: %s context=%s tags=%s", message, dict(context), dict(tags))


class NoopPurger:
    """Default purger used when no cache integration is configured."""

    def purge(self) -> None:
        logger.debug("No cache purger configured; skipping purge")


def redact(context: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``context`` restricted to reportable keys."""

    return {key: context[key] for key in REPORTABLE_KEYS if key in context}


_reporter: ErrorReporter = LoggingReporter()
_purger: CachePurger = NoopPurger()


def set_reporter(reporter: ErrorReporter) -> None:
    """Override the global reporter instance (useful for testing)."""

    global _reporter
    _reporter = reporter


def get_reporter() -> ErrorReporter:
    """Return the configured error reporter."""

    return _reporter


def set_purger(purger: CachePurger) -> None:
    global _purger
    _purger = purger


def get_purger() -> CachePurger:
    return _purger
