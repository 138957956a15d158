"""Operator-facing status notices (data only, rendering is up to the client)."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from ..core.db import table_exists
from ..models import ImageFormat, OptimizationJob
from .api_client import MinificationClient
from .control_state import AUTH_FAILED_401, QUOTA_EXCEEDED, SAAS_NOT_AVAILABLE, ControlStateStore
from .file_manager import FileManager
from .job_store import JobStore

POSTPONED_MESSAGES = {
    QUOTA_EXCEEDED: "Image optimization is temporarily paused. Your site has reached the monthly usage limit.",
    SAAS_NOT_AVAILABLE: (
        "Image optimization is temporarily paused. The image minification service is not available "
        "at the moment. It should be resumed shortly."
    ),
}

STOPPED_MESSAGE = (
    "Image optimization stopped. The site was unable to authenticate against the image minification "
    "service for more than 24 hours. Contact your system administrator."
)


@dataclass
class Notice:
    code: str
    severity: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


def build_notices(
    session: Session,
    *,
    file_manager: FileManager,
    client: MinificationClient,
    control: ControlStateStore | None = None,
    store: JobStore | None = None,
) -> List[Notice]:
    """Return the notices an operator should see right now.

    Blocking problems (directories, schema, API configuration) hide all other
    notices. Otherwise at most one of postponed, stopped or progress is shown.
    """

    notices: List[Notice] = []

    if not file_manager.dirs_available():
        missing = []
        if not file_manager.backup_dir_available():
            missing.append(str(file_manager.backup_dir))
        if not file_manager.download_dir_available():
            missing.append(str(file_manager.download_dir))
        notices.append(
            Notice(
                "dirs_permissions",
                "error",
                "Could not create the following folder(s) due to missing writing permissions.",
                {"dirs": missing},
            )
        )

    has_table = table_exists(session, OptimizationJob.__tablename__)
    if not has_table:
        notices.append(
            Notice(
                "no_table",
                "error",
                f"Could not find the {OptimizationJob.__tablename__} table in the database.",
            )
        )

    errors = client.configuration_errors()
    if errors:
        notices.append(
            Notice(
                "missing_api_config",
                "error",
                "Image optimization API is not configured correctly.",
                {"errors": [error.message for error in errors]},
            )
        )

    if notices:
        return notices

    control = control or ControlStateStore(session)
    store = store or JobStore(session)

    postponement = control.get_postponement()
    if postponement is not None and postponement.reason in POSTPONED_MESSAGES:
        return [
            Notice(
                "postponed",
                postponement.severity,
                POSTPONED_MESSAGES[postponement.reason],
                {"reason": postponement.reason, "due_at": postponement.due_at()},
            )
        ]

    stop = control.get_stop()
    if stop is not None and stop.reason == AUTH_FAILED_401:
        return [Notice("stopped", stop.severity, STOPPED_MESSAGE, {"reason": stop.reason})]

    queue_size = store.count_not_failed(ImageFormat.ORIGINAL.value)
    if queue_size:
        return [
            Notice(
                "in_progress",
                "info",
                f"Image minification in progress. There are currently {queue_size} images in the queue.",
                {"queue_size": queue_size},
            )
        ]

    completed = control.get_completed()
    if completed:
        return [Notice("completed", "success", "Image minification successfully completed!", completed)]
    return []
