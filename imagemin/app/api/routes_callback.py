"""Completion callback called by the minification service."""
from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.db import get_session
from ..core.rate_limiter import limiter
from ..optimization.job_store import JobStore
from ..workers.tasks import build_manager

logger = logging.getLogger(__name__)

router = APIRouter()


class CompletionCallback(BaseModel):
    id: str = Field(min_length=1)
    secret: str


class CallbackData(BaseModel):
    status: int


class CallbackResponse(BaseModel):
    success: bool
    code: str
    message: str
    data: CallbackData


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


@router.post("", response_model=CallbackResponse, summary="Mark a remote job as ready to download")
@limiter.limit(settings.RATE_LIMIT_CALLBACK)
async def complete_job(
    payload: CompletionCallback,
    request: Request,
    session: Session = Depends(get_session),
) -> CallbackResponse:
    """Move the job to TO_DOWNLOAD and wake the queue worker."""

    if not settings.IMAGE_OPTIMIZATION_ENABLED:
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            "image_optimization_not_enabled",
            "Image optimization is not enabled.",
        )

    store = JobStore(session)
    job = store.find_by_external_id(payload.id)
    if job is None:
        raise _error(
            status.HTTP_404_NOT_FOUND,
            "image_optimization_job_not_found",
            "Image optimization job not found.",
        )

    if not job.secret or not hmac.compare_digest(job.secret, payload.secret):
        logger.warning("Rejected completion callback for job %s: secret mismatch", payload.id)
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            "image_optimization_secret_mismatch",
            "Image optimization secret mismatch.",
        )

    store.to_download(job.id)
    session.commit()

    build_manager(session).run_queue_worker()

    return CallbackResponse(
        success=True,
        code="image_download_queued",
        message="Image download added to a queue.",
        data=CallbackData(status=200),
    )
