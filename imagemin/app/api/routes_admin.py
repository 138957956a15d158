"""Administrative API endpoints."""
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.orm import Session

from ..core.db import get_session
from ..workers.tasks import build_manager

router = APIRouter()


@router.get("/health", summary="Readiness probe")
async def admin_health() -> dict[str, str]:
    """Administrative health endpoint."""
    return {"status": "ok"}


@router.get("/metrics", summary="Prometheus metrics feed")
async def admin_metrics() -> Response:
    """Expose Prometheus-formatted metrics for scraping."""

    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


@router.post("/imagemin/rescan", summary="Start a file scan")
async def admin_rescan(session: Session = Depends(get_session)) -> dict[str, bool]:
    return {"started": build_manager(session).run_rescan()}


@router.post("/imagemin/run", summary="Start the queue worker")
async def admin_run(session: Session = Depends(get_session)) -> dict[str, bool]:
    return {"started": build_manager(session).run_queue_worker()}


@router.post("/imagemin/interrupt", summary="Cancel the current optimization run")
async def admin_interrupt(
    session: Session = Depends(get_session),
    remove: bool = Query(False, description="Drop every queued job instead of resetting it"),
) -> dict[str, bool]:
    build_manager(session).interrupt(remove=remove)
    return {"interrupted": True}


@router.post("/imagemin/restart", summary="Reset the queue and start over")
async def admin_restart(session: Session = Depends(get_session)) -> dict[str, bool]:
    build_manager(session).restart()
    return {"restarted": True}
