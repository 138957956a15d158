"""Read-only view of the optimization pipeline."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..core.db import get_session
from ..workers.tasks import build_client, build_file_manager, build_manager

router = APIRouter()


@router.get("/status", summary="Image optimization status")
async def optimization_status(session: Session = Depends(get_session)) -> dict[str, Any]:
    """Return the pipeline state, queue counts, run statistics and notices."""

    with build_client() as client:
        return build_manager(session).status(file_manager=build_file_manager(), client=client)
