"""ORM models for the optimization queue and its control state."""
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Model modules import ``Base`` from here, so they are loaded last; Alembic
# picks both tables up through ``Base.metadata``.
from .control_state import ControlStateEntry  # noqa: E402,F401
from .jobs import ImageFormat, JobStatus, OptimizationJob  # noqa: E402,F401


__all__ = [
    "Base",
    "ControlStateEntry",
    "ImageFormat",
    "JobStatus",
    "OptimizationJob",
]
