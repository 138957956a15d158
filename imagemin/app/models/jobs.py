"""Image optimization job records."""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import ensure_utc, utcnow
from . import Base


class JobStatus(str, enum.Enum):
    """Lifecycle states for a queued image. A deleted row means complete."""

    NEW = "new"
    PENDING = "pending"
    TO_DOWNLOAD = "to_download"
    DOWNLOADING = "downloading"
    FAILED = "failed"


class ImageFormat(str, enum.Enum):
    """Output formats requested from the minification service."""

    ORIGINAL = "original"
    WEBP = "webp"


class OptimizationJob(Base):
    """One (url, format) optimization task tracked through its lifecycle."""

    __tablename__ = "image_optimization_jobs"
    __table_args__ = (
        Index("ix_image_optimization_jobs_url_format", "url", "format"),
        Index("ix_image_optimization_jobs_status", "status"),
        Index("ix_image_optimization_jobs_job_id", "job_id"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    url: Mapped[str] = mapped_column(String(length=2000), nullable=False)
    format: Mapped[str] = mapped_column(String(length=32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default=JobStatus.NEW.value,
        server_default=JobStatus.NEW.value,
    )
    secret: Mapped[str | None] = mapped_column(String(length=32), nullable=True)
    retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    job_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_code: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    modified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    postponed_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def postponed_until_utc(self) -> datetime | None:
        return ensure_utc(self.postponed_until)

    def mark_status(
        self,
        status: JobStatus,
        *,
        now: datetime,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """Update the status and error fields, stamping the modification time."""

        self.status = status.value
        self.error_code = error_code
        self.error_message = error_message
        self.modified_at = now

    def __repr__(self) -> str:
        return f"<OptimizationJob id={self.id} url={self.url!r} format={self.format} status={self.status}>"
