"""
Pipeline jobs: progress tracking rows for long-running work, plus their event log.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import RecordBase


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


TERMINAL_JOB_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED}


class JobType(str, Enum):
    REPOSE_GENERATION = "REPOSE_GENERATION"
    SCRAPE_BRAND = "SCRAPE_BRAND"
    OTHER = "OTHER"


class PipelineJob(RecordBase):
    __tablename__ = "pipeline_jobs"

    type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=JobStatus.QUEUED.value, index=True)

    progress_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_done: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_message: Mapped[str] = mapped_column(Text, nullable=True)

    origin_route: Mapped[str] = mapped_column(String, nullable=False, default="")
    origin_context: Mapped[dict] = mapped_column(JSON, nullable=True, default=dict)

    supports_pause: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    supports_retry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    supports_restart: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String, nullable=True)


class PipelineJobEvent(RecordBase):
    __tablename__ = "pipeline_job_events"

    job_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    level: Mapped[str] = mapped_column(String, nullable=False, default="info")  # info, warn, error
    message: Mapped[str] = mapped_column(Text, nullable=False)
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=True, default=dict)
