"""
Job board hand-off: curated favorites packaged as a job for downstream retouchers.
"""

from sqlalchemy import JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import RecordBase


class HandoffJob(RecordBase):
    __tablename__ = "handoff_jobs"

    project_id: Mapped[str] = mapped_column(String, nullable=True, index=True)
    batch_id: Mapped[str] = mapped_column(String, nullable=True, index=True)
    type: Mapped[str] = mapped_column(String, nullable=False, default="PHOTOSHOP_FACE_APPLY")
    title: Mapped[str] = mapped_column(String, nullable=False)
    instructions: Mapped[str] = mapped_column(Text, nullable=True)
    # OPEN, ASSIGNED, IN_PROGRESS, SUBMITTED, NEEDS_CHANGES, APPROVED, CLOSED
    status: Mapped[str] = mapped_column(String, nullable=False, default="OPEN")
    assets: Mapped[list] = mapped_column(JSON, nullable=True, default=list)
    created_by: Mapped[str] = mapped_column(String, nullable=True)
