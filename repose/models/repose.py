"""
Repose production: batches, their items (one source photo each) and generated outputs.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import RecordBase


class BatchStatus(str, Enum):
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class OutputStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


DEFAULT_BATCH_CONFIG = {
    "poses_per_shot_type": 2,
    "attempts_per_pose": 1,
}


class ReposeBatch(RecordBase):
    __tablename__ = "repose_batches"

    project_id: Mapped[str] = mapped_column(String, nullable=True, index=True)
    brand_id: Mapped[str] = mapped_column(String, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=BatchStatus.DRAFT.value)
    config: Mapped[dict] = mapped_column(JSON, nullable=True, default=dict)


class ReposeBatchItem(RecordBase):
    __tablename__ = "repose_batch_items"

    batch_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    look_id: Mapped[str] = mapped_column(String, nullable=True, index=True)
    view: Mapped[str] = mapped_column(String, nullable=False)  # "front", "Back View - IMG_01", ...
    source_url: Mapped[str] = mapped_column(Text, nullable=False)


class ReposeOutput(RecordBase):
    __tablename__ = "repose_outputs"

    batch_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    batch_item_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    pose_id: Mapped[str] = mapped_column(String, nullable=True)
    pose_url: Mapped[str] = mapped_column(Text, nullable=True)
    shot_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    slot: Mapped[str] = mapped_column(String, nullable=True)  # legacy A-D
    attempt_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Insertion order within a batch; the generation loop walks outputs by it
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default=OutputStatus.QUEUED.value, index=True
    )
    result_url: Mapped[str] = mapped_column(Text, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    requested_resolution: Mapped[str] = mapped_column(String, nullable=True)
    started_running_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    is_favorite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    favorite_rank: Mapped[int] = mapped_column(Integer, nullable=True)  # 1-3
    selected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    regenerated_from_id: Mapped[str] = mapped_column(String, nullable=True)
