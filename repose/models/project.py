"""
Production grouping: projects, talent, looks and the source photos per look view.
"""

from sqlalchemy import Float, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import RecordBase

# Views a look can be photographed in
LOOK_VIEWS = ("front", "back", "detail", "side")


class Project(RecordBase):
    __tablename__ = "projects"

    name: Mapped[str] = mapped_column(String, nullable=False)
    brand_id: Mapped[str] = mapped_column(String, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="ACTIVE")  # ACTIVE, ARCHIVED
    created_by: Mapped[str] = mapped_column(String, nullable=True)


class Talent(RecordBase):
    __tablename__ = "talents"

    name: Mapped[str] = mapped_column(String, nullable=False)
    gender: Mapped[str] = mapped_column(String, nullable=True)
    front_face_url: Mapped[str] = mapped_column(Text, nullable=True)


class Look(RecordBase):
    __tablename__ = "looks"

    project_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    talent_id: Mapped[str] = mapped_column(String, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    look_code: Mapped[str] = mapped_column(String, nullable=True)


class LookSourceImage(RecordBase):
    """One stored photo per (look, view). Re-uploads replace source_url."""

    __tablename__ = "look_source_images"
    __table_args__ = (UniqueConstraint("look_id", "view", name="uq_look_view"),)

    look_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    view: Mapped[str] = mapped_column(String, nullable=False)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    original_source_url: Mapped[str] = mapped_column(Text, nullable=True)

    # Head-and-shoulders crop, percent of the image (0-100)
    head_crop_x: Mapped[float] = mapped_column(Float, nullable=True)
    head_crop_y: Mapped[float] = mapped_column(Float, nullable=True)
    head_crop_width: Mapped[float] = mapped_column(Float, nullable=True)
    head_crop_height: Mapped[float] = mapped_column(Float, nullable=True)
