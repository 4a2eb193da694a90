"""
Brand catalog: clay pose library and scraped products.
"""

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import RecordBase


class Brand(RecordBase):
    __tablename__ = "brands"

    name: Mapped[str] = mapped_column(String, nullable=False)
    start_url: Mapped[str] = mapped_column(Text, nullable=True)


class ClayPose(RecordBase):
    """Greyscale pose/camera/framing reference used as the repose template."""

    __tablename__ = "clay_poses"

    brand_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    shot_type: Mapped[str] = mapped_column(String, nullable=True, index=True)
    slot: Mapped[str] = mapped_column(String, nullable=True)  # legacy A-D
    image_url: Mapped[str] = mapped_column(Text, nullable=False)
    product_image_id: Mapped[str] = mapped_column(String, nullable=True)


class Product(RecordBase):
    __tablename__ = "products"

    brand_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    sku: Mapped[str] = mapped_column(String, nullable=True)
    product_url: Mapped[str] = mapped_column(Text, nullable=False)


class ProductImage(RecordBase):
    __tablename__ = "product_images"

    product_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    slot: Mapped[str] = mapped_column(String, nullable=False)
    shot_type: Mapped[str] = mapped_column(String, nullable=True)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    stored_url: Mapped[str] = mapped_column(Text, nullable=True)
