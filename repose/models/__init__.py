"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import RecordBase
from .project import Project, Talent, Look, LookSourceImage, LOOK_VIEWS
from .catalog import Brand, ClayPose, Product, ProductImage
from .repose import (
    ReposeBatch, ReposeBatchItem, ReposeOutput,
    BatchStatus, OutputStatus, DEFAULT_BATCH_CONFIG,
)
from .pipeline import PipelineJob, PipelineJobEvent, JobStatus, JobType
from .handoff import HandoffJob

__all__ = [
    "RecordBase",
    "Project", "Talent", "Look", "LookSourceImage", "LOOK_VIEWS",
    "Brand", "ClayPose", "Product", "ProductImage",
    "ReposeBatch", "ReposeBatchItem", "ReposeOutput",
    "BatchStatus", "OutputStatus", "DEFAULT_BATCH_CONFIG",
    "PipelineJob", "PipelineJobEvent", "JobStatus", "JobType",
    "HandoffJob",
]
