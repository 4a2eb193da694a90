"""
Projects, talent, looks and per-view source photos.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_db, get_storage_dep, require_internal
from ..core.errors import InvalidRequest, NotFound
from ..core.storage import StorageBackend
from ..models.project import Project, Talent
from ..services import looks
from ..services.crop import FaceBox, FaceDetection, best_face_detection

logger = logging.getLogger(__name__)

projects_router = APIRouter(tags=["projects"])

MAX_IMAGE_SIZE = 30 * 1024 * 1024


class ProjectCreate(BaseModel):
    name: str
    brand_id: Optional[str] = None


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    brand_id: Optional[str] = None
    status: str
    created_at: datetime


class TalentCreate(BaseModel):
    name: str
    gender: Optional[str] = None
    front_face_url: Optional[str] = None


class TalentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    gender: Optional[str] = None
    front_face_url: Optional[str] = None


class LookCreate(BaseModel):
    name: str
    talent_id: Optional[str] = None
    look_code: Optional[str] = None


class LookResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    talent_id: Optional[str] = None
    name: str
    look_code: Optional[str] = None


class SourceImageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    look_id: str
    view: str
    source_url: str
    original_source_url: Optional[str] = None
    head_crop_x: Optional[float] = None
    head_crop_y: Optional[float] = None
    head_crop_width: Optional[float] = None
    head_crop_height: Optional[float] = None


class BoundingBox(BaseModel):
    origin_x: float
    origin_y: float
    width: float = Field(gt=0)
    height: float = Field(gt=0)


class Detection(BaseModel):
    box: BoundingBox
    confidence: float = 1.0


class HeadCropRequest(BaseModel):
    """Either one face box, or raw detections to pick the best from. Neither → default crop."""
    image_width: float = Field(gt=0)
    image_height: float = Field(gt=0)
    aspect_ratio: str = "4:5"
    face: Optional[BoundingBox] = None
    detections: list[Detection] = []


# ── Projects ─────────────────────────────────────────────────────────

@projects_router.post("/projects", response_model=ProjectResponse)
async def create_project(
    request: ProjectCreate,
    user: AuthenticatedUser = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
):
    project = Project(name=request.name, brand_id=request.brand_id, created_by=user.user_id)
    db.add(project)
    await db.flush()
    return ProjectResponse.model_validate(project)


@projects_router.get("/projects", response_model=list[ProjectResponse])
async def list_projects(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Project).order_by(Project.created_at.desc()))
    return [ProjectResponse.model_validate(p) for p in result.scalars().all()]


@projects_router.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: str, db: AsyncSession = Depends(get_db)):
    project = await db.get(Project, project_id)
    if not project:
        raise NotFound("Project", project_id)
    return ProjectResponse.model_validate(project)


# ── Talent ───────────────────────────────────────────────────────────

@projects_router.post("/talents", response_model=TalentResponse)
async def create_talent(request: TalentCreate, db: AsyncSession = Depends(get_db)):
    talent = Talent(**request.model_dump())
    db.add(talent)
    await db.flush()
    return TalentResponse.model_validate(talent)


@projects_router.get("/talents", response_model=list[TalentResponse])
async def list_talents(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Talent).order_by(Talent.name))
    return [TalentResponse.model_validate(t) for t in result.scalars().all()]


# ── Looks ────────────────────────────────────────────────────────────

@projects_router.post("/projects/{project_id}/looks", response_model=LookResponse)
async def create_look(project_id: str, request: LookCreate, db: AsyncSession = Depends(get_db)):
    look = await looks.create_look(
        db, project_id, request.name, talent_id=request.talent_id, look_code=request.look_code
    )
    return LookResponse.model_validate(look)


@projects_router.get("/projects/{project_id}/looks", response_model=list[LookResponse])
async def list_looks(project_id: str, db: AsyncSession = Depends(get_db)):
    return [LookResponse.model_validate(look) for look in await looks.list_looks(db, project_id)]


@projects_router.post("/looks/{look_id}/duplicate", response_model=LookResponse)
async def duplicate_look(look_id: str, db: AsyncSession = Depends(get_db)):
    return LookResponse.model_validate(await looks.duplicate_look(db, look_id))


@projects_router.delete("/looks/{look_id}")
async def delete_look(look_id: str, db: AsyncSession = Depends(get_db)):
    await looks.delete_look(db, look_id)
    return {"success": True, "id": look_id}


@projects_router.get("/looks/{look_id}/images", response_model=list[SourceImageResponse])
async def list_look_images(look_id: str, db: AsyncSession = Depends(get_db)):
    await looks.get_look(db, look_id)
    return [SourceImageResponse.model_validate(i) for i in await looks.list_source_images(db, look_id)]


@projects_router.post("/looks/{look_id}/images", response_model=SourceImageResponse)
async def upload_look_image(
    look_id: str,
    view: str = Form(...),
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    storage: StorageBackend = Depends(get_storage_dep),
):
    """Upload (or replace) the photo for one view of a look."""
    file_bytes = await file.read()
    if not file_bytes:
        raise InvalidRequest("Empty file")
    if len(file_bytes) > MAX_IMAGE_SIZE:
        raise InvalidRequest(f"File too large (max {MAX_IMAGE_SIZE // (1024 * 1024)}MB)")

    image = await looks.upload_view_image(
        db, look_id, view, file.filename or "upload.png", file_bytes, storage=storage
    )
    return SourceImageResponse.model_validate(image)


@projects_router.delete("/look-images/{image_id}")
async def remove_look_image(image_id: str, db: AsyncSession = Depends(get_db)):
    await looks.remove_view_image(db, image_id)
    return {"success": True, "id": image_id}


@projects_router.post("/look-images/{image_id}/head-crop")
async def head_crop(image_id: str, request: HeadCropRequest, db: AsyncSession = Depends(get_db)):
    face = None
    if request.face:
        face = FaceBox(**request.face.model_dump())
    elif request.detections:
        face = best_face_detection(
            FaceDetection(box=FaceBox(**d.box.model_dump()), confidence=d.confidence)
            for d in request.detections
        )

    try:
        crop = await looks.apply_head_crop(
            db, image_id, face, request.image_width, request.image_height, request.aspect_ratio
        )
    except ValueError as e:
        raise InvalidRequest(str(e))
    return {"success": True, "image_id": image_id, "face_detected": face is not None, "crop": crop.as_dict()}
