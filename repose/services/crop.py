"""
Head-and-shoulders crop from a face bounding box.

Face boxes come in pixels (from whatever detector the client ran); crops go out
as percentages of the image (0-100) so they can be applied at any resolution.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

ASPECT_RATIOS = {
    "1:1": 1.0,
    "4:5": 0.8,  # width / height
}

# Framing, relative to the face box
ABOVE_FACE = 0.15        # just the hair
BELOW_FACE = 1.5         # down to the shoulder line
HORIZONTAL_PADDING = 1.3

MIN_CROP_PERCENT = 10.0


@dataclass(frozen=True)
class FaceBox:
    origin_x: float
    origin_y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height


@dataclass(frozen=True)
class FaceDetection:
    box: FaceBox
    confidence: float


@dataclass(frozen=True)
class CropBox:
    x: float
    y: float
    width: float
    height: float

    def as_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


def _target_ratio(aspect_ratio: str) -> float:
    try:
        return ASPECT_RATIOS[aspect_ratio]
    except KeyError:
        raise ValueError(
            f"Unsupported aspect ratio '{aspect_ratio}'. Use one of: {', '.join(ASPECT_RATIOS)}"
        )


def calculate_head_and_shoulders_crop(
    face: Optional[FaceBox],
    image_width: float,
    image_height: float,
    aspect_ratio: str = "4:5",
) -> CropBox:
    """
    Expand a face box to a head-and-shoulders crop with the requested aspect.

    Without a face, falls back to a centred portrait crop near the top.
    The result always lies inside the image; width/height keep the aspect
    ratio (in percent units) unless the minimum crop size kicks in.
    """
    ratio = _target_ratio(aspect_ratio)

    if face is None:
        width = 70.0
        return CropBox(x=(100 - width) / 2, y=5.0, width=width, height=min(width / ratio, 90.0))

    if image_width <= 0 or image_height <= 0:
        raise ValueError("Image dimensions must be positive")

    face_center_x = (face.origin_x + face.width / 2) / image_width * 100
    face_top = face.origin_y / image_height * 100
    face_height = face.height / image_height * 100
    face_width = face.width / image_width * 100

    top_y = face_top - face_height * ABOVE_FACE
    width_from_face = face_width * HORIZONTAL_PADDING

    height = face_height * (1 + BELOW_FACE) + face_height * ABOVE_FACE
    width = height * ratio
    if width < width_from_face:
        width = width_from_face
        height = width / ratio

    x = face_center_x - width / 2
    y = max(0.0, top_y)

    if x < 0:
        x = 0.0
    if x + width > 100:
        x = 100 - width
        if x < 0:
            x = 0.0
            width = 100.0
            height = width / ratio

    if y + height > 100:
        height = 100 - y
        width = height * ratio
        x = _clamp(face_center_x - width / 2, 0.0, 100 - width)

    # Too small to be useful: grow around the same corner, then push back inside
    if width < MIN_CROP_PERCENT or height < MIN_CROP_PERCENT:
        scale = max(MIN_CROP_PERCENT / width if width > 0 else 1.0,
                    MIN_CROP_PERCENT / height if height > 0 else 1.0)
        width = min(100.0, width * scale)
        height = min(100.0, height * scale)

    width = _clamp(width, MIN_CROP_PERCENT, 100.0)
    height = _clamp(height, MIN_CROP_PERCENT, 100.0)
    x = _clamp(x, 0.0, 100 - width)
    y = _clamp(y, 0.0, 100 - height)

    return CropBox(x=x, y=y, width=width, height=height)


def best_face_detection(detections: Iterable[FaceDetection]) -> Optional[FaceBox]:
    """Pick the detection with the highest confidence × area."""
    best = max(detections, key=lambda d: d.confidence * d.box.area, default=None)
    return best.box if best else None


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
