import pytest

from repose.services.crop import (
    CropBox, FaceBox, FaceDetection, MIN_CROP_PERCENT,
    best_face_detection, calculate_head_and_shoulders_crop,
)


def _inside(crop: CropBox) -> bool:
    eps = 1e-9
    return (
        crop.x >= -eps and crop.y >= -eps
        and crop.x + crop.width <= 100 + eps
        and crop.y + crop.height <= 100 + eps
    )


def test_centered_face_gets_portrait_crop():
    face = FaceBox(origin_x=450, origin_y=200, width=100, height=120)
    crop = calculate_head_and_shoulders_crop(face, 1000, 1500, "4:5")

    assert _inside(crop)
    assert crop.width / crop.height == pytest.approx(0.8)
    # Starts just above the face
    assert crop.y < 200 / 1500 * 100
    # Horizontally centred on the face
    assert crop.x + crop.width / 2 == pytest.approx(50.0)


def test_square_aspect():
    face = FaceBox(origin_x=400, origin_y=100, width=200, height=200)
    crop = calculate_head_and_shoulders_crop(face, 1000, 1000, "1:1")
    assert _inside(crop)
    assert crop.width == pytest.approx(crop.height)


def test_face_at_edge_is_pushed_inside():
    face = FaceBox(origin_x=0, origin_y=0, width=300, height=300)
    crop = calculate_head_and_shoulders_crop(face, 1000, 1000, "4:5")
    assert _inside(crop)
    assert crop.x == 0.0
    assert crop.y == 0.0


def test_large_face_is_clamped_to_image():
    face = FaceBox(origin_x=100, origin_y=100, width=800, height=800)
    crop = calculate_head_and_shoulders_crop(face, 1000, 1000, "4:5")
    assert _inside(crop)


def test_tiny_face_gets_minimum_size():
    face = FaceBox(origin_x=500, origin_y=500, width=2, height=2)
    crop = calculate_head_and_shoulders_crop(face, 4000, 4000, "4:5")
    assert crop.width >= MIN_CROP_PERCENT
    assert crop.height >= MIN_CROP_PERCENT
    assert _inside(crop)


def test_no_face_falls_back_to_upper_centre():
    crop = calculate_head_and_shoulders_crop(None, 1000, 1000, "4:5")
    assert crop.x == pytest.approx(15.0)
    assert crop.y == pytest.approx(5.0)
    assert _inside(crop)


def test_unknown_aspect_ratio():
    with pytest.raises(ValueError):
        calculate_head_and_shoulders_crop(None, 1000, 1000, "16:9")


def test_best_detection_weighs_confidence_by_area():
    small_sure = FaceDetection(FaceBox(0, 0, 10, 10), confidence=0.99)
    big_likely = FaceDetection(FaceBox(0, 0, 100, 100), confidence=0.6)
    assert best_face_detection([small_sure, big_likely]) == big_likely.box
    assert best_face_detection([]) is None
