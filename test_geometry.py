"""Fiducial detection and perspective normalization."""

from __future__ import annotations

import numpy as np
import pytest

from omrscan.config import ScanConfig
from omrscan.errors import GeometryDegenerate, InsufficientMarkers
from omrscan.geometry import assign_corners, check_quadrilateral, find_fiducials, normalize, order_points
from synthetic_sheet import PPU, capture_of, keystone, render_sheet, rotated_capture, sheet_capture


def test_normalize_finds_four_markers(quiz_template, config):
    normalized = normalize(sheet_capture(quiz_template), quiz_template, config)

    assert normalized.method == "four_point"
    assert normalized.gray.shape == (int(297 * PPU), int(210 * PPU))
    assert normalized.image.shape[2] == 3
    assert sorted(m.name for m in normalized.markers) == ["bottom_left", "bottom_right", "top_left", "top_right"]
    assert all(m.error < 1.0 for m in normalized.markers)
    assert normalized.rejected_markers == ()


def test_aligned_capture_gives_identity_transform(quiz_template, config):
    normalized = normalize(sheet_capture(quiz_template), quiz_template, config)

    points = np.array([[0, 0], [1049, 0], [525, 742], [0, 1484], [1049, 1484]], dtype=np.float64)
    mapped = normalized.to_canonical(points)
    assert np.abs(mapped - points).max() < 1.5


def test_blank_image_has_no_markers(quiz_template, config):
    blank = np.full((1485, 1050, 3), 255, dtype=np.uint8)

    with pytest.raises(InsufficientMarkers) as excinfo:
        normalize(capture_of(blank), quiz_template, config)
    assert excinfo.value.found == 0
    assert excinfo.value.required == 4


def test_missing_marker_is_insufficient(quiz_template, config):
    capture = sheet_capture(quiz_template, omit_markers=["bottom_left"])

    with pytest.raises(InsufficientMarkers) as excinfo:
        normalize(capture, quiz_template, config)
    assert excinfo.value.found == 3


def test_shifted_marker_is_degenerate(quiz_template, config):
    # 1.5 times the 6 mm tolerance
    capture = sheet_capture(quiz_template, marker_offsets={"bottom_right": (-9.0, 0.0)})

    with pytest.raises(GeometryDegenerate) as excinfo:
        normalize(capture, quiz_template, config)
    assert "bottom_right" in excinfo.value.markers


def test_small_marker_offset_is_tolerated(quiz_template, config):
    capture = sheet_capture(quiz_template, marker_offsets={"bottom_right": (-1.0, 0.0)})

    normalized = normalize(capture, quiz_template, config)
    assert normalized.method == "four_point"


def test_perspective_capture_is_rectified(quiz_template, config):
    answers = {1: ["A"], 2: ["B"], 3: ["C"], 4: ["D"]}
    padding = 40
    page = render_sheet(quiz_template, answers=answers, padding=padding)
    warp = keystone(page.shape[1], page.shape[0], 0.03)
    image = render_sheet(quiz_template, answers=answers, padding=padding, warp=warp)

    normalized = normalize(capture_of(image), quiz_template, config)

    assert normalized.metrics.keystone > 1.02
    for number, (label,) in answers.items():
        option = next(o for o in quiz_template.question(number).options if o.label == label)
        x, y = int(round(option.x * PPU)), int(round(option.y * PPU))
        assert normalized.gray[y, x] < 100


@pytest.mark.parametrize("degrees", [-15.0, -10.0, -5.0, 5.0, 10.0, 15.0])
def test_tilted_markers_are_found(quiz_template, config, degrees):
    capture = rotated_capture(quiz_template, degrees)

    markers = find_fiducials(capture.gray(), quiz_template, config)

    assert len(markers) == 4


@pytest.mark.parametrize("degrees", [-15.0, -8.0, 8.0, 15.0])
def test_tilted_capture_is_straightened(quiz_template, config, degrees):
    answers = {1: ["A"], 2: ["B"], 3: ["C"], 4: ["D"]}

    normalized = normalize(rotated_capture(quiz_template, degrees, answers=answers), quiz_template, config)

    assert normalized.metrics.skew_degrees == pytest.approx(-degrees, abs=1.0)
    assert all(m.error < 1.0 for m in normalized.markers)
    for number, (label,) in answers.items():
        option = next(o for o in quiz_template.question(number).options if o.label == label)
        x, y = int(round(option.x * PPU)), int(round(option.y * PPU))
        assert normalized.gray[y, x] < 100


def test_large_capture_is_downscaled(quiz_template):
    image = render_sheet(quiz_template, padding=30)
    config = ScanConfig(pixels_per_unit=PPU, max_image_dimension=1200)

    normalized = normalize(capture_of(image), quiz_template, config)
    assert normalized.gray.shape == (int(297 * PPU), int(210 * PPU))


def test_robust_estimation_rejects_a_displaced_marker(six_marker_template, config):
    capture = sheet_capture(six_marker_template, marker_offsets={"bottom_right": (-9.0, 0.0)})

    normalized = normalize(capture, six_marker_template, config)

    assert normalized.method == "ransac"
    assert normalized.rejected_markers == ("bottom_right",)
    rejected = next(m for m in normalized.markers if m.name == "bottom_right")
    assert not rejected.inlier
    assert rejected.error > 6.0


def test_exact_mode_with_extra_markers_still_checks_consistency(six_marker_template, config):
    capture = sheet_capture(six_marker_template, marker_offsets={"bottom_right": (-9.0, 0.0)})

    with pytest.raises(GeometryDegenerate):
        normalize(capture, six_marker_template, config.with_overrides(robust_estimation=False))


def test_six_clean_markers_all_inliers(six_marker_template, config):
    normalized = normalize(sheet_capture(six_marker_template), six_marker_template, config)

    assert normalized.method == "ransac"
    assert len(normalized.markers) == 6
    assert normalized.rejected_markers == ()


def test_assign_corners_ignores_input_order():
    points = [(190, 280), (12, 14), (105, 150), (10, 290), (200, 9)]

    corners = assign_corners(points)

    assert corners == {"top_left": 1, "top_right": 4, "bottom_right": 0, "bottom_left": 3}


def test_assign_corners_requires_every_quadrant():
    with pytest.raises(GeometryDegenerate, match="quadrant"):
        assign_corners([(10, 10), (20, 10), (30, 10), (40, 200)])


def test_collinear_corners_are_degenerate():
    quad = np.array([[0, 0], [100, 0], [200, 1], [100, 2]], dtype=np.float64)

    with pytest.raises(GeometryDegenerate):
        check_quadrilateral(quad, image_area=200 * 200, config=ScanConfig())


def test_tiny_marker_quad_is_degenerate():
    quad = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], dtype=np.float64)

    with pytest.raises(GeometryDegenerate, match="enclose"):
        check_quadrilateral(quad, image_area=1000 * 1000, config=ScanConfig())


def test_order_points():
    pts = np.array([[10, 90], [90, 10], [10, 10], [90, 90]], dtype=np.float32)

    ordered = order_points(pts)

    assert ordered.tolist() == [[10, 10], [90, 10], [90, 90], [10, 90]]
