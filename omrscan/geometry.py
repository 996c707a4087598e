"""Geometric normalization of a photographed sheet.

Fiducials are located by their nested-square signature, assigned to the page
corners by their position around the centroid, checked for a consistent
configuration and used to resample the capture into the template's canonical
pixel frame.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .capture import RawCapture
from .config import DEFAULT_CONFIG, ScanConfig
from .errors import GeometryDegenerate, InsufficientMarkers
from .template import CORNERS, Fiducial, Template, assign_corners

logger = logging.getLogger(__name__)

REQUIRED_MARKERS = 4


@dataclass(frozen=True, eq=False)
class DetectedMarker:
    """A nested-square marker found in the capture."""

    center: Tuple[float, float]
    corners: np.ndarray = field(repr=False)  # (4, 2) tl, tr, br, bl
    area: float
    inner_ratio: float


@dataclass(frozen=True)
class MarkerMatch:
    name: str
    detected: Tuple[float, float]
    expected: Tuple[float, float]
    error: float  # template units
    inlier: bool = True

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "detected": [round(v, 2) for v in self.detected],
            "expected": [round(v, 2) for v in self.expected],
            "error": round(self.error, 3),
            "inlier": self.inlier,
        }


@dataclass(frozen=True)
class ImageMetrics:
    brightness: float
    contrast: float
    sharpness: float
    skew_degrees: float
    keystone: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "brightness": round(self.brightness, 2),
            "contrast": round(self.contrast, 2),
            "sharpness": round(self.sharpness, 2),
            "skew_degrees": round(self.skew_degrees, 2),
            "keystone": round(self.keystone, 3),
        }


@dataclass(frozen=True, eq=False)
class NormalizedImage:
    """The capture resampled into the template's canonical frame."""

    image: np.ndarray = field(repr=False)
    gray: np.ndarray = field(repr=False)
    homography: np.ndarray = field(repr=False)  # capture pixels -> canonical pixels
    pixels_per_unit: float
    markers: Tuple[MarkerMatch, ...]
    rejected_markers: Tuple[str, ...]
    method: str
    metrics: ImageMetrics

    @property
    def width(self) -> int:
        return int(self.gray.shape[1])

    @property
    def height(self) -> int:
        return int(self.gray.shape[0])

    def to_canonical(self, points: Sequence[Tuple[float, float]]) -> np.ndarray:
        """Map capture pixel coordinates into normalized pixel coordinates."""

        pts = np.asarray(points, dtype=np.float64).reshape(-1, 1, 2)
        return cv2.perspectiveTransform(pts, self.homography).reshape(-1, 2)


def order_points(pts: np.ndarray) -> np.ndarray:
    """Order four corner points (top-left, top-right, bottom-right, bottom-left)."""

    rect = np.zeros((4, 2), dtype="float32")
    s = pts.sum(axis=1)
    rect[0] = pts[np.argmin(s)]  # top-left
    rect[2] = pts[np.argmax(s)]  # bottom-right

    diff = np.diff(pts, axis=1)
    rect[1] = pts[np.argmin(diff)]  # top-right
    rect[3] = pts[np.argmax(diff)]  # bottom-left
    return rect


def _odd(value: float, minimum: int = 3) -> int:
    value = max(minimum, int(value))
    return value if value % 2 == 1 else value + 1


def _marker_binaries(gray: np.ndarray, marker_side: float) -> Iterator[Tuple[str, np.ndarray]]:
    """Yield binarizations to search for markers in, cheapest first."""

    blurred = cv2.GaussianBlur(gray, (5, 5), 0)
    _, otsu = cv2.threshold(blurred, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
    yield "otsu", otsu

    block = _odd(marker_side * 1.5, minimum=11)
    adaptive = cv2.adaptiveThreshold(
        blurred,
        255,
        cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
        cv2.THRESH_BINARY_INV,
        block,
        5,
    )
    yield "adaptive", adaptive


def _quad(contour: np.ndarray, epsilon: float) -> Optional[np.ndarray]:
    peri = cv2.arcLength(contour, True)
    approx = cv2.approxPolyDP(contour, epsilon * peri, True)
    if len(approx) != 4 or not cv2.isContourConvex(approx):
        return None
    return approx.reshape(4, 2).astype("float32")


def _is_squarish(contour: np.ndarray, config: ScanConfig) -> bool:
    # Measured against the rotated bounding rectangle so tilted markers pass.
    _, (w, h), _ = cv2.minAreaRect(contour)
    if w <= 0 or h <= 0:
        return False
    low, high = config.marker_aspect_range
    if not low <= w / float(h) <= high:
        return False
    # Squares fill their rectangle; circles only cover about 78% of it. The
    # hull hides the staircase edges of a rotated, rasterized square.
    hull_area = cv2.contourArea(cv2.convexHull(contour))
    return hull_area / float(w * h) >= 0.85


def _nested_squares(
    binary: np.ndarray, min_area: float, max_area: float, config: ScanConfig
) -> List[DetectedMarker]:
    # RETR_TREE so the hole and the inner square of each marker stay reachable
    contours, hierarchy = cv2.findContours(binary, cv2.RETR_TREE, cv2.CHAIN_APPROX_SIMPLE)
    if hierarchy is None:
        return []
    tree = hierarchy[0]
    low, high = config.marker_inner_area_range

    markers: List[DetectedMarker] = []
    for idx, contour in enumerate(contours):
        area = cv2.contourArea(contour)
        if area < min_area or area > max_area:
            continue
        if not _is_squarish(contour, config):
            continue
        outer = _quad(contour, config.marker_approx_epsilon)
        if outer is None:
            continue

        center = outer.mean(axis=0)
        side = math.sqrt(area)
        inner_ratio = None

        hole_idx = tree[idx][2]
        while hole_idx != -1 and inner_ratio is None:
            child_idx = tree[hole_idx][2]
            while child_idx != -1:
                child = contours[child_idx]
                child_area = cv2.contourArea(child)
                ratio = child_area / area
                if low <= ratio <= high and _is_squarish(child, config):
                    inner = _quad(child, config.marker_approx_epsilon)
                    if inner is not None and np.linalg.norm(inner.mean(axis=0) - center) < 0.2 * side:
                        inner_ratio = ratio
                        break
                child_idx = tree[child_idx][0]
            hole_idx = tree[hole_idx][0]

        if inner_ratio is None:
            continue

        markers.append(
            DetectedMarker(
                center=(float(center[0]), float(center[1])),
                corners=order_points(outer),
                area=float(area),
                inner_ratio=float(inner_ratio),
            )
        )

    # Merge duplicates (the same marker reached twice through the tree)
    markers.sort(key=lambda m: m.area, reverse=True)
    unique: List[DetectedMarker] = []
    for marker in markers:
        if all(
            math.hypot(marker.center[0] - kept.center[0], marker.center[1] - kept.center[1])
            > 0.5 * math.sqrt(kept.area)
            for kept in unique
        ):
            unique.append(marker)
    return unique


def find_fiducials(gray: np.ndarray, template: Template, config: ScanConfig = DEFAULT_CONFIG) -> List[DetectedMarker]:
    """Locate every nested-square marker in a grayscale capture."""

    height, width = gray.shape[:2]
    page_scale = min(width / template.width, height / template.height)
    marker_side = float(np.median([f.size for f in template.fiducials])) * page_scale
    expected_area = marker_side * marker_side
    min_area = expected_area * config.marker_min_area_fraction
    max_area = expected_area * config.marker_max_area_fraction

    best: List[DetectedMarker] = []
    for name, binary in _marker_binaries(gray, marker_side):
        markers = _nested_squares(binary, min_area, max_area, config)
        logger.debug("Marker search (%s threshold): %d candidate(s)", name, len(markers))
        if len(markers) > len(best):
            best = markers
        if len(best) >= len(template.fiducials):
            break
    return [refine_corners(gray, marker) for marker in best]


def refine_corners(gray: np.ndarray, marker: DetectedMarker) -> DetectedMarker:
    """Move a marker's polygon corners to sub-pixel corner positions."""

    window = max(2, int(math.sqrt(marker.area) * 0.1))
    criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.01)
    corners = marker.corners.reshape(-1, 1, 2).astype(np.float32).copy()
    cv2.cornerSubPix(gray, corners, (window, window), (-1, -1), criteria)
    corners = corners.reshape(4, 2)
    # Keep the polygon vertex when refinement wanders off to another feature.
    drift = np.linalg.norm(corners - marker.corners, axis=1)
    corners[drift > window] = marker.corners[drift > window]
    center = corners.mean(axis=0)
    return DetectedMarker(
        center=(float(center[0]), float(center[1])),
        corners=corners,
        area=marker.area,
        inner_ratio=marker.inner_ratio,
    )


def _polygon_area(pts: np.ndarray) -> float:
    x, y = pts[:, 0], pts[:, 1]
    return 0.5 * abs(float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))))


def check_quadrilateral(quad: np.ndarray, image_area: float, config: ScanConfig) -> None:
    """Reject corner configurations that make the transform unstable."""

    area = _polygon_area(quad)
    if area <= 0 or area < config.min_page_area_fraction * image_area:
        raise GeometryDegenerate(
            f"markers enclose {area / max(image_area, 1.0):.1%} of the image"
        )

    signs = []
    for i in range(4):
        a, b, c = quad[i], quad[(i + 1) % 4], quad[(i + 2) % 4]
        cross = (b[0] - a[0]) * (c[1] - b[1]) - (b[1] - a[1]) * (c[0] - b[0])
        signs.append(np.sign(cross))
    if len(set(signs)) != 1:
        raise GeometryDegenerate("corner markers do not form a convex quadrilateral")

    for skip in range(4):
        tri = np.delete(quad, skip, axis=0)
        if _polygon_area(tri) / area < config.min_triangle_ratio:
            raise GeometryDegenerate("three corner markers are nearly collinear")


def _canonical(points: Sequence[Tuple[float, float]], ppu: float) -> np.ndarray:
    return np.asarray(points, dtype=np.float64) * ppu


def _match_extra_fiducials(
    extras: Sequence[Fiducial],
    candidates: Dict[int, DetectedMarker],
    provisional: np.ndarray,
    ppu: float,
) -> Dict[str, DetectedMarker]:
    """Pair non-corner fiducials with the nearest remaining detection."""

    matched: Dict[str, DetectedMarker] = {}
    if not extras or not candidates:
        return matched

    inverse = np.linalg.inv(provisional)
    remaining = dict(candidates)
    for fiducial in extras:
        expected = _canonical([(fiducial.x, fiducial.y)], ppu).reshape(1, 1, 2)
        predicted = cv2.perspectiveTransform(expected, inverse).reshape(2)
        # search radius: twice the tolerance, measured in capture pixels
        offset = _canonical([(fiducial.x + fiducial.tolerance * 2, fiducial.y)], ppu).reshape(1, 1, 2)
        radius = float(np.linalg.norm(cv2.perspectiveTransform(offset, inverse).reshape(2) - predicted))

        best_idx, best_dist = None, radius
        for idx, marker in remaining.items():
            dist = math.hypot(marker.center[0] - predicted[0], marker.center[1] - predicted[1])
            if dist <= best_dist:
                best_idx, best_dist = idx, dist
        if best_idx is not None:
            matched[fiducial.name] = remaining.pop(best_idx)
    return matched


def _leave_one_out_errors(
    pairs: Sequence[Tuple[Fiducial, DetectedMarker]], ppu: float
) -> List[float]:
    """Predict each marker from the others; return errors in template units."""

    errors: List[float] = []
    for i, (fiducial, marker) in enumerate(pairs):
        src = np.concatenate([m.corners for j, (_, m) in enumerate(pairs) if j != i]).astype(np.float64)
        dst = np.concatenate(
            [_canonical(f.corners(), ppu) for j, (f, _) in enumerate(pairs) if j != i]
        )
        homography, _ = cv2.findHomography(src, dst, 0)
        if homography is None:
            raise GeometryDegenerate("marker corners do not determine a transform", [fiducial.name])
        predicted = cv2.perspectiveTransform(
            np.asarray(marker.center, dtype=np.float64).reshape(1, 1, 2), homography
        ).reshape(2)
        expected = _canonical([(fiducial.x, fiducial.y)], ppu).reshape(2)
        errors.append(float(np.linalg.norm(predicted - expected)) / ppu)
    return errors


def _reprojection_errors(
    pairs: Sequence[Tuple[Fiducial, DetectedMarker]], homography: np.ndarray, ppu: float
) -> List[float]:
    errors = []
    for fiducial, marker in pairs:
        mapped = cv2.perspectiveTransform(
            np.asarray(marker.center, dtype=np.float64).reshape(1, 1, 2), homography
        ).reshape(2)
        expected = _canonical([(fiducial.x, fiducial.y)], ppu).reshape(2)
        errors.append(float(np.linalg.norm(mapped - expected)) / ppu)
    return errors


def estimate_transform(
    pairs: Sequence[Tuple[Fiducial, DetectedMarker]],
    corner_names: Sequence[str],
    config: ScanConfig,
) -> Tuple[np.ndarray, List[MarkerMatch], List[str], str]:
    """Compute the capture-to-canonical homography from matched markers.

    Returns the homography, per-marker matches, rejected marker names and the
    method used.
    """

    ppu = config.pixels_per_unit
    by_name = {f.name: (f, m) for f, m in pairs}

    if len(pairs) > REQUIRED_MARKERS and config.robust_estimation:
        src = np.concatenate([m.corners for _, m in pairs]).astype(np.float64)
        dst = np.concatenate([_canonical(f.corners(), ppu) for f, _ in pairs])
        threshold = min(f.tolerance for f, _ in pairs) * ppu * config.ransac_threshold_scale
        homography, mask = cv2.findHomography(src, dst, cv2.RANSAC, threshold)
        if homography is None or mask is None:
            raise GeometryDegenerate("robust estimation found no consistent transform")

        mask = mask.ravel()
        inliers, rejected = [], []
        for i, (fiducial, marker) in enumerate(pairs):
            if int(mask[4 * i:4 * i + 4].sum()) >= 3:
                inliers.append((fiducial, marker))
            else:
                rejected.append(fiducial.name)
        if len(inliers) < REQUIRED_MARKERS:
            raise GeometryDegenerate(
                f"only {len(inliers)} marker(s) agree on the page geometry", rejected
            )
        if rejected:
            logger.info("Rejected inconsistent marker(s): %s", ", ".join(rejected))

        src = np.concatenate([m.corners for _, m in inliers]).astype(np.float64)
        dst = np.concatenate([_canonical(f.corners(), ppu) for f, _ in inliers])
        homography, _ = cv2.findHomography(src, dst, 0)
        if homography is None:
            raise GeometryDegenerate("inlier markers do not determine a transform")

        errors = _reprojection_errors(pairs, homography, ppu)
        rejected_set = set(rejected)
        matches = [
            MarkerMatch(
                name=f.name,
                detected=m.center,
                expected=(f.x, f.y),
                error=err,
                inlier=f.name not in rejected_set,
            )
            for (f, m), err in zip(pairs, errors)
        ]
        return homography, matches, rejected, "ransac"

    errors = _leave_one_out_errors(pairs, ppu)
    offending = [f.name for (f, _), err in zip(pairs, errors) if err > f.tolerance]
    if offending:
        worst = max(errors)
        raise GeometryDegenerate(
            f"marker positions disagree by up to {worst:.1f} units", offending
        )

    src = np.float32([by_name[name][1].center for name in corner_names])
    dst = np.float32([
        (by_name[name][0].x * ppu, by_name[name][0].y * ppu) for name in corner_names
    ])
    homography = cv2.getPerspectiveTransform(src, dst)
    matches = [
        MarkerMatch(name=f.name, detected=m.center, expected=(f.x, f.y), error=err)
        for (f, m), err in zip(pairs, errors)
    ]
    return homography, matches, [], "four_point"


def measure_image(gray: np.ndarray, corner_centers: np.ndarray) -> ImageMetrics:
    """Lighting, focus and pose statistics used by the quality assessor."""

    tl, tr, br, bl = corner_centers
    top = float(np.linalg.norm(tr - tl))
    bottom = float(np.linalg.norm(br - bl))
    left = float(np.linalg.norm(bl - tl))
    right = float(np.linalg.norm(br - tr))
    keystone = max(
        max(top, bottom) / max(min(top, bottom), 1e-6),
        max(left, right) / max(min(left, right), 1e-6),
    )
    skew = math.degrees(math.atan2(float(tr[1] - tl[1]), float(tr[0] - tl[0])))

    return ImageMetrics(
        brightness=float(np.percentile(gray, 90)),
        contrast=float(gray.std()),
        sharpness=float(cv2.Laplacian(gray, cv2.CV_64F).var()),
        skew_degrees=skew,
        keystone=keystone,
    )


def normalize(
    capture: RawCapture, template: Template, config: ScanConfig = DEFAULT_CONFIG
) -> NormalizedImage:
    """Warp a capture into the template's canonical pixel frame.

    Raises InsufficientMarkers when fewer than four fiducials are found and
    GeometryDegenerate when the found markers cannot define a stable transform.
    """

    capture = capture.downscaled(config.max_image_dimension)
    image = capture.bgr()
    gray = capture.gray()
    image_area = float(gray.shape[0] * gray.shape[1])

    detected = find_fiducials(gray, template, config)
    logger.debug("Found %d fiducial marker(s)", len(detected))
    if len(detected) < REQUIRED_MARKERS:
        raise InsufficientMarkers(found=len(detected), required=REQUIRED_MARKERS)

    detected_corners = assign_corners([m.center for m in detected])
    template_corners = assign_corners([(f.x, f.y) for f in template.fiducials])

    corner_centers = np.array([detected[detected_corners[c]].center for c in CORNERS], dtype=np.float64)
    check_quadrilateral(corner_centers, image_area, config)

    ppu = config.pixels_per_unit
    corner_fiducials = [template.fiducials[template_corners[c]] for c in CORNERS]
    provisional = cv2.getPerspectiveTransform(
        corner_centers.astype(np.float32),
        np.float32([(f.x * ppu, f.y * ppu) for f in corner_fiducials]),
    )

    corner_names = {f.name for f in corner_fiducials}
    extras = [f for f in template.fiducials if f.name not in corner_names]
    used = set(detected_corners.values())
    leftovers = {i: m for i, m in enumerate(detected) if i not in used}
    extra_matches = _match_extra_fiducials(extras, leftovers, provisional, ppu)

    pairs: List[Tuple[Fiducial, DetectedMarker]] = []
    for fiducial in template.fiducials:
        if fiducial.name in corner_names:
            corner = CORNERS[[f.name for f in corner_fiducials].index(fiducial.name)]
            pairs.append((fiducial, detected[detected_corners[corner]]))
        elif fiducial.name in extra_matches:
            pairs.append((fiducial, extra_matches[fiducial.name]))

    homography, matches, rejected, method = estimate_transform(
        pairs, [f.name for f in corner_fiducials], config
    )
    logger.debug(
        "Transform via %s from %d marker(s), max marker error %.2f %s",
        method,
        len(pairs),
        max(m.error for m in matches),
        template.unit,
    )

    out_size = (int(round(template.width * ppu)), int(round(template.height * ppu)))
    warped = cv2.warpPerspective(
        image, homography, out_size, flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE
    )
    warped_gray = cv2.cvtColor(warped, cv2.COLOR_BGR2GRAY)

    return NormalizedImage(
        image=warped,
        gray=warped_gray,
        homography=homography,
        pixels_per_unit=ppu,
        markers=tuple(matches),
        rejected_markers=tuple(rejected),
        method=method,
        metrics=measure_image(warped_gray, corner_centers),
    )
