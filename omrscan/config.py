"""Tuning parameters for a scan.

Every stage receives the configuration explicitly, so concurrent scans can run
with different settings. Distances are in pixels of the normalized image
unless stated otherwise; ratios are fractions in [0, 1].
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class ScanConfig:
    # --- geometry -----------------------------------------------------------
    # Resolution of the normalized image, in pixels per template unit (10 px/mm
    # turns an A4 template into a 2100x2970 image).
    pixels_per_unit: float = 10.0
    # Captures larger than this on their longest side are downscaled first.
    max_image_dimension: int = 3500
    # Fiducial area bounds, relative to the area the marker would have if the
    # page filled the whole capture.
    marker_min_area_fraction: float = 0.05
    marker_max_area_fraction: float = 4.0
    marker_aspect_range: Tuple[float, float] = (0.75, 1.33)
    # Area of the inner dark square relative to the outer square.
    marker_inner_area_range: Tuple[float, float] = (0.04, 0.6)
    marker_approx_epsilon: float = 0.04
    # The marker quadrilateral must cover at least this much of the capture.
    min_page_area_fraction: float = 0.05
    # Smallest triangle formed by three corners, relative to the quad area.
    # A rectangle scores 0.5; near-collinear corners approach 0.
    min_triangle_ratio: float = 0.15
    # Use RANSAC over all marker corners when more than four markers match.
    robust_estimation: bool = True
    # RANSAC reprojection threshold, as a multiple of the fiducial tolerance.
    ransac_threshold_scale: float = 1.0

    # --- region sampling ----------------------------------------------------
    # Half-side of a bubble neighbourhood, as a multiple of the bubble radius.
    bubble_sample_scale: float = 2.0

    # --- mark detection -----------------------------------------------------
    fill_threshold: float = 0.45
    # Distance from the threshold (as a fraction of the way to 0 or 1) at
    # which confidence saturates at 1.0.
    confidence_saturation: float = 0.5
    # Radius of the measured interior disc relative to the bubble radius.
    interior_ratio: float = 0.7
    erode_iterations: int = 1
    # A dark pixel must be this many grey levels below the paper level.
    min_ink_contrast: float = 40.0
    adaptive_c: float = 5.0
    # Global Otsu threshold is used for samples at least this large whose
    # quadrant brightness spread stays under uniformity_tolerance.
    global_threshold_min_side: int = 64
    uniformity_tolerance: float = 12.0
    # Ring (relative to the radius) where the printed outline is expected.
    outline_ring: Tuple[float, float] = (0.8, 1.2)
    outline_min_ratio: float = 0.2
    # Primary results below this confidence, or without an isolated outline,
    # are re-checked by the fallback strategies.
    fallback_confidence: float = 0.5
    shape_radius_range: Tuple[float, float] = (0.6, 1.4)
    min_circularity: float = 0.7
    shape_confidence_scale: float = 0.9
    hough_param1: float = 60.0
    hough_param2: float = 14.0
    # Confidence multiplier when strategies disagree about a bubble.
    disagreement_penalty: float = 0.5

    # --- identifier recognition -------------------------------------------
    # Boxes whose raw 2-98 percentile range is below this are unreadable.
    digit_min_contrast: float = 40.0
    segment_contrast_cap: float = 60.0
    segment_bit_threshold: float = 5.0
    segment_min_score: float = 8.0
    segment_strong_threshold: float = 6.0
    segment_strong_min: int = 2
    segment_score_saturation: float = 40.0
    # Gap to the runner-up digit at which confidence saturates. One segment
    # out of seven (0 against 8) separates scores by about cap / 7.
    segment_margin_saturation: float = 8.0
    digit_template_size: Tuple[int, int] = (21, 30)
    template_min_ink: float = 0.05
    template_min_correlation: float = 0.3
    template_margin_saturation: float = 0.2

    # --- quality assessment ------------------------------------------------
    review_confidence: float = 0.5
    identifier_review_confidence: float = 0.5
    max_flagged_fraction: float = 0.25
    low_light_level: float = 110.0
    min_contrast: float = 8.0
    min_sharpness: float = 10.0
    max_skew_degrees: float = 20.0
    max_keystone: float = 1.25

    # --- pipeline -----------------------------------------------------------
    timeout_seconds: Optional[float] = 30.0
    region_workers: int = 1

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScanConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")

        values: Dict[str, Any] = {}
        for key, value in data.items():
            if isinstance(value, list):
                value = tuple(value)
            values[key] = value
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "ScanConfig":
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


DEFAULT_CONFIG = ScanConfig()
