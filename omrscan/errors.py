"""Structured errors raised by the scanning pipeline.

Geometry failures and timeouts abort a single scan. Template problems are
reported separately because they are fixed by correcting the template, not by
rescanning the sheet. Low-confidence detections are never errors.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence, Tuple


class OMRError(Exception):
    """Base class for every error raised by omrscan."""

    code = "omr_error"
    retryable = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
        }


class ScanError(OMRError):
    """The scan cannot produce a result; the sheet should be rescanned."""

    code = "scan_error"


class CaptureError(OMRError):
    """The captured image could not be decoded or is empty."""

    code = "capture_error"


class GeometryError(ScanError):
    code = "geometry_error"


class InsufficientMarkers(GeometryError):
    code = "insufficient_markers"

    def __init__(self, found: int, required: int) -> None:
        super().__init__(
            f"Found {found} fiducial marker(s), at least {required} are required"
        )
        self.found = found
        self.required = required

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data.update({"found": self.found, "required": self.required})
        return data


class GeometryDegenerate(GeometryError):
    code = "geometry_degenerate"

    def __init__(self, reason: str, markers: Sequence[str] = ()) -> None:
        message = f"Marker configuration is degenerate: {reason}"
        if markers:
            message += f" (markers: {', '.join(markers)})"
        super().__init__(message)
        self.reason = reason
        self.markers = tuple(markers)

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data.update({"reason": self.reason, "markers": list(self.markers)})
        return data


class TimedOut(ScanError):
    """The scan exceeded its wall-clock budget. Retrying the same image is fine."""

    code = "timed_out"
    retryable = True

    def __init__(self, budget: float, elapsed: float, stage: Optional[str] = None) -> None:
        message = f"Scan exceeded its {budget:.2f}s budget after {elapsed:.2f}s"
        if stage:
            message += f" during {stage}"
        super().__init__(message)
        self.budget = budget
        self.elapsed = elapsed
        self.stage = stage

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data.update({"budget": self.budget, "elapsed": self.elapsed, "stage": self.stage})
        return data


class TemplateError(OMRError, ValueError):
    """The template is malformed."""

    code = "template_error"


class RegionOutOfBounds(TemplateError):
    code = "region_out_of_bounds"

    def __init__(self, region: str, bounds: Tuple[float, float, float, float], limits: Tuple[float, float]) -> None:
        x0, y0, x1, y1 = bounds
        width, height = limits
        super().__init__(
            f"Region {region} spans ({x0:.1f}, {y0:.1f})-({x1:.1f}, {y1:.1f}) "
            f"outside the {width:.1f}x{height:.1f} frame"
        )
        self.region = region
        self.bounds = bounds
        self.limits = limits

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data.update({"region": self.region, "bounds": list(self.bounds), "limits": list(self.limits)})
        return data
