"""Maps template regions onto pixel neighbourhoods of the normalized image."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import DEFAULT_CONFIG, ScanConfig
from .errors import RegionOutOfBounds
from .geometry import NormalizedImage
from .template import DigitBox, IdentifierField, OptionTarget, QuestionRegion, Template

OPTION = "option"
DIGIT = "digit"


@dataclass(frozen=True)
class RegionKey:
    kind: str
    question: Optional[int] = None
    label: Optional[str] = None
    field: Optional[str] = None
    index: Optional[int] = None

    def __str__(self) -> str:
        if self.kind == OPTION:
            return f"Q{self.question}{self.label}"
        return f"{self.field}[{self.index}]"


@dataclass(frozen=True, eq=False)
class RegionSample:
    """A grayscale neighbourhood cut out of the normalized image.

    ``center``/``radius`` (bubbles) and ``box`` (digits) are in the sample's
    own pixel coordinates; ``origin`` is the sample's top-left corner in the
    normalized image.
    """

    key: RegionKey
    pixels: np.ndarray = field(repr=False)
    origin: Tuple[int, int]
    center: Optional[Tuple[float, float]] = None
    radius: Optional[float] = None
    box: Optional[Tuple[int, int, int, int]] = None


def _scale(normalized: NormalizedImage, template: Template) -> Tuple[float, float]:
    return normalized.width / template.width, normalized.height / template.height


def _cut(
    gray: np.ndarray,
    key: RegionKey,
    bounds: Tuple[int, int, int, int],
    region: Tuple[int, int, int, int],
) -> np.ndarray:
    """Cut ``bounds`` out of the image; only ``region`` itself must lie inside it."""

    height, width = gray.shape[:2]
    rx0, ry0, rx1, ry1 = region
    if rx0 < 0 or ry0 < 0 or rx1 > width or ry1 > height:
        raise RegionOutOfBounds(str(key), region, (width, height))

    x0, y0, x1, y1 = bounds
    left, top = max(0, -x0), max(0, -y0)
    right, bottom = max(0, x1 - width), max(0, y1 - height)
    pixels = gray[y0 + top:y1 - bottom, x0 + left:x1 - right]
    if left or top or right or bottom:
        # Surroundings past the page edge repeat the edge pixels.
        return cv2.copyMakeBorder(pixels, top, bottom, left, right, cv2.BORDER_REPLICATE)
    return pixels.copy()


def sample_option(
    normalized: NormalizedImage,
    template: Template,
    question: QuestionRegion,
    option: OptionTarget,
    config: ScanConfig = DEFAULT_CONFIG,
) -> RegionSample:
    sx, sy = _scale(normalized, template)
    cx, cy = option.x * sx, option.y * sy
    radius = option.radius * (sx + sy) / 2.0
    half = int(math.ceil(radius * config.bubble_sample_scale))

    x0 = int(round(cx)) - half
    y0 = int(round(cy)) - half
    key = RegionKey(OPTION, question=question.number, label=option.label)
    circle = (
        int(round(cx - radius)),
        int(round(cy - radius)),
        int(round(cx + radius)),
        int(round(cy + radius)),
    )
    pixels = _cut(normalized.gray, key, (x0, y0, x0 + 2 * half + 1, y0 + 2 * half + 1), circle)
    return RegionSample(
        key=key,
        pixels=pixels,
        origin=(x0, y0),
        center=(cx - x0, cy - y0),
        radius=radius,
    )


def sample_digit(
    normalized: NormalizedImage,
    template: Template,
    ident: IdentifierField,
    box: DigitBox,
) -> RegionSample:
    sx, sy = _scale(normalized, template)
    x0 = int(math.floor(box.x * sx))
    y0 = int(math.floor(box.y * sy))
    x1 = int(math.ceil((box.x + box.width) * sx))
    y1 = int(math.ceil((box.y + box.height) * sy))

    key = RegionKey(DIGIT, field=ident.name, index=box.index)
    pixels = _cut(normalized.gray, key, (x0, y0, x1, y1), (x0, y0, x1, y1))
    return RegionSample(key=key, pixels=pixels, origin=(x0, y0), box=(0, 0, x1 - x0, y1 - y0))


def sample(
    normalized: NormalizedImage, template: Template, config: ScanConfig = DEFAULT_CONFIG
) -> List[RegionSample]:
    """Extract every option neighbourhood, then every digit box, in template order."""

    samples = [
        sample_option(normalized, template, question, option, config)
        for question, option in template.iter_options()
    ]
    for ident in template.identifiers:
        samples.extend(sample_digit(normalized, template, ident, box) for box in ident.digits)
    return samples
