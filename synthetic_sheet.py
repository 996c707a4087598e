"""Render synthetic answer-sheet photos from a Template for the tests."""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np

from omrscan.capture import RawCapture
from omrscan.digits import DIGIT_SEGMENTS, segment_rect
from omrscan.template import Template

# Synthetic sheets are rendered at 5 px/mm to keep the tests quick.
PPU = 5.0

PAPER = 255
BACKGROUND = 110
OUTLINE = 60
PENCIL = 40
INK = 30


def _square(image: np.ndarray, cx: float, cy: float, side: float, color: int) -> None:
    x0 = int(round(cx - side / 2.0))
    y0 = int(round(cy - side / 2.0))
    x1 = int(round(cx + side / 2.0)) - 1
    y1 = int(round(cy + side / 2.0)) - 1
    cv2.rectangle(image, (x0, y0), (x1, y1), (color, color, color), -1)


def draw_marker(image: np.ndarray, cx: float, cy: float, side: float, inner_ratio: float) -> None:
    """Nested square: black outer, white ring, black inner square."""

    _square(image, cx, cy, side, 0)
    _square(image, cx, cy, side * 0.7, PAPER)
    _square(image, cx, cy, side * inner_ratio, 0)


def render_sheet(
    template: Template,
    answers: Optional[Mapping[int, Iterable[str]]] = None,
    digits: Optional[Mapping[str, Sequence[Optional[int]]]] = None,
    ppu: float = PPU,
    marker_offsets: Optional[Mapping[str, Tuple[float, float]]] = None,
    omit_markers: Iterable[str] = (),
    padding: int = 0,
    warp: Optional[np.ndarray] = None,
    noise: float = 0.0,
    seed: int = 1234,
) -> np.ndarray:
    """Draw ``template`` with the given marks as a BGR image.

    ``answers`` maps question numbers to the labels pencilled in; ``digits``
    maps identifier field names to the digit written in each box (None leaves
    the box blank). Marker offsets are in template units. ``padding`` adds a
    darker border around the page and ``warp`` applies a 3x3 perspective
    transform to the padded image.
    """

    answers = answers or {}
    digits = digits or {}
    marker_offsets = marker_offsets or {}
    omitted = set(omit_markers)

    width = int(round(template.width * ppu))
    height = int(round(template.height * ppu))
    page = np.full((height, width, 3), PAPER, dtype=np.uint8)

    for fiducial in template.fiducials:
        if fiducial.name in omitted:
            continue
        dx, dy = marker_offsets.get(fiducial.name, (0.0, 0.0))
        draw_marker(page, (fiducial.x + dx) * ppu, (fiducial.y + dy) * ppu, fiducial.size * ppu, fiducial.inner_ratio)

    thickness = max(1, int(round(0.3 * ppu)))
    for question, option in template.iter_options():
        center = (int(round(option.x * ppu)), int(round(option.y * ppu)))
        radius = int(round(option.radius * ppu))
        cv2.circle(page, center, radius, (OUTLINE,) * 3, thickness)
        if option.label in set(answers.get(question.number, ())):
            cv2.circle(page, center, int(round(radius * 0.8)), (PENCIL,) * 3, -1)

    for ident in template.identifiers:
        written = digits.get(ident.name, ())
        for position, box in enumerate(ident.digits):
            if position >= len(written) or written[position] is None:
                continue
            pixel_box = (
                int(round(box.x * ppu)),
                int(round(box.y * ppu)),
                int(round(box.width * ppu)),
                int(round(box.height * ppu)),
            )
            for segment in DIGIT_SEGMENTS[written[position]]:
                x, y, w, h = segment_rect(pixel_box, segment)
                cv2.rectangle(page, (x, y), (x + w - 1, y + h - 1), (INK,) * 3, -1)

    if padding:
        image = np.full((height + 2 * padding, width + 2 * padding, 3), BACKGROUND, dtype=np.uint8)
        image[padding:padding + height, padding:padding + width] = page
    else:
        image = page

    if warp is not None:
        image = cv2.warpPerspective(
            image,
            warp,
            (image.shape[1], image.shape[0]),
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=(BACKGROUND,) * 3,
        )

    if noise > 0:
        rng = np.random.default_rng(seed)
        noisy = image.astype(np.float32) + rng.normal(0.0, noise, image.shape)
        image = np.clip(noisy, 0, 255).astype(np.uint8)

    return image


def keystone(width: int, height: int, amount: float) -> np.ndarray:
    """Perspective that narrows the top edge by ``amount`` of the width on each side."""

    src = np.float32([[0, 0], [width, 0], [width, height], [0, height]])
    inset = width * amount
    dst = np.float32([[inset, height * amount], [width - inset, height * amount], [width, height], [0, height]])
    return cv2.getPerspectiveTransform(src, dst)


def rotation(width: int, height: int, degrees: float) -> np.ndarray:
    """3x3 rotation about the image centre, positive is counter-clockwise."""

    affine = cv2.getRotationMatrix2D((width / 2.0, height / 2.0), degrees, 1.0)
    return np.vstack([affine, [0.0, 0.0, 1.0]])


def rotated_capture(template: Template, degrees: float, padding: int = 300, **kwargs) -> RawCapture:
    """A sheet photographed at an angle, with enough border to keep it whole."""

    width = int(round(template.width * PPU)) + 2 * padding
    height = int(round(template.height * PPU)) + 2 * padding
    warp = rotation(width, height, degrees)
    return capture_of(render_sheet(template, padding=padding, warp=warp, **kwargs))


def capture_of(image: np.ndarray, source: str = "synthetic") -> RawCapture:
    return RawCapture(image, device_resolution=(image.shape[1], image.shape[0]), source=source)


def sheet_capture(template: Template, **kwargs) -> RawCapture:
    return capture_of(render_sheet(template, **kwargs))


def answer_sets(answers: Mapping[int, str]) -> Dict[int, Sequence[str]]:
    """Single-answer mapping in the form render_sheet expects."""

    return {q: (label,) for q, label in answers.items()}
