"""Recognition of seven-segment identifier digits.

The standard sheet prints each ID digit position as a 7x10 mm cell with seven
segment bars that students ink in. A cell is read by comparing every segment
against the paper right beside it; glyph correlation is the fallback for cells
whose segments were drawn sloppily.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .config import DEFAULT_CONFIG, ScanConfig
from .results import DigitResult, IdentifierResult
from .sampler import RegionSample
from .template import IdentifierField

logger = logging.getLogger(__name__)

SEGMENTS = "ABCDEFG"
HORIZONTAL = frozenset("ADG")

# Segment boxes as fractions (x, y, w, h) of the digit cell.
#   --A--
#  F     B
#   --D--
#  E     C
#   --G--
SEGMENT_BOXES: Dict[str, Tuple[float, float, float, float]] = {
    "A": (0.23, 0.04, 0.54, 0.08),
    "D": (0.23, 0.46, 0.54, 0.06),
    "G": (0.23, 0.88, 0.54, 0.08),
    "F": (0.06, 0.16, 0.11, 0.26),
    "B": (0.83, 0.16, 0.11, 0.26),
    "E": (0.06, 0.58, 0.11, 0.26),
    "C": (0.83, 0.58, 0.11, 0.26),
}

# Segment patterns in ABCDEFG order.
DIGIT_PATTERNS: Dict[str, int] = {
    "1110111": 0,
    "0110000": 1,
    "1101101": 2,
    "1111001": 3,
    "0111010": 4,
    "1101011": 5,
    "1101111": 6,
    "1110000": 7,
    "1111111": 8,
    "1111011": 9,
}

DIGIT_SEGMENTS: Dict[int, frozenset] = {
    digit: frozenset(s for s, bit in zip(SEGMENTS, bits) if bit == "1")
    for bits, digit in DIGIT_PATTERNS.items()
}


@dataclass(frozen=True)
class DigitCandidate:
    digit: Optional[int]
    confidence: float
    strategy: str


def segment_rect(box: Tuple[int, int, int, int], segment: str) -> Tuple[int, int, int, int]:
    """Pixel rectangle (x, y, w, h) of a segment inside a digit box."""

    bx, by, bw, bh = box
    fx, fy, fw, fh = SEGMENT_BOXES[segment]
    return (
        int(round(bx + fx * bw)),
        int(round(by + fy * bh)),
        max(1, int(round(fw * bw))),
        max(1, int(round(fh * bh))),
    )


def render_glyph(digit: int, size: Tuple[int, int]) -> np.ndarray:
    """Seven-segment glyph of ``digit`` as ink=255 on 0, ``size`` = (width, height)."""

    width, height = size
    glyph = np.zeros((height, width), dtype=np.uint8)
    for segment in DIGIT_SEGMENTS[digit]:
        x, y, w, h = segment_rect((0, 0, width, height), segment)
        cv2.rectangle(glyph, (x, y), (x + w - 1, y + h - 1), 255, -1)
    return glyph


@lru_cache(maxsize=None)
def glyph_set(size: Tuple[int, int]) -> Tuple[Tuple[int, np.ndarray], ...]:
    """Float glyphs of every digit at ``size``, built once and never modified."""

    glyphs = []
    for digit in sorted(DIGIT_SEGMENTS):
        glyph = render_glyph(digit, size).astype(np.float32)
        glyph.flags.writeable = False
        glyphs.append((digit, glyph))
    return tuple(glyphs)


def preprocess(gray: np.ndarray) -> np.ndarray:
    """Stretch, equalize and denoise a digit box."""

    stretched = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX)
    clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
    equalized = clahe.apply(stretched)
    return cv2.bilateralFilter(equalized, 9, 75, 75)


def _background_strips(rect, limits, horizontal: bool) -> List[Tuple[int, int, int, int]]:
    x, y, w, h = rect
    width, height = limits
    strips = []
    if horizontal:
        pad = max(2, int(round(h * 1.8)))
        top = max(0, y - pad)
        if y - top >= 2:
            strips.append((x, top, w, y - top))
        below = min(pad, height - (y + h))
        if below >= 2:
            strips.append((x, y + h, w, below))
    else:
        pad = max(2, int(round(w * 1.8)))
        left = max(0, x - pad)
        if x - left >= 2:
            strips.append((left, y, x - left, h))
        right = min(pad, width - (x + w))
        if right >= 2:
            strips.append((x + w, y, right, h))
    return strips


def segment_contrast(gray: np.ndarray, box: Tuple[int, int, int, int], segment: str) -> float:
    """Background mean minus segment mean; positive when the segment is inked."""

    height, width = gray.shape[:2]
    x, y, w, h = segment_rect(box, segment)
    x = min(max(x, 0), width - 1)
    y = min(max(y, 0), height - 1)
    w = min(w, width - x)
    h = min(h, height - y)
    if w < 1 or h < 1:
        return 0.0

    seg_mean = float(gray[y:y + h, x:x + w].mean())
    strips = _background_strips((x, y, w, h), (width, height), segment in HORIZONTAL)
    if not strips:
        return 0.0
    bg_mean = float(np.mean([gray[sy:sy + sh, sx:sx + sw].mean() for sx, sy, sw, sh in strips]))
    return bg_mean - seg_mean


class DigitStrategy:
    name = "digit"

    def classify(self, gray: np.ndarray, box: Tuple[int, int, int, int], config: ScanConfig) -> DigitCandidate:
        raise NotImplementedError


class SegmentStrategy(DigitStrategy):
    """Scores each digit by how its expected-on segments stand out from the rest."""

    name = "segment"

    def classify(self, gray: np.ndarray, box: Tuple[int, int, int, int], config: ScanConfig) -> DigitCandidate:
        contrasts = {s: segment_contrast(gray, box, s) for s in SEGMENTS}
        capped = {s: min(config.segment_contrast_cap, max(0.0, c)) for s, c in contrasts.items()}

        scores = []
        for digit, on in DIGIT_SEGMENTS.items():
            on_values = [capped[s] for s in SEGMENTS if s in on]
            off_values = [capped[s] for s in SEGMENTS if s not in on]
            score = (np.mean(on_values) if on_values else 0.0) - (np.mean(off_values) if off_values else 0.0)
            scores.append((float(score), digit))
        scores.sort(key=lambda item: (-item[0], item[1]))
        best_score, best_digit = scores[0]
        runner_up = scores[1][0]

        strong = sum(
            1 for s in DIGIT_SEGMENTS[best_digit] if contrasts[s] >= config.segment_strong_threshold
        )
        bits = "".join("1" if contrasts[s] >= config.segment_bit_threshold else "0" for s in SEGMENTS)
        logger.debug("Segment bits %s -> %d (score %.1f, strong %d)", bits, best_digit, best_score, strong)

        if best_score < config.segment_min_score or strong < config.segment_strong_min:
            return DigitCandidate(None, 0.0, self.name)

        confidence = float(
            np.clip(best_score / config.segment_score_saturation, 0.0, 1.0)
            * np.clip((best_score - runner_up) / config.segment_margin_saturation, 0.0, 1.0)
        )
        return DigitCandidate(best_digit, confidence, self.name)


class TemplateMatchStrategy(DigitStrategy):
    """Correlates the binarized box with rendered glyphs of every digit."""

    name = "template"

    def classify(self, gray: np.ndarray, box: Tuple[int, int, int, int], config: ScanConfig) -> DigitCandidate:
        bx, by, bw, bh = box
        cell = gray[by:by + bh, bx:bx + bw]
        size = tuple(config.digit_template_size)
        resized = cv2.resize(cell, size, interpolation=cv2.INTER_AREA)

        # Trim the printed cell outline before binarizing.
        mx = max(1, int(round(size[0] * 0.03)))
        my = max(1, int(round(size[1] * 0.03)))
        _, binary = cv2.threshold(resized, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
        binary[:my, :] = 0
        binary[-my:, :] = 0
        binary[:, :mx] = 0
        binary[:, -mx:] = 0

        ink = float((binary > 0).mean())
        if ink < config.template_min_ink:
            return DigitCandidate(None, 0.0, self.name)

        source = binary.astype(np.float32)
        correlations = []
        for digit, glyph in glyph_set(size):
            value = float(cv2.matchTemplate(source, glyph, cv2.TM_CCOEFF_NORMED)[0, 0])
            correlations.append((value, digit))
        correlations.sort(key=lambda item: (-item[0], item[1]))
        best, digit = correlations[0]
        runner_up = correlations[1][0]

        if best < config.template_min_correlation:
            return DigitCandidate(None, 0.0, self.name)

        confidence = ((best + 1.0) / 2.0) * float(
            np.clip((best - runner_up) / config.template_margin_saturation, 0.0, 1.0)
        )
        return DigitCandidate(digit, confidence, self.name)


DEFAULT_STRATEGIES: Tuple[DigitStrategy, ...] = (SegmentStrategy(), TemplateMatchStrategy())


def recognize_digit(
    sample: RegionSample,
    config: ScanConfig = DEFAULT_CONFIG,
    strategies: Sequence[DigitStrategy] = DEFAULT_STRATEGIES,
) -> DigitResult:
    """Read one digit box. Blank or unreadable boxes give ``digit=None``."""

    index = sample.key.index
    raw = sample.pixels
    low, high = np.percentile(raw, (2, 98))
    if high - low < config.digit_min_contrast:
        logger.debug("%s: blank box (range %.1f)", sample.key, high - low)
        return DigitResult(index=index, digit=None, confidence=0.0)

    gray = preprocess(raw)
    box = sample.box or (0, 0, raw.shape[1], raw.shape[0])

    best: Optional[DigitCandidate] = None
    for strategy in strategies:
        candidate = strategy.classify(gray, box, config)
        if candidate.digit is not None and (best is None or candidate.confidence > best.confidence):
            best = candidate
        if best is not None and best.confidence >= config.fallback_confidence:
            break

    if best is None:
        logger.debug("%s: unreadable", sample.key)
        return DigitResult(index=index, digit=None, confidence=0.0)
    return DigitResult(index=index, digit=best.digit, confidence=best.confidence, strategy=best.strategy)


def combine_digits(name: str, digits: Sequence[DigitResult]) -> IdentifierResult:
    """Join digit results into a field. Field confidence is the weakest digit's."""

    ordered = tuple(sorted(digits, key=lambda d: d.index))
    value = "".join(str(d.digit) if d.readable else "?" for d in ordered)
    confidence = min((d.confidence for d in ordered), default=0.0)
    return IdentifierResult(name=name, value=value, confidence=confidence, digits=ordered)


def recognize_identifier(
    field: IdentifierField,
    samples: Sequence[RegionSample],
    config: ScanConfig = DEFAULT_CONFIG,
) -> IdentifierResult:
    by_index = {s.key.index: s for s in samples if s.key.field == field.name}
    missing = [box.index for box in field.digits if box.index not in by_index]
    if missing:
        raise ValueError(f"Identifier {field.name} has no sample for digit(s) {missing}")

    digits = [recognize_digit(by_index[box.index], config) for box in field.digits]
    result = combine_digits(field.name, digits)
    logger.debug("Identifier %s: %s (confidence %.2f)", field.name, result.value, result.confidence)
    return result
