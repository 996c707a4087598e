"""Filled/unfilled classification of answer bubbles.

Each bubble runs through an ordered chain of strategies. The fill-ratio
strategy measures the dark interior of the expected circle; the shape strategy
first locates the circle itself and is used when the first result is weak or
the printed outline could not be found where the template puts it.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from .config import DEFAULT_CONFIG, ScanConfig
from .results import BubbleResult, DetectionResult, Resolution
from .sampler import RegionSample
from .template import QuestionRegion

logger = logging.getLogger(__name__)


def fill_confidence(ratio: float, threshold: float, saturation: float) -> float:
    """Confidence of a fill decision, from 0 at the threshold up to 1.

    The distance from the threshold is measured as a fraction of the way to 0
    (below) or 1 (above) and saturates at ``saturation``.
    """

    span = (1.0 - threshold) if ratio >= threshold else threshold
    if span <= 0 or saturation <= 0:
        return 1.0
    return float(np.clip(abs(ratio - threshold) / (span * saturation), 0.0, 1.0))


def _is_uniform(gray: np.ndarray, tolerance: float) -> bool:
    h, w = gray.shape[:2]
    quadrants = (
        gray[: h // 2, : w // 2],
        gray[: h // 2, w // 2:],
        gray[h // 2:, : w // 2],
        gray[h // 2:, w // 2:],
    )
    means = [float(q.mean()) for q in quadrants]
    return max(means) - min(means) < tolerance


def binarize(gray: np.ndarray, config: ScanConfig = DEFAULT_CONFIG, radius: Optional[float] = None) -> np.ndarray:
    """Dark pixels as 255, using Otsu for large evenly lit samples.

    The adaptive block spans the bubble diameter so a filled disc stays solid
    while a lighting gradient across the sample cancels out.
    """

    side = min(gray.shape[:2])
    if side >= config.global_threshold_min_side and _is_uniform(gray, config.uniformity_tolerance):
        _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
    else:
        block = side if side % 2 == 1 else side - 1
        if radius:
            block = min(block, 2 * int(math.ceil(radius)) + 1)
        block = max(3, block)
        binary = cv2.adaptiveThreshold(
            gray, 255, cv2.ADAPTIVE_THRESH_MEAN_C, cv2.THRESH_BINARY_INV, block, config.adaptive_c
        )

    # Thresholding alone turns paper texture into "ink" on a blank sample.
    paper = float(np.percentile(gray, 90))
    ink = (gray.astype(np.float32) < paper - config.min_ink_contrast).astype(np.uint8) * 255
    return cv2.bitwise_and(binary, ink)


def _disc_mask(shape: Tuple[int, int], center: Tuple[float, float], radius: float) -> np.ndarray:
    yy, xx = np.ogrid[: shape[0], : shape[1]]
    return (xx - center[0]) ** 2 + (yy - center[1]) ** 2 <= radius ** 2


def measure_fill(
    binary: np.ndarray, center: Tuple[float, float], radius: float, config: ScanConfig
) -> Tuple[float, bool]:
    """Interior dark ratio after erosion, and whether an outline ring is present."""

    kernel = np.ones((3, 3), np.uint8)
    eroded = cv2.erode(binary, kernel, iterations=config.erode_iterations) if config.erode_iterations else binary

    interior = _disc_mask(binary.shape, center, radius * config.interior_ratio)
    count = int(interior.sum())
    ratio = float((eroded[interior] > 0).sum()) / count if count else 0.0

    inner, outer = config.outline_ring
    ring = _disc_mask(binary.shape, center, radius * outer) & ~_disc_mask(binary.shape, center, radius * inner)
    ring_count = int(ring.sum())
    ring_ratio = float((binary[ring] > 0).sum()) / ring_count if ring_count else 0.0
    return ratio, ring_ratio >= config.outline_min_ratio


class MarkStrategy:
    """Classifies one bubble sample; subclasses implement ``classify``."""

    name = "strategy"

    def classify(self, sample: RegionSample, config: ScanConfig = DEFAULT_CONFIG) -> BubbleResult:
        raise NotImplementedError


class FillRatioStrategy(MarkStrategy):
    name = "fill_ratio"

    def classify(self, sample: RegionSample, config: ScanConfig = DEFAULT_CONFIG) -> BubbleResult:
        binary = binarize(sample.pixels, config, sample.radius)
        ratio, outline = measure_fill(binary, sample.center, sample.radius, config)
        return BubbleResult(
            label=sample.key.label,
            filled=ratio >= config.fill_threshold,
            confidence=fill_confidence(ratio, config.fill_threshold, config.confidence_saturation),
            fill_ratio=ratio,
            strategy=self.name,
            outline_found=outline,
        )


class ShapeStrategy(MarkStrategy):
    """Locates the bubble as a circle near the expected position."""

    name = "shape"

    def _hough(self, gray: np.ndarray, sample: RegionSample, config: ScanConfig) -> Optional[Tuple[float, float]]:
        low, high = config.shape_radius_range
        blurred = cv2.GaussianBlur(gray, (5, 5), 0)
        circles = cv2.HoughCircles(
            blurred,
            cv2.HOUGH_GRADIENT,
            dp=1,
            minDist=max(1.0, sample.radius),
            param1=config.hough_param1,
            param2=config.hough_param2,
            minRadius=max(1, int(sample.radius * low)),
            maxRadius=int(math.ceil(sample.radius * high)),
        )
        if circles is None:
            return None
        return self._nearest([(float(x), float(y)) for x, y, _ in circles[0]], sample)

    def _contours(self, binary: np.ndarray, sample: RegionSample, config: ScanConfig) -> Optional[Tuple[float, float]]:
        low, high = config.shape_radius_range
        contours, _ = cv2.findContours(binary, cv2.RETR_LIST, cv2.CHAIN_APPROX_NONE)
        centers = []
        for contour in contours:
            area = cv2.contourArea(contour)
            perimeter = cv2.arcLength(contour, True)
            if area <= 0 or perimeter <= 0:
                continue
            circularity = 4 * math.pi * area / (perimeter * perimeter)
            radius = math.sqrt(area / math.pi)
            if circularity < config.min_circularity or not low * sample.radius <= radius <= high * sample.radius:
                continue
            m = cv2.moments(contour)
            if m["m00"] == 0:
                continue
            centers.append((m["m10"] / m["m00"], m["m01"] / m["m00"]))
        return self._nearest(centers, sample)

    @staticmethod
    def _nearest(centers, sample: RegionSample) -> Optional[Tuple[float, float]]:
        ex, ey = sample.center
        best, best_dist = None, sample.radius * 0.5
        for x, y in centers:
            dist = math.hypot(x - ex, y - ey)
            if dist <= best_dist:
                best, best_dist = (x, y), dist
        return best

    def classify(self, sample: RegionSample, config: ScanConfig = DEFAULT_CONFIG) -> BubbleResult:
        binary = binarize(sample.pixels, config, sample.radius)
        center = self._hough(sample.pixels, sample, config)
        if center is None:
            center = self._contours(binary, sample, config)
        if center is None:
            return BubbleResult(
                label=sample.key.label,
                filled=False,
                confidence=0.0,
                fill_ratio=0.0,
                strategy=self.name,
                outline_found=False,
            )

        ratio, _ = measure_fill(binary, center, sample.radius, config)
        confidence = fill_confidence(ratio, config.fill_threshold, config.confidence_saturation)
        return BubbleResult(
            label=sample.key.label,
            filled=ratio >= config.fill_threshold,
            confidence=confidence * config.shape_confidence_scale,
            fill_ratio=ratio,
            strategy=self.name,
            outline_found=True,
        )


class MarkStrategyChain:
    """Runs strategies in order until one is confident about an isolated bubble."""

    def __init__(self, strategies: Sequence[MarkStrategy]) -> None:
        if not strategies:
            raise ValueError("A strategy chain needs at least one strategy")
        self.strategies = tuple(strategies)

    def classify(self, sample: RegionSample, config: ScanConfig = DEFAULT_CONFIG) -> BubbleResult:
        results = []
        for strategy in self.strategies:
            result = strategy.classify(sample, config)
            results.append(result)
            if result.confidence >= config.fallback_confidence and result.outline_found:
                break

        best = max(results, key=lambda r: r.confidence)
        if len(results) > 1:
            logger.debug(
                "%s: fallback used (%s), picked %s at %.2f",
                sample.key,
                ", ".join(f"{r.strategy}={r.confidence:.2f}" for r in results),
                best.strategy,
                best.confidence,
            )

        votes = {r.filled for r in results if r.confidence > 0}
        if len(votes) > 1:
            logger.info("%s: strategies disagree on the mark", sample.key)
            best = replace(best, confidence=best.confidence * config.disagreement_penalty, ambiguous=True)
        return best


DEFAULT_CHAIN = MarkStrategyChain((FillRatioStrategy(), ShapeStrategy()))


def classify_bubble(
    sample: RegionSample,
    config: ScanConfig = DEFAULT_CONFIG,
    chain: Optional[MarkStrategyChain] = None,
) -> BubbleResult:
    return (chain or DEFAULT_CHAIN).classify(sample, config)


def resolve_question(
    question: QuestionRegion,
    option_results: Sequence[BubbleResult],
    config: ScanConfig = DEFAULT_CONFIG,
) -> DetectionResult:
    """Combine per-option results into an answer.

    More than one filled option is always MULTIPLE with every filled label
    kept; a single answer is never guessed from several marks.
    """

    by_label = {r.label: r for r in option_results}
    missing = [label for label in question.labels if label not in by_label]
    if missing:
        raise ValueError(f"Question {question.number} has no result for option(s) {', '.join(missing)}")
    results = tuple(by_label[label] for label in question.labels)

    marked = tuple(r.label for r in results if r.filled)
    if len(marked) == 1:
        status, selected = Resolution.SINGLE, marked[0]
    elif marked:
        status, selected = Resolution.MULTIPLE, None
    else:
        status, selected = Resolution.NONE, None

    confidence = min(r.confidence for r in results)
    margin = min(abs(r.fill_ratio - config.fill_threshold) for r in results)
    detection = DetectionResult(
        question=question.number,
        status=status,
        selected=selected,
        marked=marked,
        confidence=confidence,
        margin=margin,
        options=results,
        ambiguous=any(r.ambiguous for r in results),
    )
    logger.debug(
        "Question %d: %s %s (confidence %.2f)",
        question.number,
        status.value,
        ",".join(marked) or "-",
        confidence,
    )
    return detection
