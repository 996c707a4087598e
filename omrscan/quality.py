"""Review flags for questions and whole sheets."""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

from .config import DEFAULT_CONFIG, ScanConfig
from .geometry import ImageMetrics
from .results import DetectionResult, IdentifierResult, QualityReport, QuestionFlag, Resolution, SheetFlag

logger = logging.getLogger(__name__)


def question_flags(detection: DetectionResult, config: ScanConfig = DEFAULT_CONFIG) -> Tuple[QuestionFlag, ...]:
    flags: List[QuestionFlag] = []
    low = detection.confidence < config.review_confidence
    if low:
        flags.append(QuestionFlag.LOW_CONFIDENCE)
    if detection.status is Resolution.MULTIPLE:
        flags.append(QuestionFlag.MULTIPLE_MARKS)
    if detection.status is Resolution.NONE and low:
        flags.append(QuestionFlag.BLANK_LOW_MARGIN)
    if detection.ambiguous:
        flags.append(QuestionFlag.STRATEGY_DISAGREEMENT)
    return tuple(flags)


def image_quality(metrics: Optional[ImageMetrics]) -> float:
    """0.6 x sharpness + 0.4 x contrast, each normalized to [0, 1]."""

    if metrics is None:
        return 0.0
    sharpness = min(1.0, math.sqrt(max(metrics.sharpness, 0.0)) / 100.0)
    contrast = min(1.0, metrics.contrast / 60.0)
    return 0.6 * sharpness + 0.4 * contrast


def image_flags(metrics: ImageMetrics, config: ScanConfig = DEFAULT_CONFIG) -> List[SheetFlag]:
    flags = []
    if metrics.brightness < config.low_light_level:
        flags.append(SheetFlag.LOW_LIGHT)
    if metrics.contrast < config.min_contrast:
        flags.append(SheetFlag.LOW_CONTRAST)
    if metrics.sharpness < config.min_sharpness:
        flags.append(SheetFlag.BLURRY)
    if abs(metrics.skew_degrees) > config.max_skew_degrees or metrics.keystone > config.max_keystone:
        flags.append(SheetFlag.SKEWED)
    return flags


def assess(
    detections: Sequence[DetectionResult],
    identifiers: Sequence[IdentifierResult] = (),
    metrics: Optional[ImageMetrics] = None,
    config: ScanConfig = DEFAULT_CONFIG,
    rejected_markers: Sequence[str] = (),
) -> QualityReport:
    """Decide which questions need a second look and whether the sheet does.

    A sheet requires review when any sheet-level flag is raised.
    """

    per_question: Dict[int, Tuple[QuestionFlag, ...]] = {
        d.question: question_flags(d, config) for d in detections
    }
    flagged = [q for q, flags in per_question.items() if flags]

    sheet: List[SheetFlag] = []
    if detections and len(flagged) / float(len(detections)) > config.max_flagged_fraction:
        sheet.append(SheetFlag.TOO_MANY_FLAGGED)
    if any(ident.confidence < config.identifier_review_confidence for ident in identifiers):
        sheet.append(SheetFlag.IDENTIFIER_LOW_CONFIDENCE)
    if metrics is not None:
        sheet.extend(image_flags(metrics, config))
    if rejected_markers:
        sheet.append(SheetFlag.MARKER_REJECTED)

    if flagged or sheet:
        logger.info(
            "Flagged question(s): %s; sheet flag(s): %s",
            ", ".join(str(q) for q in sorted(flagged)) or "none",
            ", ".join(f.value for f in sheet) or "none",
        )

    return QualityReport(
        question_flags=per_question,
        sheet_flags=tuple(sheet),
        requires_review=bool(sheet),
        image_quality=image_quality(metrics),
        metrics=metrics,
    )
