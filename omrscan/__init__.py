"""Recognition and grading of photographed answer sheets."""

import logging

from .capture import RawCapture
from .config import DEFAULT_CONFIG, ScanConfig
from .digits import recognize_digit, recognize_identifier
from .errors import (
    CaptureError,
    GeometryDegenerate,
    GeometryError,
    InsufficientMarkers,
    OMRError,
    RegionOutOfBounds,
    ScanError,
    TemplateError,
    TimedOut,
)
from .geometry import NormalizedImage, normalize
from .grader import grade
from .layout import build_template
from .marks import classify_bubble, resolve_question
from .pipeline import ScanJob, ScanOutcome, ScanPipeline, SheetDetection, scan_batch
from .quality import assess
from .results import (
    BubbleResult,
    DetectionResult,
    DigitResult,
    IdentifierResult,
    QualityReport,
    QuestionFlag,
    QuestionGrade,
    QuestionOutcome,
    Resolution,
    ScoreReport,
    SheetFlag,
)
from .sampler import RegionSample, sample
from .template import AnswerKey, QuestionKind, Template

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.3.0"

__all__ = [
    "AnswerKey",
    "BubbleResult",
    "CaptureError",
    "DEFAULT_CONFIG",
    "DetectionResult",
    "DigitResult",
    "GeometryDegenerate",
    "GeometryError",
    "IdentifierResult",
    "InsufficientMarkers",
    "NormalizedImage",
    "OMRError",
    "QualityReport",
    "QuestionFlag",
    "QuestionGrade",
    "QuestionKind",
    "QuestionOutcome",
    "RawCapture",
    "RegionOutOfBounds",
    "RegionSample",
    "Resolution",
    "ScanConfig",
    "ScanError",
    "ScanJob",
    "ScanOutcome",
    "ScanPipeline",
    "ScoreReport",
    "SheetDetection",
    "SheetFlag",
    "Template",
    "TemplateError",
    "TimedOut",
    "assess",
    "build_template",
    "classify_bubble",
    "grade",
    "normalize",
    "recognize_digit",
    "recognize_identifier",
    "resolve_question",
    "sample",
    "scan_batch",
]
