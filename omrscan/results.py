"""Result types produced by a scan and handed to the calling layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .geometry import ImageMetrics


class Resolution(str, Enum):
    SINGLE = "single"
    NONE = "none"
    MULTIPLE = "multiple"


class QuestionFlag(str, Enum):
    LOW_CONFIDENCE = "low_confidence"
    MULTIPLE_MARKS = "multiple_marks"
    BLANK_LOW_MARGIN = "blank_low_margin"
    STRATEGY_DISAGREEMENT = "strategy_disagreement"


class SheetFlag(str, Enum):
    TOO_MANY_FLAGGED = "too_many_flagged"
    IDENTIFIER_LOW_CONFIDENCE = "identifier_low_confidence"
    LOW_LIGHT = "low_light"
    LOW_CONTRAST = "low_contrast"
    BLURRY = "blurry"
    SKEWED = "skewed"
    MARKER_REJECTED = "marker_rejected"


class QuestionOutcome(str, Enum):
    CORRECT = "correct"
    INCORRECT = "incorrect"
    MULTIPLE = "multiple"
    BLANK = "blank"
    UNKEYED = "unkeyed"


@dataclass(frozen=True)
class BubbleResult:
    """Classification of one answer option."""

    label: str
    filled: bool
    confidence: float
    fill_ratio: float
    strategy: str
    outline_found: bool = True
    ambiguous: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "filled": self.filled,
            "confidence": round(self.confidence, 4),
            "fill_ratio": round(self.fill_ratio, 4),
            "strategy": self.strategy,
            "outline_found": self.outline_found,
            "ambiguous": self.ambiguous,
        }


@dataclass(frozen=True)
class DetectionResult:
    """Resolved answer for one question.

    ``marked`` always lists every filled label, so a MULTIPLE resolution keeps
    all of them. ``margin`` is the smallest distance of any option's fill
    ratio from the fill threshold.
    """

    question: int
    status: Resolution
    selected: Optional[str]
    marked: Tuple[str, ...]
    confidence: float
    margin: float
    options: Tuple[BubbleResult, ...] = ()
    ambiguous: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "status": self.status.value,
            "selected": self.selected,
            "marked": list(self.marked),
            "confidence": round(self.confidence, 4),
            "margin": round(self.margin, 4),
            "ambiguous": self.ambiguous,
            "options": [o.to_dict() for o in self.options],
        }


@dataclass(frozen=True)
class DigitResult:
    index: int
    digit: Optional[int]
    confidence: float
    strategy: Optional[str] = None

    @property
    def readable(self) -> bool:
        return self.digit is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "digit": self.digit,
            "confidence": round(self.confidence, 4),
            "strategy": self.strategy,
        }


@dataclass(frozen=True)
class IdentifierResult:
    """A recognized multi-digit identifier; unreadable positions show as '?'."""

    name: str
    value: str
    confidence: float
    digits: Tuple[DigitResult, ...] = ()

    @property
    def complete(self) -> bool:
        return all(d.readable for d in self.digits)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "confidence": round(self.confidence, 4),
            "complete": self.complete,
            "digits": [d.to_dict() for d in self.digits],
        }


@dataclass(frozen=True)
class QualityReport:
    question_flags: Mapping[int, Tuple[QuestionFlag, ...]]
    sheet_flags: Tuple[SheetFlag, ...]
    requires_review: bool
    image_quality: float
    metrics: Optional[ImageMetrics] = None

    @property
    def flagged_questions(self) -> List[int]:
        return sorted(q for q, flags in self.question_flags.items() if flags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_flags": {
                str(q): [f.value for f in flags]
                for q, flags in sorted(self.question_flags.items())
                if flags
            },
            "sheet_flags": [f.value for f in self.sheet_flags],
            "requires_review": self.requires_review,
            "image_quality": round(self.image_quality, 4),
            "metrics": self.metrics.to_dict() if self.metrics else None,
        }


@dataclass(frozen=True)
class QuestionGrade:
    question: int
    outcome: QuestionOutcome
    expected: Optional[str]
    detected: Optional[str]
    marked: Tuple[str, ...] = ()
    confidence: float = 0.0
    weight: float = 1.0
    flagged: bool = False

    @property
    def is_correct(self) -> bool:
        return self.outcome is QuestionOutcome.CORRECT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "outcome": self.outcome.value,
            "expected": self.expected,
            "detected": self.detected,
            "marked": list(self.marked),
            "confidence": round(self.confidence, 4),
            "weight": self.weight,
            "flagged": self.flagged,
        }


@dataclass(frozen=True)
class ScoreReport:
    """Final, JSON-serializable result of grading one sheet."""

    questions: Tuple[QuestionGrade, ...]
    score: float
    correct: int
    total: int
    earned_weight: float
    total_weight: float
    identifier: Optional[str] = None
    identifier_confidence: Optional[float] = None
    identifiers: Mapping[str, IdentifierResult] = field(default_factory=dict)
    flagged_questions: Tuple[int, ...] = ()
    sheet_flags: Tuple[SheetFlag, ...] = ()
    requires_review: bool = False
    quality: Optional[QualityReport] = None
    template_name: Optional[str] = None

    def grade_for(self, question: int) -> QuestionGrade:
        for grade in self.questions:
            if grade.question == question:
                return grade
        raise KeyError(question)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template": self.template_name,
            "identifier": self.identifier,
            "identifier_confidence": (
                round(self.identifier_confidence, 4) if self.identifier_confidence is not None else None
            ),
            "identifiers": {name: ident.to_dict() for name, ident in self.identifiers.items()},
            "score": round(self.score, 4),
            "correct": self.correct,
            "total": self.total,
            "earned_weight": self.earned_weight,
            "total_weight": self.total_weight,
            "flagged_questions": list(self.flagged_questions),
            "sheet_flags": [f.value for f in self.sheet_flags],
            "requires_review": self.requires_review,
            "questions": [q.to_dict() for q in self.questions],
            "quality": self.quality.to_dict() if self.quality else None,
        }
