"""Scoring detected answers against an answer key."""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Union

from .results import (
    DetectionResult,
    IdentifierResult,
    QualityReport,
    QuestionGrade,
    QuestionOutcome,
    Resolution,
    ScoreReport,
)
from .template import AnswerKey

logger = logging.getLogger(__name__)


def _outcome(detection: Optional[DetectionResult], expected: str) -> QuestionOutcome:
    if detection is None or detection.status is Resolution.NONE:
        return QuestionOutcome.BLANK
    if detection.status is Resolution.MULTIPLE:
        return QuestionOutcome.MULTIPLE
    if detection.selected == expected:
        return QuestionOutcome.CORRECT
    return QuestionOutcome.INCORRECT


def grade(
    detections: Sequence[DetectionResult],
    answer_key: Union[AnswerKey, Mapping[int, str]],
    weights: Optional[Mapping[int, float]] = None,
    identifiers: Sequence[IdentifierResult] = (),
    quality: Optional[QualityReport] = None,
    template_name: Optional[str] = None,
) -> ScoreReport:
    """Grade detections against ``answer_key``.

    MULTIPLE and BLANK count as wrong but keep their own outcome so a reviewer
    can tell detector uncertainty from a wrong answer. Questions without a key
    entry are reported as UNKEYED and left out of the score.
    """

    if not isinstance(answer_key, AnswerKey):
        answer_key = AnswerKey(answer_key)
    weights = weights or {}
    by_question: Dict[int, DetectionResult] = {d.question: d for d in detections}
    flagged = set(quality.flagged_questions) if quality else set()

    grades: List[QuestionGrade] = []
    correct = 0
    earned = 0.0
    total_weight = 0.0

    for number in sorted(set(by_question) | set(answer_key.questions())):
        detection = by_question.get(number)
        expected = answer_key.get(number)
        weight = float(weights.get(number, 1.0))

        if expected is None:
            outcome = QuestionOutcome.UNKEYED
        else:
            outcome = _outcome(detection, expected)
            total_weight += weight
            if outcome is QuestionOutcome.CORRECT:
                correct += 1
                earned += weight

        grades.append(
            QuestionGrade(
                question=number,
                outcome=outcome,
                expected=expected,
                detected=detection.selected if detection else None,
                marked=detection.marked if detection else (),
                confidence=detection.confidence if detection else 0.0,
                weight=weight,
                flagged=number in flagged,
            )
        )

    score = earned / total_weight if total_weight > 0 else 0.0
    primary = identifiers[0] if identifiers else None
    logger.debug("Graded %d question(s): %d correct, score %.4f", len(answer_key), correct, score)

    return ScoreReport(
        questions=tuple(grades),
        score=score,
        correct=correct,
        total=len(answer_key),
        earned_weight=earned,
        total_weight=total_weight,
        identifier=primary.value if primary else None,
        identifier_confidence=primary.confidence if primary else None,
        identifiers={ident.name: ident for ident in identifiers},
        flagged_questions=tuple(sorted(flagged)),
        sheet_flags=quality.sheet_flags if quality else (),
        requires_review=quality.requires_review if quality else False,
        quality=quality,
        template_name=template_name,
    )
