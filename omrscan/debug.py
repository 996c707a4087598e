"""Debug image dumps for the command line."""

from __future__ import annotations

from pathlib import Path
from typing import Union

import cv2
import numpy as np

from .geometry import NormalizedImage
from .results import QuestionOutcome, ScoreReport
from .template import Template

GREEN = (0, 255, 0)
YELLOW = (0, 255, 255)
RED = (0, 0, 255)
ORANGE = (255, 165, 0)
MAGENTA = (255, 0, 255)


def save_debug_images(
    debug_dir: Union[str, Path],
    original: np.ndarray,
    normalized: NormalizedImage,
    prefix: str = "",
) -> None:
    debug_dir = Path(debug_dir)
    debug_dir.mkdir(parents=True, exist_ok=True)
    cv2.imwrite(str(debug_dir / f"{prefix}original.jpg"), original)
    cv2.imwrite(str(debug_dir / f"{prefix}warped.jpg"), normalized.image)
    cv2.imwrite(str(debug_dir / f"{prefix}warped_gray.jpg"), normalized.gray)


def visualize_results(
    normalized: NormalizedImage,
    template: Template,
    report: ScoreReport,
    debug_dir: Union[str, Path],
    prefix: str = "",
) -> Path:
    """Save an annotated overlay showing detected selections."""

    overlay = normalized.image.copy()
    sx = normalized.width / template.width
    sy = normalized.height / template.height
    grades = {g.question: g for g in report.questions}

    for question, option in template.iter_options():
        center = (int(round(option.x * sx)), int(round(option.y * sy)))
        outer_radius = int(max(4, option.radius * sx))
        inner_radius = int(max(2, option.radius * sx * 0.6))

        color = ORANGE  # reference
        filled = False
        grade = grades.get(question.number)
        if grade:
            if grade.outcome is QuestionOutcome.MULTIPLE and option.label in grade.marked:
                color, filled = YELLOW, True
            elif grade.outcome is QuestionOutcome.BLANK:
                color = RED
            elif option.label in grade.marked:
                color, filled = GREEN, True

        cv2.circle(overlay, center, outer_radius, color, 2)
        if filled:
            cv2.circle(overlay, center, inner_radius, color, -1)

    for ident in template.identifiers:
        result = report.identifiers.get(ident.name)
        for position, box in enumerate(ident.digits):
            top_left = (int(box.x * sx), int(box.y * sy))
            bottom_right = (int((box.x + box.width) * sx), int((box.y + box.height) * sy))
            cv2.rectangle(overlay, top_left, bottom_right, MAGENTA, 1)
            if result and position < len(result.value):
                cv2.putText(
                    overlay,
                    result.value[position],
                    (top_left[0], bottom_right[1] + int(4 * sy)),
                    cv2.FONT_HERSHEY_SIMPLEX,
                    0.05 * sy,
                    MAGENTA,
                    2,
                )

    debug_dir = Path(debug_dir)
    debug_dir.mkdir(parents=True, exist_ok=True)
    path = debug_dir / f"{prefix}annotated_results.png"
    cv2.imwrite(str(path), overlay)
    return path
