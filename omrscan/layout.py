"""Standard A4 answer-sheet geometry.

Builds the Template for the sheets printed by the exam generator: nested-square
corner markers, seven-segment ID cells at the top and question rows flowing
down three columns.
"""

from __future__ import annotations

import string
from dataclasses import dataclass
from typing import Any, List, Mapping, Sequence, Union

from .errors import TemplateError
from .template import (
    TRUE_FALSE_LABELS,
    DigitBox,
    Fiducial,
    IdentifierField,
    OptionTarget,
    QuestionKind,
    QuestionRegion,
    Template,
)

# Page and drawing parameters (in mm)
PAGE_WIDTH = 210.0
PAGE_HEIGHT = 297.0
MARKER_MARGIN = 5.0  # page edge to marker outer edge
MARKER_SIZE = 12.0
MARKER_INNER_RATIO = 0.4
MARKER_TOLERANCE = 6.0

BUBBLE_SPACING = 8.0
BUBBLE_RADIUS = 3.0
ROW_SPACING = 8.0
NUM_COLUMNS = 3
COLUMN_LEFT = 20.0
COLUMN_RIGHT = 190.0
LABEL_ROOM = 8.0  # space for the printed question number left of the bubbles

ID_CELL_WIDTH = 7.0
ID_CELL_HEIGHT = 10.0
ID_CELL_SPACING = 1.5
ID_CELL_ROW_EXTRA_GAP = 5.0
ID_CELLS_PER_ROW = 10
ID_LEFT = 30.0

CONTENT_TOP = 25.0
CONTENT_BOTTOM = PAGE_HEIGHT - 25.0
SECTION_GAP = 8.0


@dataclass(frozen=True)
class Section:
    """A run of questions of one kind."""

    kind: QuestionKind
    count: int
    options: int = 4

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Section":
        try:
            kind = QuestionKind(data.get("type", data.get("kind", QuestionKind.MULTIPLE_CHOICE.value)))
        except ValueError:
            raise TemplateError(f"Unknown section type: {data.get('type')!r}") from None
        return cls(kind=kind, count=int(data["count"]), options=int(data.get("options", 4)))


def option_offsets(option_count: int, spacing: float = BUBBLE_SPACING) -> List[float]:
    """Horizontal bubble offsets from the row centre."""

    count = min(4, max(2, int(round(option_count))))
    if count == 2:
        factors = [-0.5, 0.5]
    elif count == 3:
        factors = [-1.0, 0.0, 1.0]
    else:
        factors = [-1.5, -0.5, 0.5, 1.5]
    return [f * spacing for f in factors]


def corner_fiducials(extra_markers: bool = False) -> List[Fiducial]:
    half = MARKER_SIZE / 2.0
    near = MARKER_MARGIN + half
    far_x = PAGE_WIDTH - MARKER_MARGIN - half
    far_y = PAGE_HEIGHT - MARKER_MARGIN - half

    def marker(name: str, x: float, y: float) -> Fiducial:
        return Fiducial(name, x, y, MARKER_SIZE, MARKER_INNER_RATIO, MARKER_TOLERANCE)

    markers = [
        marker("top_left", near, near),
        marker("top_right", far_x, near),
        marker("bottom_right", far_x, far_y),
        marker("bottom_left", near, far_y),
    ]
    if extra_markers:
        markers.append(marker("middle_left", near, PAGE_HEIGHT / 2.0))
        markers.append(marker("middle_right", far_x, PAGE_HEIGHT / 2.0))
    return markers


def identifier_field(digits: int, top: float = CONTENT_TOP, name: str = "student_id") -> IdentifierField:
    boxes = []
    row_pitch = ID_CELL_HEIGHT + ID_CELL_SPACING + ID_CELL_ROW_EXTRA_GAP
    for index in range(digits):
        row, col = divmod(index, ID_CELLS_PER_ROW)
        boxes.append(
            DigitBox(
                index=index,
                x=ID_LEFT + col * (ID_CELL_WIDTH + ID_CELL_SPACING),
                y=top + row * row_pitch,
                width=ID_CELL_WIDTH,
                height=ID_CELL_HEIGHT,
            )
        )
    return IdentifierField(name=name, digits=tuple(boxes))


def _labels(section: Section) -> Sequence[str]:
    if section.kind is QuestionKind.TRUE_FALSE:
        return TRUE_FALSE_LABELS
    if not 2 <= section.options <= 4:
        raise TemplateError(f"Multiple-choice questions need 2-4 options, got {section.options}")
    return string.ascii_uppercase[: section.options]


def build_template(
    sections: Sequence[Union[Section, Mapping[str, Any]]],
    id_digits: int = 0,
    *,
    name: str = "answer-sheet",
    extra_markers: bool = False,
) -> Template:
    """Lay out ``sections`` on an A4 sheet and return the matching Template."""

    sections = [s if isinstance(s, Section) else Section.from_dict(s) for s in sections]

    identifiers = ()
    top = CONTENT_TOP
    if id_digits > 0:
        ident = identifier_field(id_digits, top)
        identifiers = (ident,)
        rows = (id_digits + ID_CELLS_PER_ROW - 1) // ID_CELLS_PER_ROW
        top += rows * ID_CELL_HEIGHT + (rows - 1) * (ID_CELL_SPACING + ID_CELL_ROW_EXTRA_GAP) + SECTION_GAP

    column_width = (COLUMN_RIGHT - COLUMN_LEFT) / NUM_COLUMNS
    rows_per_column = int((CONTENT_BOTTOM - top) // ROW_SPACING) + 1
    capacity = rows_per_column * NUM_COLUMNS
    total = sum(s.count for s in sections)
    if total > capacity:
        raise TemplateError(f"{total} questions do not fit on one sheet (at most {capacity})")

    questions: List[QuestionRegion] = []
    slot = 0
    for section in sections:
        labels = _labels(section)
        offsets = option_offsets(len(labels))
        for _ in range(section.count):
            column, row = divmod(slot, rows_per_column)
            center_x = COLUMN_LEFT + (column + 0.5) * column_width + LABEL_ROOM / 2.0
            y = top + BUBBLE_RADIUS + row * ROW_SPACING
            options = tuple(
                OptionTarget(label, center_x + dx, y, BUBBLE_RADIUS) for label, dx in zip(labels, offsets)
            )
            questions.append(QuestionRegion(number=slot + 1, kind=section.kind, options=options))
            slot += 1

    return Template(
        name=name,
        width=PAGE_WIDTH,
        height=PAGE_HEIGHT,
        fiducials=tuple(corner_fiducials(extra_markers)),
        questions=tuple(questions),
        identifiers=identifiers,
    )
