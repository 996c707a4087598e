"""Template describing where fiducials, bubbles and ID boxes sit on a sheet.

Templates are authored once per exam and then only read. Every type here is a
frozen dataclass, so one template can be shared by concurrent scans.
All coordinates are canonical: origin at the top-left corner of the page,
x to the right, y down, in the template's unit (millimetres by default).
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import GeometryDegenerate, RegionOutOfBounds, TemplateError


class QuestionKind(str, Enum):
    MULTIPLE_CHOICE = "mc"
    TRUE_FALSE = "tf"


TRUE_FALSE_LABELS = ("T", "F")
CORNERS = ("top_left", "top_right", "bottom_right", "bottom_left")


def assign_corners(points: Sequence[Tuple[float, float]]) -> Dict[str, int]:
    """Classify points into page corners by their position around the centroid.

    In each quadrant the point farthest from the centroid wins, so interior or
    mid-edge markers never displace a true corner. Returns a mapping of corner
    name to index into ``points``.
    """

    pts = [(float(x), float(y)) for x, y in points]
    cx = sum(x for x, _ in pts) / len(pts)
    cy = sum(y for _, y in pts) / len(pts)
    best: Dict[str, Tuple[float, int]] = {}
    for idx, (x, y) in enumerate(pts):
        dx, dy = x - cx, y - cy
        if dx == 0 or dy == 0:
            continue
        if dy < 0:
            corner = "top_left" if dx < 0 else "top_right"
        else:
            corner = "bottom_left" if dx < 0 else "bottom_right"
        distance = math.hypot(dx, dy)
        if corner not in best or distance > best[corner][0]:
            best[corner] = (distance, idx)

    missing = [c for c in CORNERS if c not in best]
    if missing:
        raise GeometryDegenerate(f"no marker found in the {', '.join(missing)} quadrant(s)")
    return {corner: best[corner][1] for corner in CORNERS}


@dataclass(frozen=True)
class Fiducial:
    """A nested-square reference marker printed at a known position."""

    name: str
    x: float
    y: float
    size: float
    inner_ratio: float = 0.4
    tolerance: float = 6.0

    def corners(self) -> Tuple[Tuple[float, float], ...]:
        """Outer corners ordered top-left, top-right, bottom-right, bottom-left."""

        half = self.size / 2.0
        return (
            (self.x - half, self.y - half),
            (self.x + half, self.y - half),
            (self.x + half, self.y + half),
            (self.x - half, self.y + half),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Fiducial":
        return cls(
            name=str(_require(data, "name", "fiducial")),
            x=float(_require(data, "x", "fiducial")),
            y=float(_require(data, "y", "fiducial")),
            size=float(_require(data, "size", "fiducial")),
            inner_ratio=float(data.get("inner_ratio", 0.4)),
            tolerance=float(data.get("tolerance", 6.0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "x": self.x,
            "y": self.y,
            "size": self.size,
            "inner_ratio": self.inner_ratio,
            "tolerance": self.tolerance,
        }


@dataclass(frozen=True)
class OptionTarget:
    label: str
    x: float
    y: float
    radius: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OptionTarget":
        return cls(
            label=str(_require(data, "label", "option")).upper(),
            x=float(_require(data, "x", "option")),
            y=float(_require(data, "y", "option")),
            radius=float(_require(data, "radius", "option")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "x": self.x, "y": self.y, "radius": self.radius}


@dataclass(frozen=True)
class QuestionRegion:
    number: int
    kind: QuestionKind
    options: Tuple[OptionTarget, ...]
    weight: float = 1.0

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(option.label for option in self.options)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QuestionRegion":
        raw_kind = data.get("type", data.get("kind", QuestionKind.MULTIPLE_CHOICE.value))
        try:
            kind = QuestionKind(raw_kind)
        except ValueError:
            raise TemplateError(f"Unknown question type: {raw_kind!r}") from None

        options = tuple(OptionTarget.from_dict(o) for o in _require(data, "options", "question"))
        return cls(
            number=int(_require(data, "number", "question")),
            kind=kind,
            options=options,
            weight=float(data.get("weight", 1.0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "type": self.kind.value,
            "weight": self.weight,
            "options": [option.to_dict() for option in self.options],
        }


@dataclass(frozen=True)
class DigitBox:
    """One digit position of an identifier, as a box in canonical units."""

    index: int
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DigitBox":
        return cls(
            index=int(_require(data, "index", "digit box")),
            x=float(_require(data, "x", "digit box")),
            y=float(_require(data, "y", "digit box")),
            width=float(_require(data, "width", "digit box")),
            height=float(_require(data, "height", "digit box")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }


@dataclass(frozen=True)
class IdentifierField:
    name: str
    digits: Tuple[DigitBox, ...]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IdentifierField":
        boxes = [DigitBox.from_dict(d) for d in _require(data, "digits", "identifier")]
        boxes.sort(key=lambda box: box.index)
        return cls(name=str(data.get("name", "student_id")), digits=tuple(boxes))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "digits": [box.to_dict() for box in self.digits]}


@dataclass(frozen=True)
class Template:
    name: str
    width: float
    height: float
    fiducials: Tuple[Fiducial, ...]
    questions: Tuple[QuestionRegion, ...]
    identifiers: Tuple[IdentifierField, ...] = ()
    unit: str = "mm"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise TemplateError(f"Page dimensions must be positive, got {self.width}x{self.height}")
        if len(self.fiducials) < 4:
            raise TemplateError(f"A template needs at least 4 fiducials, got {len(self.fiducials)}")

        names = [f.name for f in self.fiducials]
        if len(set(names)) != len(names):
            raise TemplateError("Fiducial names must be unique")
        for fiducial in self.fiducials:
            if fiducial.size <= 0 or not 0 < fiducial.inner_ratio < 1 or fiducial.tolerance <= 0:
                raise TemplateError(f"Fiducial {fiducial.name} has invalid dimensions")
            half = fiducial.size / 2.0
            self._check_bounds(
                f"fiducial {fiducial.name}",
                (fiducial.x - half, fiducial.y - half, fiducial.x + half, fiducial.y + half),
            )
        try:
            assign_corners([(f.x, f.y) for f in self.fiducials])
        except GeometryDegenerate as exc:
            raise TemplateError(f"Fiducials do not mark the page corners: {exc.reason}") from exc

        numbers = [q.number for q in self.questions]
        if len(set(numbers)) != len(numbers):
            raise TemplateError("Question numbers must be unique")
        for question in self.questions:
            if not question.options:
                raise TemplateError(f"Question {question.number} has no options")
            if question.weight < 0:
                raise TemplateError(f"Question {question.number} has a negative weight")
            labels = question.labels
            if len(set(labels)) != len(labels):
                raise TemplateError(f"Question {question.number} repeats an option label")
            if question.kind is QuestionKind.TRUE_FALSE and set(labels) != set(TRUE_FALSE_LABELS):
                raise TemplateError(f"True/false question {question.number} must use options T and F")
            for option in question.options:
                if option.radius <= 0:
                    raise TemplateError(f"Question {question.number} option {option.label} has no radius")
                self._check_bounds(
                    f"question {question.number} option {option.label}",
                    (option.x - option.radius, option.y - option.radius,
                     option.x + option.radius, option.y + option.radius),
                )

        field_names = [f.name for f in self.identifiers]
        if len(set(field_names)) != len(field_names):
            raise TemplateError("Identifier field names must be unique")
        for ident in self.identifiers:
            if not ident.digits:
                raise TemplateError(f"Identifier {ident.name} has no digit boxes")
            for box in ident.digits:
                if box.width <= 0 or box.height <= 0:
                    raise TemplateError(f"Identifier {ident.name} digit {box.index} has no area")
                self._check_bounds(
                    f"identifier {ident.name} digit {box.index}",
                    (box.x, box.y, box.x + box.width, box.y + box.height),
                )

    def _check_bounds(self, region: str, bounds: Tuple[float, float, float, float]) -> None:
        x0, y0, x1, y1 = bounds
        if x0 < 0 or y0 < 0 or x1 > self.width or y1 > self.height:
            raise RegionOutOfBounds(region, bounds, (self.width, self.height))

    def question(self, number: int) -> QuestionRegion:
        for question in self.questions:
            if question.number == number:
                return question
        raise KeyError(number)

    def weights(self) -> Dict[int, float]:
        return {q.number: q.weight for q in self.questions}

    def iter_options(self) -> Iterator[Tuple[QuestionRegion, OptionTarget]]:
        for question in self.questions:
            for option in question.options:
                yield question, option

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Template":
        page = data.get("page") or {}
        try:
            width = float(page.get("width", data.get("width")))
            height = float(page.get("height", data.get("height")))
        except (TypeError, ValueError):
            raise TemplateError("Template is missing page width/height") from None

        try:
            fiducials = tuple(Fiducial.from_dict(f) for f in data.get("fiducials", []))
            questions = tuple(QuestionRegion.from_dict(q) for q in data.get("questions", []))
            identifiers = tuple(IdentifierField.from_dict(i) for i in data.get("identifiers", []))
        except TemplateError:
            raise
        except (TypeError, ValueError, AttributeError) as exc:
            raise TemplateError(f"Malformed template: {exc}") from exc

        return cls(
            name=str(data.get("name", "")),
            width=width,
            height=height,
            unit=str(page.get("unit", data.get("unit", "mm"))),
            fiducials=fiducials,
            questions=questions,
            identifiers=identifiers,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "page": {"width": self.width, "height": self.height, "unit": self.unit},
            "fiducials": [f.to_dict() for f in self.fiducials],
            "questions": [q.to_dict() for q in self.questions],
            "identifiers": [i.to_dict() for i in self.identifiers],
        }

    @classmethod
    def from_json(cls, text: str) -> "Template":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise TemplateError(f"Template is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise TemplateError("Template JSON must be an object")
        return cls.from_dict(data)

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Template":
        return cls.from_json(Path(path).read_text(encoding="utf-8"))


@dataclass(frozen=True)
class AnswerKey:
    """Correct option label per question number."""

    answers: Mapping[int, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        normalized: Dict[int, str] = {}
        for question, label in dict(self.answers).items():
            try:
                number = int(question)
            except (TypeError, ValueError):
                raise TemplateError(f"Answer key question {question!r} is not a number") from None
            normalized[number] = normalize_label(label)
        object.__setattr__(self, "answers", normalized)

    def __contains__(self, question: object) -> bool:
        return question in self.answers

    def __len__(self) -> int:
        return len(self.answers)

    def get(self, question: int) -> Optional[str]:
        return self.answers.get(question)

    def questions(self) -> List[int]:
        return sorted(self.answers)

    @classmethod
    def from_dict(cls, data: Mapping[Any, Any]) -> "AnswerKey":
        return cls(answers=dict(data))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "AnswerKey":
        with Path(path).open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise TemplateError("Answer key JSON must be an object")
        return cls.from_dict(data.get("answers", data))

    def to_dict(self) -> Dict[str, str]:
        return {str(q): label for q, label in sorted(self.answers.items())}


def normalize_label(label: Any) -> str:
    """Upper-case an option label, mapping true/false spellings to T/F."""

    if isinstance(label, bool):
        return "T" if label else "F"
    text = str(label).strip().upper()
    if text in ("TRUE", "T"):
        return "T"
    if text in ("FALSE", "F"):
        return "F"
    if not text:
        raise TemplateError("Empty option label in answer key")
    return text


def _require(data: Mapping[str, Any], key: str, what: str) -> Any:
    if key not in data:
        raise TemplateError(f"{what.capitalize()} is missing {key!r}")
    return data[key]
