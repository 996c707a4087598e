"""Template model, answer key and standard layout."""

from __future__ import annotations

import json

import pytest

from omrscan.errors import RegionOutOfBounds, TemplateError
from omrscan.layout import (
    ID_CELL_HEIGHT,
    ID_CELL_ROW_EXTRA_GAP,
    ID_CELL_SPACING,
    ID_CELL_WIDTH,
    MARKER_SIZE,
    build_template,
    option_offsets,
)
from omrscan.template import AnswerKey, QuestionKind, Template


def template_dict(**changes):
    data = {
        "name": "small",
        "page": {"width": 100, "height": 150, "unit": "mm"},
        "fiducials": [
            {"name": "tl", "x": 10, "y": 10, "size": 10},
            {"name": "tr", "x": 90, "y": 10, "size": 10},
            {"name": "br", "x": 90, "y": 140, "size": 10},
            {"name": "bl", "x": 10, "y": 140, "size": 10},
        ],
        "questions": [
            {
                "number": 1,
                "type": "mc",
                "options": [
                    {"label": "a", "x": 40, "y": 40, "radius": 3},
                    {"label": "b", "x": 50, "y": 40, "radius": 3},
                ],
            },
            {
                "number": 2,
                "type": "tf",
                "weight": 2,
                "options": [
                    {"label": "T", "x": 40, "y": 50, "radius": 3},
                    {"label": "F", "x": 50, "y": 50, "radius": 3},
                ],
            },
        ],
        "identifiers": [
            {"name": "student_id", "digits": [
                {"index": 1, "x": 30, "y": 20, "width": 7, "height": 10},
                {"index": 0, "x": 20, "y": 20, "width": 7, "height": 10},
            ]},
        ],
    }
    data.update(changes)
    return data


def test_template_from_dict():
    template = Template.from_dict(template_dict())

    assert template.width == 100 and template.height == 150
    assert [f.name for f in template.fiducials] == ["tl", "tr", "br", "bl"]
    assert template.question(1).labels == ("A", "B")
    assert template.question(2).kind is QuestionKind.TRUE_FALSE
    assert template.weights() == {1: 1.0, 2: 2.0}
    assert [box.index for box in template.identifiers[0].digits] == [0, 1]


def test_template_json_round_trip(tmp_path):
    template = Template.from_dict(template_dict())
    path = tmp_path / "template.json"
    path.write_text(template.to_json(), encoding="utf-8")

    assert Template.load(path) == template


def test_fiducial_corners_are_ordered():
    template = Template.from_dict(template_dict())
    corners = template.fiducials[0].corners()

    assert corners == ((5.0, 5.0), (15.0, 5.0), (15.0, 15.0), (5.0, 15.0))


@pytest.mark.parametrize(
    "changes",
    [
        {"questions": [{"number": 1, "type": "essay", "options": []}]},
        {"questions": [{"number": 1, "options": [{"label": "A", "x": 40, "y": 40}]}]},
        {"fiducials": template_dict()["fiducials"][:3]},
        {"page": {"width": 0, "height": 150}},
        {"page": {}},
    ],
)
def test_malformed_templates_are_rejected(changes):
    with pytest.raises(TemplateError):
        Template.from_dict(template_dict(**changes))


def test_duplicate_question_numbers_rejected():
    data = template_dict()
    data["questions"].append(dict(data["questions"][0]))

    with pytest.raises(TemplateError, match="unique"):
        Template.from_dict(data)


def test_duplicate_option_labels_rejected():
    data = template_dict()
    data["questions"][0]["options"][1]["label"] = "A"

    with pytest.raises(TemplateError, match="repeats"):
        Template.from_dict(data)


def test_true_false_requires_t_and_f():
    data = template_dict()
    data["questions"][1]["options"][1]["label"] = "X"

    with pytest.raises(TemplateError, match="T and F"):
        Template.from_dict(data)


def test_region_outside_page_is_out_of_bounds():
    data = template_dict()
    data["questions"][0]["options"][1]["x"] = 99

    with pytest.raises(RegionOutOfBounds) as excinfo:
        Template.from_dict(data)

    assert isinstance(excinfo.value, TemplateError)
    assert excinfo.value.region == "question 1 option B"
    assert excinfo.value.to_dict()["code"] == "region_out_of_bounds"


def test_fiducials_must_cover_every_corner():
    markers = [(20, 20), (60, 20), (20, 60), (190, 20), (190, 280)]
    data = template_dict(
        page={"width": 210, "height": 297},
        fiducials=[{"name": f"m{i}", "x": x, "y": y, "size": 10} for i, (x, y) in enumerate(markers)],
    )

    with pytest.raises(TemplateError, match="bottom_left"):
        Template.from_dict(data)


def test_invalid_json_is_a_template_error():
    with pytest.raises(TemplateError):
        Template.from_json("{not json")
    with pytest.raises(TemplateError):
        Template.from_json("[1, 2]")


def test_answer_key_normalizes_labels():
    key = AnswerKey.from_dict({"1": "a", "2": "true", "3": False, 4: "D"})

    assert key.answers == {1: "A", 2: "T", 3: "F", 4: "D"}
    assert 2 in key and 7 not in key
    assert key.questions() == [1, 2, 3, 4]
    assert key.to_dict() == {"1": "A", "2": "T", "3": "F", "4": "D"}


def test_answer_key_load_accepts_wrapped_object(tmp_path):
    path = tmp_path / "key.json"
    path.write_text(json.dumps({"answers": {"1": "B", "2": "f"}}), encoding="utf-8")

    assert AnswerKey.load(path).answers == {1: "B", 2: "F"}


def test_answer_key_rejects_bad_entries():
    with pytest.raises(TemplateError):
        AnswerKey({"one": "A"})
    with pytest.raises(TemplateError):
        AnswerKey({1: "  "})


def test_option_offsets():
    assert option_offsets(4) == [-12.0, -4.0, 4.0, 12.0]
    assert option_offsets(3) == [-8.0, 0.0, 8.0]
    assert option_offsets(2) == [-4.0, 4.0]


def test_build_template_places_markers_and_questions():
    template = build_template([{"type": "mc", "count": 3}, {"type": "tf", "count": 2}], name="mixed")

    centers = {f.name: (f.x, f.y) for f in template.fiducials}
    assert centers == {
        "top_left": (11.0, 11.0),
        "top_right": (199.0, 11.0),
        "bottom_right": (199.0, 286.0),
        "bottom_left": (11.0, 286.0),
    }
    assert all(f.size == MARKER_SIZE for f in template.fiducials)

    assert [q.number for q in template.questions] == [1, 2, 3, 4, 5]
    first = template.question(1)
    xs = [o.x for o in first.options]
    assert first.labels == ("A", "B", "C", "D")
    assert [round(b - a, 6) for a, b in zip(xs, xs[1:])] == [8.0, 8.0, 8.0]
    assert template.question(4).kind is QuestionKind.TRUE_FALSE
    assert template.question(4).labels == ("T", "F")
    assert template.question(2).options[0].y - first.options[0].y == pytest.approx(8.0)


def test_build_template_identifier_cells_wrap_rows():
    template = build_template([{"type": "mc", "count": 1}], id_digits=12)
    boxes = template.identifiers[0].digits

    assert len(boxes) == 12
    assert boxes[1].x - boxes[0].x == pytest.approx(ID_CELL_WIDTH + ID_CELL_SPACING)
    assert (boxes[0].width, boxes[0].height) == (ID_CELL_WIDTH, ID_CELL_HEIGHT)
    assert boxes[10].x == boxes[0].x
    assert boxes[10].y - boxes[0].y == pytest.approx(ID_CELL_HEIGHT + ID_CELL_SPACING + ID_CELL_ROW_EXTRA_GAP)
    # questions start below the identifier block
    assert template.questions[0].options[0].y > boxes[-1].y + ID_CELL_HEIGHT


def test_build_template_extra_markers():
    template = build_template([{"type": "mc", "count": 1}], extra_markers=True)

    assert len(template.fiducials) == 6
    assert {"middle_left", "middle_right"} <= {f.name for f in template.fiducials}


def test_build_template_rejects_overflow():
    with pytest.raises(TemplateError, match="do not fit"):
        build_template([{"type": "mc", "count": 500}])


def test_build_template_rejects_bad_option_count():
    with pytest.raises(TemplateError):
        build_template([{"type": "mc", "count": 2, "options": 6}])
