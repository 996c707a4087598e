"""End-to-end scans of rendered sheets."""

from __future__ import annotations

import time

import cv2
import numpy as np
import pytest

import omrscan.pipeline
from omrscan.errors import InsufficientMarkers, ScanError, TimedOut
from omrscan.marks import FillRatioStrategy, MarkStrategy, MarkStrategyChain
from omrscan.pipeline import Deadline, ScanJob, ScanPipeline, SheetDetection, scan_batch
from omrscan.results import QuestionOutcome, Resolution, SheetFlag
from omrscan.template import AnswerKey, Template
from synthetic_sheet import answer_sets, capture_of, rotated_capture, sheet_capture

KEY = AnswerKey({1: "A", 2: "B", 3: "C", 4: "D"})
ANSWERS = answer_sets({1: "A", 2: "B", 3: "C", 4: "A"})


def test_scan_grades_a_clean_sheet(quiz_template, config):
    report = ScanPipeline(config).scan(sheet_capture(quiz_template, answers=ANSWERS), quiz_template, KEY)

    assert report.score == pytest.approx(0.75)
    assert report.correct == 3 and report.total == 4
    assert report.grade_for(4).outcome is QuestionOutcome.INCORRECT
    assert report.grade_for(4).detected == "A"
    assert report.flagged_questions == ()
    assert report.sheet_flags == ()
    assert not report.requires_review
    assert report.template_name == "quiz"
    assert report.quality.image_quality > 0.5


def test_two_marks_are_multiple_and_flagged(quiz_template, config):
    answers = dict(ANSWERS)
    answers[2] = ("B", "C")

    report = ScanPipeline(config).scan(sheet_capture(quiz_template, answers=answers), quiz_template, KEY)

    grade = report.grade_for(2)
    assert grade.outcome is QuestionOutcome.MULTIPLE
    assert grade.marked == ("B", "C")
    assert grade.detected is None
    assert report.flagged_questions == (2,)
    assert report.score == pytest.approx(0.5)


def test_blank_question_is_blank(quiz_template, config):
    answers = {1: ("A",), 2: ("B",), 3: ("C",)}

    report = ScanPipeline(config).scan(sheet_capture(quiz_template, answers=answers), quiz_template, KEY)

    assert report.grade_for(4).outcome is QuestionOutcome.BLANK
    assert report.flagged_questions == ()


def test_tilted_sheet_is_graded(quiz_template, config):
    report = ScanPipeline(config).scan(rotated_capture(quiz_template, 10.0, answers=ANSWERS), quiz_template, KEY)

    assert report.score == pytest.approx(0.75)
    assert report.flagged_questions == ()
    assert SheetFlag.SKEWED not in report.sheet_flags


def test_steep_tilt_is_graded_but_flagged_skewed(quiz_template, config):
    report = ScanPipeline(config).scan(rotated_capture(quiz_template, -25.0, answers=ANSWERS), quiz_template, KEY)

    assert report.score == pytest.approx(0.75)
    assert SheetFlag.SKEWED in report.sheet_flags
    assert report.requires_review
    assert report.quality.metrics.skew_degrees == pytest.approx(25.0, abs=1.0)


def test_bubble_at_the_page_edge_is_read(quiz_template, config):
    data = quiz_template.to_dict()
    data["questions"].append({
        "number": 5,
        "type": "tf",
        "options": [
            {"label": "T", "x": 100.0, "y": 4.0, "radius": 3.0},
            {"label": "F", "x": 110.0, "y": 4.0, "radius": 3.0},
        ],
    })
    template = Template.from_dict(data)
    answers = dict(ANSWERS)
    answers[5] = ("T",)

    report = ScanPipeline(config).scan(sheet_capture(template, answers=answers), template, AnswerKey({5: "T"}))

    assert report.grade_for(5).outcome is QuestionOutcome.CORRECT
    assert report.flagged_questions == ()


def test_scans_are_deterministic(quiz_template, config):
    capture = sheet_capture(quiz_template, answers=ANSWERS, noise=4.0)
    pipeline = ScanPipeline(config)

    first = pipeline.scan(capture, quiz_template, KEY).to_dict()
    second = pipeline.scan(capture, quiz_template, KEY).to_dict()

    assert first == second


def test_region_workers_do_not_change_results(id_template, config):
    capture = sheet_capture(id_template, answers=ANSWERS, digits={"student_id": [5, 0, 9, 2]})

    serial = ScanPipeline(config).scan(capture, id_template, KEY).to_dict()
    parallel = ScanPipeline(config.with_overrides(region_workers=4)).scan(capture, id_template, KEY).to_dict()

    assert serial == parallel


def test_identifier_is_read(id_template, config):
    capture = sheet_capture(id_template, answers=ANSWERS, digits={"student_id": [3, 1, 4, 1]})

    report = ScanPipeline(config).scan(capture, id_template, KEY)

    assert report.identifier == "3141"
    assert report.identifier_confidence >= 0.5
    assert report.identifiers["student_id"].complete
    assert SheetFlag.IDENTIFIER_LOW_CONFIDENCE not in report.sheet_flags


def test_blank_identifier_digit(id_template, config):
    capture = sheet_capture(id_template, answers=ANSWERS, digits={"student_id": [1, 2, None, 4]})

    report = ScanPipeline(config).scan(capture, id_template, KEY)

    assert report.identifier == "12?4"
    assert report.identifier_confidence == 0.0
    ident = report.identifiers["student_id"]
    assert ident.confidence == min(d.confidence for d in ident.digits)
    assert SheetFlag.IDENTIFIER_LOW_CONFIDENCE in report.sheet_flags
    assert report.requires_review


def test_true_false_questions(id_template, config):
    answers = dict(ANSWERS)
    answers.update({5: ("T",), 6: ("F",)})
    key = AnswerKey({5: "true", 6: "T"})

    report = ScanPipeline(config).scan(sheet_capture(id_template, answers=answers), id_template, key)

    assert report.grade_for(5).outcome is QuestionOutcome.CORRECT
    assert report.grade_for(6).outcome is QuestionOutcome.INCORRECT
    assert report.grade_for(6).detected == "F"
    assert report.grade_for(1).outcome is QuestionOutcome.UNKEYED
    assert report.score == pytest.approx(0.5)


def test_scan_without_key_reports_unkeyed(quiz_template, config):
    report = ScanPipeline(config).scan(sheet_capture(quiz_template, answers=ANSWERS), quiz_template)

    assert report.total == 0
    assert report.score == 0.0
    assert {g.outcome for g in report.questions} == {QuestionOutcome.UNKEYED}
    assert [g.detected for g in report.questions] == ["A", "B", "C", "A"]


def test_detect_returns_answers_without_grading(quiz_template, config):
    detection = ScanPipeline(config).detect(sheet_capture(quiz_template, answers=ANSWERS), quiz_template)

    assert isinstance(detection, SheetDetection)
    assert [d.selected for d in detection.detections] == ["A", "B", "C", "A"]
    assert all(d.status is Resolution.SINGLE for d in detection.detections)
    assert detection.identifiers == ()

    report = ScanPipeline.grade(detection, quiz_template, KEY)
    assert report.score == pytest.approx(0.75)


def test_geometry_failure_stops_before_sampling(quiz_template, config, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("sampling must not run")

    monkeypatch.setattr(omrscan.pipeline, "sample", fail)
    blank = np.full((1485, 1050, 3), 255, dtype=np.uint8)

    with pytest.raises(InsufficientMarkers):
        ScanPipeline(config).scan(capture_of(blank), quiz_template, KEY)


def test_rejected_marker_requires_review(six_marker_template, config):
    capture = sheet_capture(six_marker_template, answers=ANSWERS, marker_offsets={"bottom_right": (-9.0, 0.0)})

    report = ScanPipeline(config).scan(capture, six_marker_template, KEY)

    assert SheetFlag.MARKER_REJECTED in report.sheet_flags
    assert report.requires_review
    assert report.score == pytest.approx(0.75)


class SlowStrategy(MarkStrategy):
    name = "slow"

    def classify(self, sample, config):
        time.sleep(0.2)
        return FillRatioStrategy().classify(sample, config)


def test_slow_scan_times_out(quiz_template, config):
    pipeline = ScanPipeline(config.with_overrides(timeout_seconds=1.0), MarkStrategyChain([SlowStrategy()]))

    started = time.monotonic()
    with pytest.raises(TimedOut) as excinfo:
        pipeline.scan(sheet_capture(quiz_template, answers=ANSWERS), quiz_template, KEY)

    assert time.monotonic() - started < 2.5
    assert excinfo.value.retryable
    assert excinfo.value.budget == 1.0
    assert excinfo.value.to_dict()["code"] == "timed_out"


def test_deadline():
    unlimited = Deadline(None)
    unlimited.check("normalize")
    assert not unlimited.expired()

    expired = Deadline(0.0)
    time.sleep(0.01)
    with pytest.raises(TimedOut) as excinfo:
        expired.check("sample")
    assert excinfo.value.stage == "sample"
    assert expired.stage == "sample"


def test_cancelled_deadline_stops_the_worker():
    deadline = Deadline(60.0)
    deadline.cancel()

    assert deadline.expired()
    with pytest.raises(TimedOut):
        deadline.check("classify")


def test_scan_batch_keeps_order_and_isolates_failures(quiz_template, config):
    blank = capture_of(np.full((1485, 1050, 3), 255, dtype=np.uint8), source="blank.png")
    good = capture_of(sheet_capture(quiz_template, answers=ANSWERS).pixels, source="good.png")
    multi = dict(ANSWERS)
    multi[1] = ("A", "D")
    other = capture_of(sheet_capture(quiz_template, answers=multi).pixels, source="multi.png")

    jobs = [ScanJob(good, quiz_template, KEY), ScanJob(blank, quiz_template, KEY), ScanJob(other, quiz_template, KEY)]
    outcomes = scan_batch(jobs, config, max_workers=3)

    assert [o.index for o in outcomes] == [0, 1, 2]
    assert [o.source for o in outcomes] == ["good.png", "blank.png", "multi.png"]
    assert [o.ok for o in outcomes] == [True, False, True]
    assert outcomes[0].report.score == pytest.approx(0.75)
    assert isinstance(outcomes[1].error, InsufficientMarkers)
    assert outcomes[1].to_dict()["error"]["code"] == "insufficient_markers"
    assert outcomes[2].report.grade_for(1).outcome is QuestionOutcome.MULTIPLE


def test_opencv_failure_is_a_scan_error_for_that_job_only(quiz_template, config, monkeypatch):
    real_normalize = omrscan.pipeline.normalize

    def normalize(capture, template, config):
        if capture.source == "broken.png":
            raise cv2.error("(-215:Assertion failed) !_src.empty()")
        return real_normalize(capture, template, config)

    monkeypatch.setattr(omrscan.pipeline, "normalize", normalize)
    pixels = sheet_capture(quiz_template, answers=ANSWERS).pixels
    jobs = [
        ScanJob(capture_of(pixels, source="broken.png"), quiz_template, KEY),
        ScanJob(capture_of(pixels, source="good.png"), quiz_template, KEY),
    ]

    outcomes = scan_batch(jobs, config, max_workers=2)

    assert [o.ok for o in outcomes] == [False, True]
    assert isinstance(outcomes[0].error, ScanError)
    assert isinstance(outcomes[0].error.__cause__, cv2.error)
    assert outcomes[0].to_dict()["error"]["code"] == "scan_error"
    assert "normalize" in str(outcomes[0].error)
    assert outcomes[1].report.score == pytest.approx(0.75)


def test_scan_batch_of_nothing(config):
    assert scan_batch([], config) == []
