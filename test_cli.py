"""Command line entry point."""

from __future__ import annotations

import json

import cv2
import numpy as np
import pytest

from omrscan.cli import main, parse_args
from synthetic_sheet import PPU, answer_sets, render_sheet

ANSWERS = answer_sets({1: "A", 2: "B", 3: "C", 4: "A"})


@pytest.fixture
def files(tmp_path, quiz_template):
    template_path = tmp_path / "template.json"
    template_path.write_text(quiz_template.to_json(), encoding="utf-8")
    key_path = tmp_path / "key.json"
    key_path.write_text(json.dumps({"1": "A", "2": "B", "3": "C", "4": "D"}), encoding="utf-8")
    image_path = tmp_path / "sheet.png"
    cv2.imwrite(str(image_path), render_sheet(quiz_template, answers=ANSWERS))
    return template_path, key_path, image_path


def test_parse_args_defaults(tmp_path):
    args = parse_args([str(tmp_path / "a.png"), "--template", "t.json"])

    assert args.answer_key is None
    assert args.workers == 1
    assert not args.visualize


def test_main_scans_and_writes_json(files, tmp_path, capsys):
    template_path, key_path, image_path = files
    output = tmp_path / "out" / "results.json"

    code = main([
        str(image_path),
        "--template", str(template_path),
        "--answer-key", str(key_path),
        "--pixels-per-unit", str(PPU),
        "--output-json", str(output),
    ])

    assert code == 0
    printed = capsys.readouterr().out
    assert "Score: 3/4" in printed
    assert "Flagged questions: none" in printed

    data = json.loads(output.read_text(encoding="utf-8"))
    assert data["template"] == "quiz"
    assert data["parameters"]["pixels_per_unit"] == PPU
    (result,) = data["results"]
    assert result["ok"]
    assert result["report"]["score"] == 0.75
    assert result["report"]["questions"][3]["outcome"] == "incorrect"


def test_failed_image_sets_exit_code(files, tmp_path, capsys):
    template_path, key_path, image_path = files
    blank = tmp_path / "blank.png"
    cv2.imwrite(str(blank), np.full((600, 420, 3), 255, dtype=np.uint8))
    output = tmp_path / "results.json"

    code = main([
        str(image_path),
        str(blank),
        "--template", str(template_path),
        "--answer-key", str(key_path),
        "--pixels-per-unit", str(PPU),
        "--workers", "2",
        "--output-json", str(output),
    ])

    assert code == 1
    results = json.loads(output.read_text(encoding="utf-8"))["results"]
    assert [r["ok"] for r in results] == [True, False]
    assert results[1]["error"]["code"] == "insufficient_markers"
    assert "Failed:" in capsys.readouterr().out


def test_unreadable_image_is_a_capture_error(files, tmp_path):
    template_path, _, _ = files
    broken = tmp_path / "broken.png"
    broken.write_bytes(b"not an image")
    output = tmp_path / "results.json"

    code = main([str(broken), "--template", str(template_path), "--output-json", str(output)])

    assert code == 1
    (result,) = json.loads(output.read_text(encoding="utf-8"))["results"]
    assert result["error"]["code"] == "capture_error"


def test_debug_images_and_overlay(files, tmp_path):
    template_path, key_path, image_path = files
    debug_dir = tmp_path / "debug"

    code = main([
        str(image_path),
        "--template", str(template_path),
        "--answer-key", str(key_path),
        "--pixels-per-unit", str(PPU),
        "--debug-dir", str(debug_dir),
        "--visualize",
    ])

    assert code == 0
    names = {p.name for p in debug_dir.iterdir()}
    assert {"sheet_original.jpg", "sheet_warped.jpg", "sheet_warped_gray.jpg", "sheet_annotated_results.png"} <= names


def test_missing_template_fails_before_scanning(tmp_path):
    assert main([str(tmp_path / "sheet.png"), "--template", str(tmp_path / "missing.json")]) == 1


def test_malformed_answer_key_fails(files, tmp_path):
    template_path, _, image_path = files
    key_path = tmp_path / "bad_key.json"
    key_path.write_text(json.dumps({"one": "A"}), encoding="utf-8")

    assert main([str(image_path), "--template", str(template_path), "--answer-key", str(key_path)]) == 1
