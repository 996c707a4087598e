"""Command line for scanning photographed answer sheets."""

from __future__ import annotations

import argparse
import json
import logging
from concurrent import futures
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .capture import RawCapture
from .config import ScanConfig
from .debug import save_debug_images, visualize_results
from .errors import OMRError
from .pipeline import ScanPipeline
from .template import AnswerKey, Template

logger = logging.getLogger("omrscan")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="omrscan", description="Process photographed OMR sheets")
    parser.add_argument("images", type=Path, nargs="+", help="Captured answer sheet image(s)")
    parser.add_argument("--template", type=Path, required=True, help="Template JSON describing the sheet")
    parser.add_argument(
        "--answer-key",
        type=Path,
        default=None,
        help="Answer key JSON (question number -> option); omit to only read answers",
    )
    parser.add_argument(
        "--output-json",
        type=Path,
        default=None,
        help="Optional path to save the extracted data as JSON",
    )
    parser.add_argument(
        "--debug-dir",
        type=Path,
        default=None,
        help="Directory to store intermediate debug images",
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Save an annotated image with detected selections (needs --debug-dir)",
    )
    parser.add_argument(
        "--pixels-per-unit",
        type=float,
        default=None,
        help="Resolution of the rectified sheet, in pixels per template unit",
    )
    parser.add_argument(
        "--fill-threshold",
        type=float,
        default=None,
        help="Fill ratio threshold for considering a bubble marked",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Per-image time budget in seconds")
    parser.add_argument("--workers", type=int, default=1, help="Number of images scanned in parallel")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log every processing step")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ScanConfig:
    overrides = {}
    if args.pixels_per_unit is not None:
        overrides["pixels_per_unit"] = args.pixels_per_unit
    if args.fill_threshold is not None:
        overrides["fill_threshold"] = args.fill_threshold
    if args.timeout is not None:
        overrides["timeout_seconds"] = args.timeout
    return ScanConfig().with_overrides(**overrides)


def process_sheet(
    args: argparse.Namespace,
    image: Path,
    template: Template,
    answer_key: Optional[AnswerKey],
    pipeline: ScanPipeline,
) -> Dict[str, object]:
    """Scan one image; failures are reported in the summary instead of raised."""

    summary: Dict[str, object] = {"image": str(image)}
    try:
        capture = RawCapture.from_file(image)
        detection = pipeline.detect(capture, template)
        report = pipeline.grade(detection, template, answer_key)
    except OMRError as exc:
        logger.error("%s: %s", image, exc)
        summary.update({"ok": False, "error": exc.to_dict()})
        return summary

    if args.debug_dir:
        prefix = f"{image.stem}_"
        save_debug_images(args.debug_dir, capture.bgr(), detection.normalized, prefix)
        if args.visualize:
            visualize_results(detection.normalized, template, report, args.debug_dir, prefix)

    summary.update({"ok": True, "report": report.to_dict()})
    return summary


def print_summary(summary: Dict[str, object]) -> None:
    print("Image:", summary["image"])
    if not summary["ok"]:
        print("  Failed:", summary["error"]["message"])
        return

    report = summary["report"]
    if report["identifier"] is not None:
        print(f"  Identifier: {report['identifier']} (confidence {report['identifier_confidence']:.2f})")
    print(f"  Score: {report['correct']}/{report['total']} ({report['score']:.2%})")
    print("  Flagged questions:", ", ".join(str(q) for q in report["flagged_questions"]) or "none")
    if report["sheet_flags"]:
        print("  Sheet flags:", ", ".join(report["sheet_flags"]))

    questions = report["questions"]
    for data in questions[:10]:
        print(
            f"  Q{data['question']:02d}: outcome={data['outcome']}, marked={','.join(data['marked']) or '-'}, "
            f"confidence={data['confidence']:.2f}"
        )
    if len(questions) > 10:
        print("  ... (truncated)")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        template = Template.load(args.template)
        answer_key = AnswerKey.load(args.answer_key) if args.answer_key else None
        config = build_config(args)
    except (OSError, ValueError) as exc:
        logger.error("Cannot start scan: %s", exc)
        return 1

    pipeline = ScanPipeline(config)
    if args.workers > 1 and len(args.images) > 1:
        with futures.ThreadPoolExecutor(max_workers=args.workers) as pool:
            summaries: List[Dict[str, object]] = list(
                pool.map(lambda image: process_sheet(args, image, template, answer_key, pipeline), args.images)
            )
    else:
        summaries = [process_sheet(args, image, template, answer_key, pipeline) for image in args.images]

    for summary in summaries:
        print_summary(summary)

    if args.output_json:
        args.output_json.parent.mkdir(parents=True, exist_ok=True)
        output = {
            "template": template.name,
            "parameters": {
                "pixels_per_unit": config.pixels_per_unit,
                "fill_threshold": config.fill_threshold,
                "timeout_seconds": config.timeout_seconds,
            },
            "results": summaries,
        }
        with args.output_json.open("w", encoding="utf-8") as f:
            json.dump(output, f, indent=2)

    return 0 if all(s["ok"] for s in summaries) else 1
