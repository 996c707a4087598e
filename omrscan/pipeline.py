"""End-to-end scan: normalize, sample, classify, assess and grade one sheet."""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent import futures
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar, Union

import cv2

from .capture import RawCapture
from .config import DEFAULT_CONFIG, ScanConfig
from .digits import recognize_identifier
from .errors import OMRError, ScanError, TimedOut
from .geometry import NormalizedImage, normalize
from .grader import grade as grade_detections
from .marks import MarkStrategyChain, classify_bubble, resolve_question
from .quality import assess
from .results import BubbleResult, DetectionResult, IdentifierResult, QualityReport, ScoreReport
from .sampler import DIGIT, OPTION, RegionSample, sample
from .template import AnswerKey, IdentifierField, Template

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class Deadline:
    """Wall-clock budget checked cooperatively between stages and regions."""

    def __init__(self, budget: Optional[float]) -> None:
        self.budget = budget
        self.started = time.monotonic()
        self.stage: Optional[str] = None
        self._cancelled = threading.Event()

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def expired(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self.budget is not None and self.elapsed() > self.budget

    def cancel(self) -> None:
        self._cancelled.set()

    def check(self, stage: str) -> None:
        self.stage = stage
        if self.expired():
            raise TimedOut(self.budget or 0.0, self.elapsed(), stage)


@dataclass(frozen=True, eq=False)
class SheetDetection:
    """Everything read from one sheet, before grading."""

    normalized: NormalizedImage = field(repr=False)
    detections: Sequence[DetectionResult]
    identifiers: Sequence[IdentifierResult]
    quality: QualityReport


def _run_stages(fn: Callable[..., R], *args) -> R:
    """Call ``fn`` with OpenCV failures reported as scan errors of the current stage."""

    deadline: Deadline = args[-1]
    try:
        return fn(*args)
    except cv2.error as exc:
        logger.warning("OpenCV failed during %s: %s", deadline.stage, exc)
        raise ScanError(f"Image processing failed during {deadline.stage}: {exc}") from exc


class ScanPipeline:
    def __init__(self, config: ScanConfig = DEFAULT_CONFIG, mark_chain: Optional[MarkStrategyChain] = None) -> None:
        self.config = config
        self.mark_chain = mark_chain

    def scan(
        self,
        capture: RawCapture,
        template: Template,
        answer_key: Optional[Union[AnswerKey, Mapping[int, str]]] = None,
    ) -> ScoreReport:
        """Scan and grade one capture within ``config.timeout_seconds``."""

        return self._with_timeout(self._scan, capture, template, answer_key)

    def detect(self, capture: RawCapture, template: Template) -> SheetDetection:
        """Read answers and identifiers without grading."""

        return self._with_timeout(self._detect, capture, template)

    def _with_timeout(self, fn: Callable[..., R], *args) -> R:
        budget = self.config.timeout_seconds
        deadline = Deadline(budget)
        if not budget:
            return _run_stages(fn, *args, deadline)

        executor = futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="omrscan-scan")
        future = executor.submit(_run_stages, fn, *args, deadline)
        try:
            return future.result(timeout=budget)
        except futures.TimeoutError:
            deadline.cancel()
            logger.warning("Scan timed out after %.2fs during %s", deadline.elapsed(), deadline.stage)
            raise TimedOut(budget, deadline.elapsed(), deadline.stage) from None
        finally:
            executor.shutdown(wait=False)

    def _scan(
        self,
        capture: RawCapture,
        template: Template,
        answer_key: Optional[Union[AnswerKey, Mapping[int, str]]],
        deadline: Deadline,
    ) -> ScoreReport:
        detection = self._detect(capture, template, deadline)
        deadline.check("grade")
        return self.grade(detection, template, answer_key)

    @staticmethod
    def grade(
        detection: SheetDetection,
        template: Template,
        answer_key: Optional[Union[AnswerKey, Mapping[int, str]]] = None,
    ) -> ScoreReport:
        return grade_detections(
            detection.detections,
            answer_key if answer_key is not None else AnswerKey(),
            weights=template.weights(),
            identifiers=detection.identifiers,
            quality=detection.quality,
            template_name=template.name,
        )

    def _detect(self, capture: RawCapture, template: Template, deadline: Deadline) -> SheetDetection:
        config = self.config

        deadline.check("normalize")
        normalized = normalize(capture, template, config)

        deadline.check("sample")
        samples = sample(normalized, template, config)

        deadline.check("classify")
        option_samples = [s for s in samples if s.key.kind == OPTION]
        bubbles = self._map(lambda s: self._classify(s, deadline), option_samples)

        grouped: Dict[int, List[BubbleResult]] = {q.number: [] for q in template.questions}
        for region, result in zip(option_samples, bubbles):
            grouped[region.key.question].append(result)
        detections = [resolve_question(q, grouped[q.number], config) for q in template.questions]

        digit_samples = [s for s in samples if s.key.kind == DIGIT]
        identifiers = self._map(
            lambda f: self._recognize(f, digit_samples, deadline), list(template.identifiers)
        )

        deadline.check("assess")
        quality = assess(detections, identifiers, normalized.metrics, config, normalized.rejected_markers)
        return SheetDetection(
            normalized=normalized,
            detections=tuple(detections),
            identifiers=tuple(identifiers),
            quality=quality,
        )

    def _classify(self, region: RegionSample, deadline: Deadline) -> BubbleResult:
        deadline.check("classify")
        return classify_bubble(region, self.config, self.mark_chain)

    def _recognize(
        self, ident: IdentifierField, samples: Sequence[RegionSample], deadline: Deadline
    ) -> IdentifierResult:
        deadline.check("identify")
        return recognize_identifier(ident, samples, self.config)

    def _map(self, fn: Callable[[T], R], items: Sequence[T]) -> List[R]:
        workers = self.config.region_workers
        if workers > 1 and len(items) > 1:
            # map() keeps input order, so results stay in template order
            with futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="omrscan-region") as pool:
                return list(pool.map(fn, items))
        return [fn(item) for item in items]


@dataclass(frozen=True)
class ScanJob:
    capture: RawCapture
    template: Template
    answer_key: Optional[Union[AnswerKey, Mapping[int, str]]] = None


@dataclass(frozen=True)
class ScanOutcome:
    """Result of one job in a batch: either a report or the error that stopped it."""

    index: int
    source: Optional[str]
    report: Optional[ScoreReport] = None
    error: Optional[OMRError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, object]:
        return {
            "index": self.index,
            "source": self.source,
            "ok": self.ok,
            "report": self.report.to_dict() if self.report else None,
            "error": self.error.to_dict() if self.error else None,
        }


def scan_batch(
    jobs: Iterable[ScanJob],
    config: ScanConfig = DEFAULT_CONFIG,
    max_workers: Optional[int] = None,
) -> List[ScanOutcome]:
    """Scan independent captures in parallel; outcomes keep input order."""

    jobs = list(jobs)
    if not jobs:
        return []

    pipeline = ScanPipeline(config)
    workers = max_workers or os.cpu_count() or 1
    outcomes: List[ScanOutcome] = []
    with futures.ThreadPoolExecutor(max_workers=min(workers, len(jobs)), thread_name_prefix="omrscan-batch") as pool:
        pending = [pool.submit(pipeline.scan, job.capture, job.template, job.answer_key) for job in jobs]
        for index, (job, future) in enumerate(zip(jobs, pending)):
            try:
                outcomes.append(ScanOutcome(index=index, source=job.capture.source, report=future.result()))
            except OMRError as exc:
                logger.warning("Scan %d (%s) failed: %s", index, job.capture.source or "<memory>", exc)
                outcomes.append(ScanOutcome(index=index, source=job.capture.source, error=exc))
    return outcomes
