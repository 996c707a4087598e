from __future__ import annotations

import pytest

from omrscan.config import ScanConfig
from omrscan.layout import build_template
from synthetic_sheet import PPU


@pytest.fixture(scope="session")
def config() -> ScanConfig:
    return ScanConfig(pixels_per_unit=PPU, timeout_seconds=60.0)


@pytest.fixture(scope="session")
def quiz_template():
    return build_template([{"type": "mc", "count": 4}], name="quiz")


@pytest.fixture(scope="session")
def id_template():
    return build_template(
        [{"type": "mc", "count": 4}, {"type": "tf", "count": 2}],
        id_digits=4,
        name="quiz-with-id",
    )


@pytest.fixture(scope="session")
def six_marker_template():
    return build_template([{"type": "mc", "count": 4}], name="quiz-six-markers", extra_markers=True)
