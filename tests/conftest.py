"""Synthetic plate and template images for calibration tests.

Colony centers are given as 0-based array indices; calibration output uses
1-based pixel coordinates, so expected positions are `center + 1`.
"""

from __future__ import annotations

import numpy as np
import pytest
from loguru import logger


@pytest.fixture
def warnings_logged() -> list[str]:
    """Messages logged at WARNING or above while the test runs."""
    messages = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)


def draw_colonies(
    height: int,
    width: int,
    xs: list[float],
    ys: list[float],
    radius: float = 8,
    background: float = 0.0,
    colony: float = 1.0,
    skip_rows: tuple[int, ...] = (),
) -> np.ndarray:
    """Grid of filled discs at every (x, y) combination."""
    image = np.full((height, width), background, dtype=float)
    yy, xx = np.mgrid[:height, :width]
    for row, y in enumerate(ys):
        if row in skip_rows:
            continue
        for x in xs:
            image[(yy - y) ** 2 + (xx - x) ** 2 <= radius ** 2] = colony
    return image


@pytest.fixture
def scenario_grid() -> dict:
    """8x12 grid, 50 px row and 40 px column spacing, centered in a 1000x500 image."""
    xs = [279 + 40 * k for k in range(12)]
    ys = [74 + 50 * k for k in range(8)]
    return {"image": draw_colonies(500, 1000, xs, ys), "xs": xs, "ys": ys}


@pytest.fixture
def missing_row_grid() -> dict:
    """Same grid as `scenario_grid` with the fourth row of colonies removed."""
    xs = [279 + 40 * k for k in range(12)]
    ys = [74 + 50 * k for k in range(8)]
    return {"image": draw_colonies(500, 1000, xs, ys, skip_rows=(3,)), "xs": xs, "ys": ys, "missing_row": 4}


@pytest.fixture
def template_image() -> np.ndarray:
    """Two light plates on a dark background, each with a 4x6 grid of dark colonies.

    Plate 1 spans rows 20..179 and columns 20..239, plate 2 the same rows and
    columns 260..479 (0-based, inclusive).
    """
    template = np.zeros((200, 500))
    for left in (20, 260):
        plate = draw_colonies(
            160, 220,
            xs=[35 + 30 * c for c in range(6)],
            ys=[35 + 30 * r for r in range(4)],
            radius=6, background=0.9, colony=0.3,
        )
        template[20:180, left:left + 220] = plate
    return template
