"""Tests for rough cropping, rotation calibration and fine cropping."""

from __future__ import annotations

import numpy as np
import pytest
from skimage.transform import rotate as sk_rotate

from conftest import draw_colonies
from plate_crop import (
    FineCrop,
    PlatePosition,
    apply_fine_crop,
    calibrate_rotation,
    crop_box,
    fine_crop,
    foreground_runs,
    rotate_plate,
    rough_crop,
)
from utils import InsufficientContrast


@pytest.fixture
def plate_layout() -> np.ndarray:
    """2x3 light plates with a few dark spots on a dark 400x600 background."""
    template = np.zeros((400, 600))
    for top, bottom in ((20, 180), (220, 380)):
        for left, right in ((20, 180), (210, 390), (420, 580)):
            template[top:bottom, left:right] = 0.8
            template[top + 40:top + 50, left + 40:left + 50] = 0.2
    return template


# %% Rough crop
def test_foreground_runs() -> None:
    fraction = np.array([0, 0.5, 0.5, 0, 0.5, 0, 0, 0.5, 0.5, 0.5])
    assert foreground_runs(fraction, 0.1) == [(1, 2), (4, 4), (7, 9)]
    assert foreground_runs(fraction, 0.1, min_length=2) == [(1, 2), (7, 9)]


def test_rough_crop_finds_plate_layout(plate_layout: np.ndarray) -> None:
    positions = rough_crop(plate_layout, thresh=0.03, invert=True)

    assert len(positions) == 6
    assert [p.position_id for p in positions] == [1, 2, 3, 4, 5, 6]
    assert [(p.plate_row, p.plate_col) for p in positions] == [
        (1, 1), (1, 2), (1, 3), (2, 1), (2, 2), (2, 3)
    ]
    first = positions[0]
    assert (first.rough_left, first.rough_right, first.rough_top, first.rough_bottom) == (21, 180, 21, 180)
    assert (first.center_x, first.center_y) == (100, 100)
    fifth = positions[4]
    assert (fifth.rough_left, fifth.rough_right, fifth.rough_top, fifth.rough_bottom) == (211, 390, 221, 380)


def test_rough_crop_padding_is_clamped(plate_layout: np.ndarray) -> None:
    positions = rough_crop(plate_layout, thresh=0.03, invert=True, pad=(5, 5, 30, 5))
    first = positions[0]
    assert (first.rough_left, first.rough_right, first.rough_top, first.rough_bottom) == (16, 185, 1, 185)


def test_rough_crop_warns_on_unexpected_layout(plate_layout: np.ndarray, warnings_logged: list[str]) -> None:
    positions = rough_crop(plate_layout, plate_rows=3, plate_cols=3)
    assert len(positions) == 6
    assert "Expected 3 rows of plates, found 2" in warnings_logged
    assert not any("columns of plates" in message for message in warnings_logged)


def test_rough_crop_expected_layout_is_quiet(plate_layout: np.ndarray, warnings_logged: list[str]) -> None:
    rough_crop(plate_layout, plate_rows=2, plate_cols=3)
    assert warnings_logged == []


def test_rough_crop_dark_plates(plate_layout: np.ndarray) -> None:
    positions = rough_crop(1 - plate_layout, thresh=0.03, invert=False)
    assert len(positions) == 6


def test_rough_crop_rectangles_do_not_overlap(plate_layout: np.ndarray) -> None:
    positions = rough_crop(plate_layout)
    for a in positions:
        assert a.rough_left < a.rough_right and a.rough_top < a.rough_bottom
        for b in positions:
            if a is b:
                continue
            overlap_x = a.rough_left <= b.rough_right and b.rough_left <= a.rough_right
            overlap_y = a.rough_top <= b.rough_bottom and b.rough_top <= a.rough_bottom
            assert not (overlap_x and overlap_y)


def test_rough_crop_without_contrast_raises() -> None:
    with pytest.raises(InsufficientContrast):
        rough_crop(np.full((100, 100), 0.5))


def test_crop_box_uses_inclusive_one_based_bounds(plate_layout: np.ndarray) -> None:
    position = rough_crop(plate_layout)[0]
    plate = crop_box(plate_layout, position)
    assert plate.shape == (160, 160)
    assert np.all(plate > 0)


# %% Rotation
def test_calibrate_rotation_recovers_tilt() -> None:
    aligned = draw_colonies(300, 400, xs=[60 + 40 * c for c in range(8)], ys=[70 + 40 * r for r in range(5)], radius=6)
    tilted = sk_rotate(aligned, 1.0, preserve_range=True)  # counter-clockwise
    angle = calibrate_rotation(tilted, rotate=0, range=2, step=0.25)
    assert angle == pytest.approx(1.0, abs=0.5)


def test_calibrate_rotation_blank_plate_keeps_rough_angle() -> None:
    assert calibrate_rotation(np.zeros((120, 160)), rotate=90, range=2) == 90.0


def test_rotate_plate_quarter_turn_is_clockwise() -> None:
    plate = np.zeros((20, 40))
    plate[:3, :3] = 1  # top-left
    rotated = rotate_plate(plate, 90)
    assert rotated.shape == (40, 20)
    # top-left moves to top-right under a clockwise quarter turn
    assert rotated[1, 18] == pytest.approx(1)
    assert rotated[1, 1] == pytest.approx(0)


# %% Fine crop
@pytest.fixture
def colony_plate() -> np.ndarray:
    return draw_colonies(200, 300, xs=[50, 90, 130], ys=[60, 100], radius=5)


def test_fine_crop_nearest_colony_edges(colony_plate: np.ndarray) -> None:
    fine = fine_crop(colony_plate, 0.5, thresh=0.0, position_id=3)
    assert fine == FineCrop(
        position_id=3, rotation_angle=0.5,
        fine_left=46, fine_right=136, fine_top=56, fine_bottom=106
    )
    assert apply_fine_crop(colony_plate, fine).shape == (51, 91)


def test_fine_crop_padding(colony_plate: np.ndarray) -> None:
    fine = fine_crop(colony_plate, 0.0, thresh=0.0, pad=(2, 2, 2, 2))
    assert (fine.fine_left, fine.fine_right, fine.fine_top, fine.fine_bottom) == (44, 138, 54, 108)


def test_fine_crop_skips_plate_rim(colony_plate: np.ndarray) -> None:
    without_rim = fine_crop(colony_plate, 0.0)
    rimmed = colony_plate.copy()
    rimmed[:, :3] = 1.0
    with_rim = fine_crop(rimmed, 0.0)
    assert (with_rim.fine_left, with_rim.fine_right) == (without_rim.fine_left, without_rim.fine_right)


def test_fine_crop_blank_plate_keeps_rough_boundary() -> None:
    fine = fine_crop(np.zeros((80, 120)), 90.0)
    assert (fine.fine_left, fine.fine_right, fine.fine_top, fine.fine_bottom) == (1, 120, 1, 80)


def test_fine_crop_contained_in_rotated_box(colony_plate: np.ndarray) -> None:
    rotated = rotate_plate(colony_plate, 1.5)
    fine = fine_crop(rotated, 1.5, pad=(500, 500, 500, 500))
    height, width = rotated.shape
    assert 1 <= fine.fine_left < fine.fine_right <= width
    assert 1 <= fine.fine_top < fine.fine_bottom <= height


def test_plate_position_is_immutable() -> None:
    position = PlatePosition(1, 1, 1, 10, 10, 1, 20, 1, 20)
    with pytest.raises(AttributeError):
        position.rough_left = 5
