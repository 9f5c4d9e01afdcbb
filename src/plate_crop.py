"""
Plate cropping and rotation calibration for multi-plate template images.

Three steps isolate each plate before its colony grid is located:

1. Rough crop: plates are found as runs of rows/columns whose foreground
   fraction exceeds `thresh` on the whole template. Relies on high contrast
   between plates and the gaps between them: with `invert=True` plates should
   be light and the gaps dark, and vice versa.
2. Rotate: an angle search around the rough angle maximises the sharpness of
   the row and column intensity projections.
3. Fine crop: the rotated plate is trimmed to the nearest colony edge on each
   side (problematic for plates without growth on the intended grid edges,
   where the rough boundary is kept).

Usage:
    positions = rough_crop(template, thresh=0.03, invert=True, pad=(0, 0, 0, 0))
    plate = crop_box(template, positions[0])
    angle = calibrate_rotation(plate, rotate=90, range=2)
    fine = fine_crop(rotate_plate(plate, angle), angle, thresh=0.03)
"""

# %% ------------------------------------ Imports ------------------------------------ #
from dataclasses import dataclass

import numpy as np
from loguru import logger
from skimage.filters import threshold_otsu
from skimage.transform import rotate as sk_rotate

from utils import InsufficientContrast

# %% ------------------------------------ Dataclass ------------------------------------ #
@dataclass(frozen=True)
class PlatePosition:
    """Rough crop rectangle of one plate on a template (1-based, inclusive)."""
    position_id: int
    plate_row: int
    plate_col: int
    center_x: int
    center_y: int
    rough_left: int
    rough_right: int
    rough_top: int
    rough_bottom: int


@dataclass(frozen=True)
class FineCrop:
    """Rotation and fine crop of one plate, relative to the rotated rough crop."""
    position_id: int
    rotation_angle: float
    fine_left: int
    fine_right: int
    fine_top: int
    fine_bottom: int


# %% ------------------------------------ Helpers ------------------------------------ #
def foreground_runs(fraction: np.ndarray, thresh: float, min_length: int = 1) -> list[tuple[int, int]]:
    """Return inclusive (start, stop) index runs where `fraction` exceeds `thresh`."""
    above = np.concatenate([[False], fraction > thresh, [False]])
    edges = np.flatnonzero(np.diff(above.astype(int)))
    runs = zip(edges[::2], edges[1::2] - 1)
    return [(int(start), int(stop)) for start, stop in runs if stop - start + 1 >= min_length]


def foreground_mask(image: np.ndarray, invert: bool) -> np.ndarray:
    """Otsu foreground: bright pixels when `invert`, dark pixels otherwise."""
    if np.ptp(image) == 0:
        return np.zeros(image.shape, dtype=bool)
    level = threshold_otsu(image)
    return image > level if invert else image < level


def crop_box(image: np.ndarray, position: PlatePosition) -> np.ndarray:
    """Cut a rough crop rectangle out of a template."""
    return image[position.rough_top - 1:position.rough_bottom, position.rough_left - 1:position.rough_right]


def apply_fine_crop(rotated: np.ndarray, fine: FineCrop) -> np.ndarray:
    """Cut the fine crop rectangle out of a rotated plate."""
    return rotated[fine.fine_top - 1:fine.fine_bottom, fine.fine_left - 1:fine.fine_right]


def rotate_plate(plate: np.ndarray, angle: float) -> np.ndarray:
    """Rotate clockwise by `angle` degrees, enlarging the canvas and filling with 0."""
    return sk_rotate(plate, -angle, resize=True, mode="constant", cval=0, preserve_range=True)


# %% ------------------------------------ Rough crop ------------------------------------ #
def rough_crop(
    image: np.ndarray,
    thresh: float = 0.03,
    invert: bool = True,
    pad: tuple[int, int, int, int] = (0, 0, 0, 0),
    min_plate_fraction: float = 0.02,
    plate_rows: int | None = None,
    plate_cols: int | None = None
) -> list[PlatePosition]:
    """Find the rough crop rectangle of every plate on a template image."""
    height, width = image.shape[:2]
    mask = foreground_mask(image, invert)

    row_runs = foreground_runs(mask.mean(axis=1), thresh, max(1, int(height * min_plate_fraction)))
    col_runs = foreground_runs(mask.mean(axis=0), thresh, max(1, int(width * min_plate_fraction)))

    if not row_runs or not col_runs:
        raise InsufficientContrast(
            f"Found {len(row_runs)} plate rows and {len(col_runs)} plate columns at thresh={thresh}"
        )
    if plate_rows is not None and len(row_runs) != plate_rows:
        logger.warning(f"Expected {plate_rows} rows of plates, found {len(row_runs)}")
    if plate_cols is not None and len(col_runs) != plate_cols:
        logger.warning(f"Expected {plate_cols} columns of plates, found {len(col_runs)}")

    pad_left, pad_right, pad_top, pad_bottom = pad
    positions = []
    for plate_row, (row_start, row_stop) in enumerate(row_runs, start=1):
        for plate_col, (col_start, col_stop) in enumerate(col_runs, start=1):
            cell = mask[row_start:row_stop + 1, col_start:col_stop + 1]
            rows = np.flatnonzero(cell.mean(axis=1) > thresh)
            cols = np.flatnonzero(cell.mean(axis=0) > thresh)
            if len(rows) == 0 or len(cols) == 0:
                # empty slot in the plate layout
                continue

            left = max(1, col_start + cols[0] + 1 - pad_left)
            right = min(width, col_start + cols[-1] + 1 + pad_right)
            top = max(1, row_start + rows[0] + 1 - pad_top)
            bottom = min(height, row_start + rows[-1] + 1 + pad_bottom)
            positions.append(PlatePosition(
                position_id=len(positions) + 1,
                plate_row=plate_row,
                plate_col=plate_col,
                center_x=int(round((left + right) / 2)),
                center_y=int(round((top + bottom) / 2)),
                rough_left=left,
                rough_right=right,
                rough_top=top,
                rough_bottom=bottom
            ))

    logger.info(f"Rough crop found {len(positions)} plates in a {len(row_runs)}x{len(col_runs)} layout")
    return positions


# %% ------------------------------------ Rotation ------------------------------------ #
def alignment_score(image: np.ndarray) -> float:
    """Sharpness of the row and column mean-intensity projections."""
    return float(np.var(image.mean(axis=0)) + np.var(image.mean(axis=1)))


def calibrate_rotation(
    plate: np.ndarray,
    rotate: float = 90,
    range: float = 2,
    step: float = 0.2
) -> float:
    """
    Search [rotate - range, rotate + range] for the clockwise angle that best
    axis-aligns a colony-bright plate. Falls back to `rotate` when no angle
    scores differently from the others (e.g. a blank plate).
    """
    base = rotate_plate(plate, rotate)
    n_angles = int(round(2 * range / step)) + 1
    offsets = np.linspace(-range, range, n_angles) if range > 0 else np.array([0.0])

    # score only the region that stays inside the canvas at every angle
    margin = int(np.ceil(max(base.shape) * np.sin(np.radians(range)))) + 1
    if base.shape[0] <= 2 * margin or base.shape[1] <= 2 * margin:
        logger.warning(f"Plate too small to search rotation within +/-{range} degrees")
        return float(rotate)

    scores = []
    for offset in offsets:
        turned = sk_rotate(base, -offset, resize=False, mode="constant", cval=0, preserve_range=True)
        scores.append(alignment_score(turned[margin:-margin, margin:-margin]))
    scores = np.array(scores)

    if not np.all(np.isfinite(scores)) or np.ptp(scores) <= 1e-12:
        logger.warning(f"No rotation angle improves alignment, keeping {rotate} degrees")
        return float(rotate)

    return float(rotate + offsets[int(np.argmax(scores))])


# %% ------------------------------------ Fine crop ------------------------------------ #
def nearest_edge(fraction: np.ndarray, thresh: float, border_fraction: float) -> int | None:
    """Index of the first line past the plate rim whose foreground fraction exceeds `thresh`."""
    start = 0
    while start < len(fraction) and fraction[start] > border_fraction:
        start += 1
    hits = np.flatnonzero(fraction[start:] > thresh)
    return int(start + hits[0]) if len(hits) else None


def fine_crop(
    rotated: np.ndarray,
    rotation_angle: float,
    thresh: float = 0.03,
    pad: tuple[int, int, int, int] = (0, 0, 0, 0),
    border_fraction: float = 0.95,
    position_id: int = 0
) -> FineCrop:
    """Trim a rotated, colony-bright plate to the nearest colony edge on each side."""
    height, width = rotated.shape[:2]
    mask = foreground_mask(rotated, invert=True)
    col_fraction = mask.mean(axis=0)
    row_fraction = mask.mean(axis=1)

    bounds = []
    for fraction, size in ((col_fraction, width), (row_fraction, height)):
        low = nearest_edge(fraction, thresh, border_fraction)
        high = nearest_edge(fraction[::-1], thresh, border_fraction)
        low = 0 if low is None else low
        high = size - 1 if high is None else size - 1 - high
        if low >= high:
            logger.warning(f"Position {position_id}: no colony edges found, keeping rough boundary")
            low, high = 0, size - 1
        bounds.append((low + 1, high + 1))

    (left, right), (top, bottom) = bounds
    pad_left, pad_right, pad_top, pad_bottom = pad
    return FineCrop(
        position_id=position_id,
        rotation_angle=float(rotation_angle),
        fine_left=max(1, left - pad_left),
        fine_right=min(width, right + pad_right),
        fine_top=max(1, top - pad_top),
        fine_bottom=min(height, bottom + pad_bottom)
    )
