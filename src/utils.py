# %% ------------------------------------ Import libraries ------------------------------------ #
import os
from pathlib import Path
from dataclasses import dataclass, field

import numpy as np
from loguru import logger
from skimage import io
from skimage.color import rgb2gray, rgba2rgb
from skimage.util import img_as_float

# %% ------------------------------------ Exceptions ------------------------------------ #
class CalibrationError(Exception):
    """Base class for failures that are local to one template or plate position."""


class InsufficientContrast(CalibrationError):
    """Rough cropping could not find any plate boundary meeting the threshold."""


class InsufficientObjects(CalibrationError):
    """Segmentation found fewer objects than the grid needs."""


class GridRepairDivergence(CalibrationError):
    """A break-point axis could not be repaired to the required length."""


class SizeMismatch(CalibrationError):
    """The colony grid size is not a square multiple of the key size."""


# %% ------------------------------------ Data classes ------------------------------------ #
@dataclass
class CalibrationConfig:
    """Parameters shared by every stage of crop and grid calibration."""

    # colony grid
    grid_rows: int
    grid_cols: int

    # rotation
    rotate: float = 90  # rough clockwise rotation in degrees
    range: float = 2  # search +/- this many degrees around `rotate`
    angle_step: float = 0.2

    # cropping
    thresh: float = 0.03  # foreground fraction marking a plate or colony edge
    invert: bool = True  # colonies darker than the plate
    rough_pad: tuple[int, int, int, int] = (0, 0, 0, 0)  # left, right, top, bottom
    fine_pad: tuple[int, int, int, int] = (0, 0, 0, 0)
    min_plate_fraction: float = 0.02  # shortest plate extent, relative to the image side
    border_fraction: float = 0.95  # lines this full at a crop edge belong to the plate rim
    plate_rows: int | None = None  # expected plate layout on a template, unchecked when None
    plate_cols: int | None = None

    # segmentation
    normalize_range: tuple[float, float] = (0.1, 0.8)
    blur_sigma: float = 6
    watershed_min_distance: int = 5
    max_eccentricity: float = 0.8

    # grid repair
    step_tolerance: float = 0.2
    gap_factor: float = 1.25

    # selection boxes
    colony_radius: float = 1  # <= 1: fraction of a quarter of mean row + column spacing, > 1: pixels
    max_smooth: float = 5
    min_smooth_cells: int = 10

    n_workers: int = field(default_factory=lambda: os.cpu_count() or 1)

    def __post_init__(self):
        for name in ("grid_rows", "grid_cols"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        for name in ("plate_rows", "plate_cols"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0):
                raise ValueError(f"{name} must be a positive integer or None, got {value!r}")
        if self.range < 0:
            raise ValueError(f"range must be non-negative, got {self.range}")
        if self.angle_step <= 0:
            raise ValueError(f"angle_step must be positive, got {self.angle_step}")
        if not 0 <= self.thresh <= 1:
            raise ValueError(f"thresh must be a fraction in [0, 1], got {self.thresh}")
        for name in ("rough_pad", "fine_pad"):
            pad = tuple(getattr(self, name))
            if len(pad) != 4:
                raise ValueError(f"{name} needs 4 values (left, right, top, bottom), got {len(pad)}")
            setattr(self, name, tuple(int(p) for p in pad))
        if self.colony_radius <= 0:
            raise ValueError(f"colony_radius must be positive, got {self.colony_radius}")
        if self.max_smooth < 0:
            raise ValueError(f"max_smooth must be non-negative, got {self.max_smooth}")
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be at least 1, got {self.n_workers}")


# %% ------------------------------------ Functions ------------------------------------ #
def read_greyscale(path: str | Path) -> np.ndarray:
    """Read an image file as a float greyscale array in [0, 1]."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")

    image = io.imread(str(path))
    if image.ndim == 3 and image.shape[2] == 4:
        image = rgba2rgb(image)
    if image.ndim == 3:
        image = rgb2gray(image)
    image = img_as_float(image)
    logger.debug(f"Loaded image: {path.name}, shape={image.shape}")
    return image
