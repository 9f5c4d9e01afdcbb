"""
Crop, rotation and colony grid calibration for multi-plate template images.

Each template is rough cropped into plates in the calling process; every plate
is then rotated, fine cropped and gridded independently, one task per plate
on a process pool. Failures are local to a plate position: they are logged as
warnings and the position is left without a grid.

Usage:
    config = CalibrationConfig(grid_rows=16, grid_cols=24, rotate=90)
    crop, grid = calibrate_templates(
        templates={"plate-scan-01.jpg": image},
        annotation=pd.DataFrame({"template": ["plate-scan-01.jpg"], "position_id": [1]}),
        config=config
    )
"""

# %% ------------------------------------ Imports ------------------------------------ #
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import asdict, dataclass

import numpy as np
import pandas as pd
from loguru import logger
from tqdm import tqdm

from grid_locator import GRID_COLUMNS, locate_grid
from plate_crop import (
    FineCrop,
    PlatePosition,
    apply_fine_crop,
    calibrate_rotation,
    crop_box,
    fine_crop,
    rotate_plate,
    rough_crop,
)
from utils import CalibrationConfig, CalibrationError, InsufficientContrast, SizeMismatch

CROP_COLUMNS = [
    "template", "position_id", "plate_row", "plate_col", "center_x", "center_y",
    "rough_left", "rough_right", "rough_top", "rough_bottom",
    "rotation_angle", "fine_left", "fine_right", "fine_top", "fine_bottom", "invert"
]
GRID_TABLE_COLUMNS = ["template", "position_id"] + GRID_COLUMNS + ["excluded"]

# %% ------------------------------------ Dataclass ------------------------------------ #
@dataclass
class CalibrationRecord:
    """Crop and grid calibration of one plate position."""
    template: str
    position: PlatePosition
    fine: FineCrop
    grid: pd.DataFrame | None = None
    failure: str | None = None

    def crop_row(self, invert: bool) -> dict:
        row = {"template": self.template, **asdict(self.position), **asdict(self.fine)}
        row["invert"] = invert
        return {column: row[column] for column in CROP_COLUMNS}

    def grid_table(self) -> pd.DataFrame:
        if self.grid is None:
            return grid_empty()
        grid = self.grid.copy()
        grid.insert(0, "position_id", self.position.position_id)
        grid.insert(0, "template", self.template)
        grid["excluded"] = False
        return grid[GRID_TABLE_COLUMNS]


# %% ------------------------------------ Functions ------------------------------------ #
def grid_empty() -> pd.DataFrame:
    """Zero-row grid table with the full schema."""
    return pd.DataFrame({
        "template": pd.Series(dtype=str),
        "position_id": pd.Series(dtype=int),
        **{column: pd.Series(dtype=int) for column in GRID_COLUMNS},
        "excluded": pd.Series(dtype=bool)
    })


def check_grid_size(n_cells: int, key_size: int) -> int:
    """Return replicates per key entry, raising unless it is a perfect square."""
    replicates = n_cells / key_size if key_size > 0 else 0
    root = np.sqrt(replicates)
    if replicates < 1 or root % 1 != 0:
        raise SizeMismatch(
            f"Size of detected colony grid ({n_cells}) is not a square multiple "
            f"of the number of key positions ({key_size})"
        )
    return int(replicates)


def key_sizes_from_annotation(annotation: pd.DataFrame) -> dict[tuple[str, int], int]:
    """Map (template, position_id) to the annotated `key_size`, where the column is filled."""
    if "key_size" not in annotation.columns:
        return {}
    sized = annotation.dropna(subset=["key_size"]).drop_duplicates(["template", "position_id"])
    return {
        (row.template, int(row.position_id)): int(row.key_size)
        for row in sized.itertuples(index=False)
    }


def calibrate_plate(
    plate: np.ndarray,
    position: PlatePosition,
    config: CalibrationConfig,
    template: str = "",
    fine: FineCrop | None = None
) -> CalibrationRecord:
    """Rotate, fine crop and locate the colony grid of one rough-cropped plate."""
    if config.invert:
        plate = 1 - plate

    if fine is None:
        angle = calibrate_rotation(plate, rotate=config.rotate, range=config.range, step=config.angle_step)
        rotated = rotate_plate(plate, angle)
        fine = fine_crop(
            rotated, angle,
            thresh=config.thresh,
            pad=config.fine_pad,
            border_fraction=config.border_fraction,
            position_id=position.position_id
        )
    else:
        rotated = rotate_plate(plate, fine.rotation_angle)

    record = CalibrationRecord(template=template, position=position, fine=fine)
    try:
        record.grid = locate_grid(apply_fine_crop(rotated, fine), config)
    except CalibrationError as e:
        record.failure = f"{type(e).__name__}: {e}"
    return record


def plate_from_crop(image: np.ndarray, crop_row: pd.Series) -> np.ndarray:
    """Reproduce the fine-cropped, colony-bright plate described by one crop table row."""
    positions, fines = default_crop_positions(crop_row.to_frame().T, crop_row["template"])
    position = positions[0]
    fine = fines[position.position_id]

    plate = crop_box(image, position)
    if crop_row["invert"]:
        plate = 1 - plate
    return apply_fine_crop(rotate_plate(plate, fine.rotation_angle), fine)


def default_crop_positions(default_crop: pd.DataFrame, template: str) -> tuple[list[PlatePosition], dict[int, FineCrop]]:
    """Read rough and fine crops of one template from a crop table."""
    rows = default_crop[default_crop["template"] == template]
    positions, fines = [], {}
    for row in rows.itertuples(index=False):
        positions.append(PlatePosition(
            position_id=int(row.position_id),
            plate_row=int(row.plate_row),
            plate_col=int(row.plate_col),
            center_x=int(row.center_x),
            center_y=int(row.center_y),
            rough_left=int(row.rough_left),
            rough_right=int(row.rough_right),
            rough_top=int(row.rough_top),
            rough_bottom=int(row.rough_bottom)
        ))
        fines[int(row.position_id)] = FineCrop(
            position_id=int(row.position_id),
            rotation_angle=float(row.rotation_angle),
            fine_left=int(row.fine_left),
            fine_right=int(row.fine_right),
            fine_top=int(row.fine_top),
            fine_bottom=int(row.fine_bottom)
        )
    return positions, fines


def match_positions(
    found: list[PlatePosition],
    position_ids: list[int],
    template: str
) -> list[PlatePosition]:
    """Keep the rough crops of the annotated positions, in annotation order."""
    by_id = {p.position_id: p for p in found}
    if len(found) > len(position_ids):
        logger.warning(
            f"For {template}, keeping positions ({', '.join(map(str, position_ids))}) "
            f"of {len(found)} available."
        )
    missing = [p for p in position_ids if p not in by_id]
    if missing:
        logger.warning(
            f"For {template}, no plate found for positions ({', '.join(map(str, missing))}); "
            f"{len(found)} plates detected. These positions are unresolved."
        )
    return [by_id[p] for p in position_ids if p in by_id]


def plate_tasks(
    template: str,
    image: np.ndarray,
    position_ids: list[int],
    config: CalibrationConfig,
    default_crop: pd.DataFrame | None = None
) -> list[tuple]:
    """Rough crop one template into (plate, position, template, fine) task arguments."""
    fines = {}
    if default_crop is not None and (default_crop["template"] == template).any():
        found, fines = default_crop_positions(default_crop, template)
    else:
        try:
            found = rough_crop(
                image,
                thresh=config.thresh,
                invert=config.invert,
                pad=config.rough_pad,
                min_plate_fraction=config.min_plate_fraction,
                plate_rows=config.plate_rows,
                plate_cols=config.plate_cols
            )
        except InsufficientContrast as e:
            logger.warning(f"{template}: rough crop failed ({e}). All positions are unresolved.")
            return []

    return [
        (crop_box(image, position), position, template, fines.get(position.position_id))
        for position in match_positions(found, position_ids, template)
    ]


def _run_plate(args: tuple, config: CalibrationConfig) -> CalibrationRecord:
    plate, position, template, fine = args
    return calibrate_plate(plate, position, config, template=template, fine=fine)


def run_plate_tasks(tasks: list[tuple], config: CalibrationConfig) -> list[CalibrationRecord]:
    """Calibrate plates on a process pool; cancelling aborts the plates not yet started."""
    if config.n_workers == 1 or len(tasks) <= 1:
        return [_run_plate(task, config) for task in tqdm(tasks, desc="Calibrating plates")]

    records = []
    with ProcessPoolExecutor(max_workers=min(config.n_workers, len(tasks))) as executor:
        futures = [executor.submit(_run_plate, task, config) for task in tasks]
        try:
            for future in tqdm(as_completed(futures), total=len(futures), desc="Calibrating plates"):
                records.append(future.result())
        except KeyboardInterrupt:
            logger.warning("Calibration interrupted, cancelling remaining plates")
            executor.shutdown(wait=False, cancel_futures=True)
            raise

    order = {(task[2], task[1].position_id): i for i, task in enumerate(tasks)}
    return sorted(records, key=lambda r: order[(r.template, r.position.position_id)])


def collect_tables(
    records: list[CalibrationRecord],
    config: CalibrationConfig,
    key_sizes: dict[tuple[str, int], int] | None = None
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Build the crop and grid tables, warning about plates without a usable grid."""
    key_sizes = key_sizes or {}
    crop_rows, grids = [], []
    for record in records:
        crop_rows.append(record.crop_row(config.invert))
        position_id = record.position.position_id

        if record.failure is not None:
            logger.warning(
                f"Failed to locate colony grid for {record.template} at position {position_id} "
                f"({record.failure}). This plate position has been skipped."
            )
            continue

        key_size = key_sizes.get((record.template, position_id))
        if key_size is not None:
            try:
                check_grid_size(len(record.grid), key_size)
            except SizeMismatch as e:
                logger.warning(f"{record.template} position {position_id}: {e}. This plate position has been skipped.")
                continue
        grids.append(record.grid_table())

    crop = pd.DataFrame(crop_rows, columns=CROP_COLUMNS)
    grid = pd.concat(grids, ignore_index=True) if grids else grid_empty()
    return crop, grid


def calibrate_template(
    template: str,
    image: np.ndarray,
    position_ids: list[int],
    config: CalibrationConfig,
    default_crop: pd.DataFrame | None = None,
    key_sizes: dict[tuple[str, int], int] | None = None
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Calibrate the annotated plate positions of one template image."""
    logger.info(f"{template}: cropping plates")
    tasks = plate_tasks(template, image, position_ids, config, default_crop)
    logger.info(f"{template}: locating colony grid")
    return collect_tables(run_plate_tasks(tasks, config), config, key_sizes)


def calibrate_templates(
    templates: dict[str, np.ndarray],
    annotation: pd.DataFrame,
    config: CalibrationConfig,
    default_crop: pd.DataFrame | None = None,
    key_sizes: dict[tuple[str, int], int] | None = None
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Calibrate every annotated plate position across templates.

    `annotation` needs `template` and `position_id` columns; templates without
    annotated positions are skipped. Plates from all templates share one pool.
    """
    tasks = []
    for template, image in templates.items():
        position_ids = (
            annotation.loc[annotation["template"] == template, "position_id"]
            .drop_duplicates().astype(int).tolist()
        )
        if not position_ids:
            logger.warning(f"{template}: no annotated positions, skipping")
            continue
        logger.info(f"{template}: cropping {len(position_ids)} plates")
        tasks.extend(plate_tasks(template, image, position_ids, config, default_crop))

    crop, grid = collect_tables(run_plate_tasks(tasks, config), config, key_sizes)
    n_gridded = len(grid[["template", "position_id"]].drop_duplicates())
    logger.success(f"Calibrated colony grids for {n_gridded} of {len(crop)} plates")
    return crop, grid
