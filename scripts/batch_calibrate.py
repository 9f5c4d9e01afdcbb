"""
Batch crop and grid calibration of plate template images.

Reads every template listed in the annotation table, calibrates plate crops,
rotation and colony grids, and writes the crop and grid tables next to the
images. Review figures for each plate are saved when `save_plates` is set.

Usage: python scripts/batch_calibrate.py
Input: image directory with screenmill-annotations.csv (template, position_id and an
       optional key_size; plates with a key_size get the colony grid size check)
Output: calibration-crop.csv, calibration-grid.csv and calibration/*.png
"""

# %% ------------------------------------ Imports ------------------------------------ #
import sys
from pathlib import Path
from dataclasses import dataclass

import pandas as pd
from loguru import logger

sys.path.append(str(Path(__file__).parent.parent.resolve() / "src"))

from calibrate import calibrate_templates, key_sizes_from_annotation, plate_from_crop
from calibration_plots import plot_plate_grid, plot_rough_crop, save_figure
from plate_crop import PlatePosition
from utils import CalibrationConfig, read_greyscale

# %% ------------------------------------ Configuration ------------------------------------ #
@dataclass
class BatchConfig:
    """Paths and switches for one calibration batch."""
    image_dir: Path = Path(".")
    annotation_file: str = "screenmill-annotations.csv"
    crop_file: str = "calibration-crop.csv"
    grid_file: str = "calibration-grid.csv"
    default_crop_file: Path | None = None
    overwrite: bool = False
    save_plates: bool = True
    log_file: Path = Path("calibration.log")

    # grid parameters
    grid_rows: int = 16
    grid_cols: int = 24
    rotate: float = 90
    range: float = 2
    thresh: float = 0.03
    invert: bool = True
    plate_rows: int | None = None
    plate_cols: int | None = None
    colony_radius: float = 1
    max_smooth: float = 5


# %% ------------------------------------ Functions ------------------------------------ #
def save_review_figures(templates: dict, crop: pd.DataFrame, grid: pd.DataFrame, out_dir: Path) -> None:
    """Save the rough crop overlay of every template and the grid overlay of every plate."""
    position_fields = list(PlatePosition.__dataclass_fields__)
    for template, image in templates.items():
        rows = crop[crop["template"] == template]
        positions = [PlatePosition(**{f: int(row[f]) for f in position_fields}) for _, row in rows.iterrows()]
        save_figure(plot_rough_crop(image, positions), out_dir / f"{Path(template).stem}-rough.png")

        for _, row in rows.iterrows():
            plate = plate_from_crop(image, row)
            cells = grid[(grid["template"] == template) & (grid["position_id"] == row["position_id"])]
            fig = plot_plate_grid(plate, cells if len(cells) else None, template, int(row["position_id"]))
            save_figure(fig, out_dir / f"{int(row['position_id']):03d}-{Path(template).stem}.png")


@logger.catch
def main() -> None:
    """Calibrate all annotated templates in the image directory."""
    batch = BatchConfig()
    logger.add(batch.image_dir / batch.log_file, level="INFO")

    crop_path = batch.image_dir / batch.crop_file
    grid_path = batch.image_dir / batch.grid_file
    if not batch.overwrite and crop_path.exists() and grid_path.exists():
        logger.info('This batch has already been calibrated. Set "overwrite = True" to re-calibrate.')
        return

    annotation_path = batch.image_dir / batch.annotation_file
    if not annotation_path.exists():
        raise FileNotFoundError(f"Please annotate plates before cropping: {annotation_path} not found")
    annotation = pd.read_csv(annotation_path)

    default_crop = pd.read_csv(batch.default_crop_file) if batch.default_crop_file else None

    config = CalibrationConfig(
        grid_rows=batch.grid_rows,
        grid_cols=batch.grid_cols,
        rotate=batch.rotate,
        range=batch.range,
        thresh=batch.thresh,
        invert=batch.invert,
        plate_rows=batch.plate_rows,
        plate_cols=batch.plate_cols,
        colony_radius=batch.colony_radius,
        max_smooth=batch.max_smooth
    )

    templates = {}
    for template in annotation["template"].drop_duplicates():
        try:
            templates[template] = read_greyscale(batch.image_dir / template)
        except (FileNotFoundError, OSError) as e:
            logger.error(f"Skipping {template}: {e}")

    crop, grid = calibrate_templates(
        templates, annotation, config,
        default_crop=default_crop,
        key_sizes=key_sizes_from_annotation(annotation)
    )

    crop.to_csv(crop_path, index=False)
    grid.to_csv(grid_path, index=False)
    logger.success(f"Crop calibration saved to: {crop_path}")
    logger.success(f"Grid calibration saved to: {grid_path}")

    if batch.save_plates:
        save_review_figures(templates, crop, grid, batch.image_dir / "calibration")


if __name__ == "__main__":
    main()
