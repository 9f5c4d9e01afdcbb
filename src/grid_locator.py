"""
Colony grid location for a single cropped plate.

Detected objects are clustered along each axis into the expected number of
rows and columns, the resulting break points are repaired (see grid_repair),
objects are binned into grid cells, and missing or noisy cell positions are
smoothed along rows and columns before a selection box is drawn around each
expected colony.

Usage:
    config = CalibrationConfig(grid_rows=8, grid_cols=12)
    grid = locate_grid(plate, config)
    # DataFrame with colony_row, colony_col, x, y, left, right, top, bottom
"""

# %% ------------------------------------ Imports ------------------------------------ #
import numpy as np
import pandas as pd
from loguru import logger
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.interpolate import make_smoothing_spline

from colony_detection import detect_objects
from grid_repair import add_missing_steps, deal_with_edges, remove_out_of_step
from utils import CalibrationConfig, GridRepairDivergence

GRID_COLUMNS = ["colony_row", "colony_col", "x", "y", "left", "right", "top", "bottom"]

# %% ------------------------------------ Axis clustering ------------------------------------ #
def merge_close_centers(centers: np.ndarray, min_gap: float = 0.5) -> np.ndarray:
    """Average consecutive centers closer than `min_gap` median spacings."""
    if len(centers) < 3:
        return centers
    gaps = np.diff(centers)
    spacing = np.median(gaps)
    if spacing <= 0:
        return centers

    groups = np.concatenate([[0], np.cumsum(gaps >= spacing * min_gap)])
    return pd.Series(centers).groupby(groups).mean().to_numpy()


def cluster_centers(values: np.ndarray, n_clusters: int) -> np.ndarray:
    """Complete-linkage cluster 1-D coordinates and return sorted cluster medians."""
    values = np.asarray(values, dtype=float)
    if len(values) < 2 or n_clusters < 2:
        return np.array([np.median(values)]) if len(values) else np.array([])

    tree = linkage(values.reshape(-1, 1), method="complete")
    clusters = fcluster(tree, t=n_clusters, criterion="maxclust")
    centers = np.sort(pd.Series(values).groupby(clusters).median().to_numpy())
    # a missing row or column makes the cut split a real one in two
    return merge_close_centers(centers)


def midpoints(centers: np.ndarray) -> np.ndarray:
    """Break points halfway between consecutive centers."""
    centers = np.asarray(centers, dtype=float)
    return centers[:-1] + np.diff(centers) / 2


def cluster_axes(
    objects: pd.DataFrame,
    grid_rows: int,
    grid_cols: int
) -> tuple[np.ndarray, np.ndarray]:
    """Return interior (row_breaks, col_breaks) derived from clustered object centroids."""
    col_centers = cluster_centers(objects["centroid_x"].to_numpy(), grid_cols)
    row_centers = cluster_centers(objects["centroid_y"].to_numpy(), grid_rows)
    return midpoints(row_centers), midpoints(col_centers)


def repair_axis(
    breaks: np.ndarray,
    grid_dim: int,
    dim: int,
    config: CalibrationConfig
) -> np.ndarray:
    """Repair interior breaks into exactly `grid_dim + 1` strictly increasing breaks."""
    x = remove_out_of_step(breaks, tolerance=config.step_tolerance)
    x = add_missing_steps(x, gap_factor=config.gap_factor)
    if len(x) < 2:
        raise GridRepairDivergence(f"Only {len(x)} break points survived repair, need at least 2")

    x = deal_with_edges(x, n=len(x) - grid_dim - 1, dim=dim)
    if len(x) != grid_dim + 1 or np.any(np.diff(x) <= 0):
        raise GridRepairDivergence(f"Axis repaired to {len(x)} breaks, expected {grid_dim + 1}")
    return x


# %% ------------------------------------ Cell resolution ------------------------------------ #
def bin_objects(
    objects: pd.DataFrame,
    row_breaks: np.ndarray,
    col_breaks: np.ndarray,
    grid_rows: int,
    grid_cols: int,
    max_eccentricity: float = 0.8
) -> pd.DataFrame:
    """Assign colony-like objects to grid cells, keeping the largest object per cell."""
    objs = objects[objects["eccentricity"] < max_eccentricity].copy()
    objs["colony_row"] = np.searchsorted(row_breaks, objs["centroid_y"].to_numpy(), side="right")
    objs["colony_col"] = np.searchsorted(col_breaks, objs["centroid_x"].to_numpy(), side="right")
    objs = objs.query(
        f"colony_row >= 1 and colony_col >= 1 and colony_row <= {grid_rows} and colony_col <= {grid_cols}"
    )

    largest = objs.sort_values("area", ascending=False).drop_duplicates(["colony_row", "colony_col"])
    return (
        largest.rename(columns={"centroid_x": "x", "centroid_y": "y"})
        [["colony_row", "colony_col", "x", "y"]]
        .sort_values(["colony_row", "colony_col"])
        .reset_index(drop=True)
    )


def smooth_positions(
    values: np.ndarray,
    index: np.ndarray,
    fallback: float,
    max_smooth: float,
    min_cells: int = 10
) -> np.ndarray:
    """
    Smooth one row's y (or one column's x) positions along the grid index.

    Missing values, and observed values further than `max_smooth` pixels from
    the median of the observed ones, take the cluster center `fallback`. With
    at least `min_cells` observed values a smoothing spline, anchored at both
    ends to the median, replaces them. Any smoothed position further than
    `max_smooth` pixels from the median falls back to the cluster center.
    """
    values = np.asarray(values, dtype=float)
    index = np.asarray(index, dtype=float)
    observed = ~np.isnan(values)
    n_observed = int(np.sum(observed))
    if n_observed:
        # outliers never enter the fit
        outlier = observed & (np.abs(values - np.nanmedian(values)) > max_smooth)
        values = np.where(outlier, np.nan, values)
    filled = np.where(np.isnan(values), fallback, values)

    if n_observed >= min_cells and np.ptp(filled) > 0:
        center = np.median(filled)
        knots = np.concatenate([[0], index, [index.max() + 1]])
        targets = np.concatenate([[center], filled, [center]])
        predicted = np.round(make_smoothing_spline(knots, targets)(index))
        if np.all(np.isfinite(predicted)):
            filled = predicted

    deviation = np.abs(filled - np.median(filled))
    return np.where(deviation <= max_smooth, filled, fallback)


def resolve_cells(
    observed: pd.DataFrame,
    row_breaks: np.ndarray,
    col_breaks: np.ndarray,
    config: CalibrationConfig
) -> pd.DataFrame:
    """Complete the grid to every (row, col) cell and smooth cell positions."""
    row_centers = midpoints(row_breaks)
    col_centers = midpoints(col_breaks)

    full = pd.MultiIndex.from_product(
        [range(1, config.grid_rows + 1), range(1, config.grid_cols + 1)],
        names=["colony_row", "colony_col"]
    )
    grid = observed.set_index(["colony_row", "colony_col"]).reindex(full).reset_index()

    for row, cells in grid.groupby("colony_row"):
        cells = cells.sort_values("colony_col")
        grid.loc[cells.index, "y"] = smooth_positions(
            cells["y"].to_numpy(), cells["colony_col"].to_numpy(),
            fallback=row_centers[row - 1], max_smooth=config.max_smooth,
            min_cells=config.min_smooth_cells
        )

    for col, cells in grid.groupby("colony_col"):
        cells = cells.sort_values("colony_row")
        grid.loc[cells.index, "x"] = smooth_positions(
            cells["x"].to_numpy(), cells["colony_row"].to_numpy(),
            fallback=col_centers[col - 1], max_smooth=config.max_smooth,
            min_cells=config.min_smooth_cells
        )

    return grid


def selection_radius(row_breaks: np.ndarray, col_breaks: np.ndarray, colony_radius: float) -> int:
    """Box radius: a fraction of a quarter of mean row + column spacing, or fixed pixels if > 1."""
    if colony_radius <= 1:
        spacing = np.diff(row_breaks).mean() + np.diff(col_breaks).mean()
        radius = int(np.round(spacing / 4 * colony_radius))
    else:
        radius = int(np.round(colony_radius))
    return max(radius, 1)


def selection_boxes(grid: pd.DataFrame, radius: int, width: int, height: int) -> pd.DataFrame:
    """Add a selection box around each cell, clamped to the image."""
    boxes = grid.copy()
    boxes["x"] = np.round(boxes["x"]).astype(int)
    boxes["y"] = np.round(boxes["y"]).astype(int)
    boxes["left"] = np.clip(boxes["x"] - radius, 1, width - 1)
    boxes["right"] = np.clip(boxes["x"] + radius, boxes["left"] + 1, width)
    boxes["top"] = np.clip(boxes["y"] - radius, 1, height - 1)
    boxes["bottom"] = np.clip(boxes["y"] + radius, boxes["top"] + 1, height)
    return boxes[GRID_COLUMNS]


# %% ------------------------------------ Main ------------------------------------ #
def locate_grid(image: np.ndarray, config: CalibrationConfig) -> pd.DataFrame:
    """Locate the colony grid of a cropped, colony-bright plate image."""
    height, width = image.shape[:2]

    objects = detect_objects(image, config)
    row_breaks, col_breaks = cluster_axes(objects, config.grid_rows, config.grid_cols)

    col_breaks = repair_axis(col_breaks, config.grid_cols, dim=width, config=config)
    row_breaks = repair_axis(row_breaks, config.grid_rows, dim=height, config=config)

    observed = bin_objects(
        objects, row_breaks, col_breaks,
        config.grid_rows, config.grid_cols,
        max_eccentricity=config.max_eccentricity
    )
    logger.debug(f"{len(observed)} of {config.grid_rows * config.grid_cols} grid cells observed")

    grid = resolve_cells(observed, row_breaks, col_breaks, config)
    radius = selection_radius(row_breaks, col_breaks, config.colony_radius)
    return selection_boxes(grid, radius, width=width, height=height)
