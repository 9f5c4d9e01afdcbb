# %% =============================== Imports ===============================
from pathlib import Path

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from loguru import logger
from matplotlib.figure import Figure
from matplotlib.patches import Rectangle

from plate_crop import PlatePosition

# %% =============================== Functions ===============================
@logger.catch
def plot_rough_crop(image: np.ndarray, positions: list[PlatePosition], color: str = "red") -> Figure:
    """Draw rough crop rectangles and position labels over a template."""
    fig, ax = plt.subplots(figsize=(12, 8))
    ax.imshow(image, cmap="gray", vmin=0, vmax=1)
    for p in positions:
        ax.add_patch(Rectangle(
            (p.rough_left - 1.5, p.rough_top - 1.5),
            p.rough_right - p.rough_left + 1,
            p.rough_bottom - p.rough_top + 1,
            fill=False, edgecolor=color, linewidth=1
        ))
        ax.text(p.center_x - 1, p.center_y - 1, str(p.position_id), color=color, ha="center", va="center")
    ax.set_axis_off()
    return fig


@logger.catch
def plot_plate_grid(
    plate: np.ndarray,
    grid: pd.DataFrame | None,
    template: str,
    position_id: int,
    text_color: str = "red",
    grid_color: str = "blue"
) -> Figure:
    """Draw colony selection boxes over a fine-cropped plate, labelled with its template and position."""
    fig, ax = plt.subplots(figsize=(9, 6))
    ax.imshow(plate, cmap="gray", vmin=0, vmax=1)

    if grid is not None:
        for cell in grid.itertuples(index=False):
            ax.add_patch(Rectangle(
                (cell.left - 1.5, cell.top - 1.5),
                cell.right - cell.left, cell.bottom - cell.top,
                fill=False, edgecolor=grid_color, linewidth=0.5
            ))

    ax.text(
        plate.shape[1] / 2, plate.shape[0] / 2,
        f"{template}\nPosition: {position_id}",
        color=text_color, fontsize=14, ha="center", va="center"
    )
    ax.set_axis_off()
    return fig


@logger.catch
def save_figure(fig: Figure, path: Path | str, dpi: int = 100) -> None:
    """Save a matplotlib figure to file and close it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=dpi, bbox_inches="tight", transparent=True)
    plt.close(fig)
    logger.success(f"Figure saved: {path}")
