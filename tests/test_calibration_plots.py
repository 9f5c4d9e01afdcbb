"""Smoke tests for the review figures."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd
from matplotlib.figure import Figure

from calibration_plots import plot_plate_grid, plot_rough_crop, save_figure
from plate_crop import PlatePosition


def test_plot_rough_crop_draws_every_position(tmp_path: Path) -> None:
    positions = [
        PlatePosition(1, 1, 1, 25, 25, 1, 50, 1, 50),
        PlatePosition(2, 1, 2, 75, 25, 51, 100, 1, 50),
    ]
    fig = plot_rough_crop(np.zeros((50, 100)), positions)

    assert isinstance(fig, Figure)
    assert len(fig.axes[0].patches) == 2

    path = tmp_path / "figures" / "rough.png"
    save_figure(fig, path)
    assert path.exists()


def test_plot_plate_grid_with_and_without_cells(tmp_path: Path) -> None:
    grid = pd.DataFrame({
        "colony_row": [1, 1], "colony_col": [1, 2],
        "x": [10, 30], "y": [10, 10],
        "left": [5, 25], "right": [15, 35], "top": [5, 5], "bottom": [15, 15],
    })
    fig = plot_plate_grid(np.zeros((20, 40)), grid, "scan-a.png", 1)
    assert len(fig.axes[0].patches) == 2
    assert "Position: 1" in fig.axes[0].texts[0].get_text()

    empty = plot_plate_grid(np.zeros((20, 40)), None, "scan-a.png", 2)
    assert len(empty.axes[0].patches) == 0

    save_figure(empty, tmp_path / "empty.png")
    assert (tmp_path / "empty.png").exists()
