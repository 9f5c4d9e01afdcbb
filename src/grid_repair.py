"""
Break-point repair for one axis of a colony grid.

Clustering object centroids gives a rough set of grid lines (break points)
per axis. Merged or split colonies shift some of them off pitch, empty rows
or columns leave gaps, and the two outer boundaries are never observed.
The three corrections below are applied in order:

    breaks = remove_out_of_step(breaks)
    breaks = add_missing_steps(breaks)
    breaks = deal_with_edges(breaks, n=len(breaks) - grid_dim - 1, dim=image_side)

Each takes and returns a 1-D float array and never mutates its input.
"""

# %% ------------------------------------ Imports ------------------------------------ #
import numpy as np
from loguru import logger

from utils import GridRepairDivergence

# %% ------------------------------------ Functions ------------------------------------ #
def remove_out_of_step(breaks: np.ndarray, tolerance: float = 0.2) -> np.ndarray:
    """Drop breaks whose spacing is not a whole number of median pitches, until none remain."""
    x = np.asarray(breaks, dtype=float)
    while len(x) > 2:
        steps = np.diff(x)
        pitch = np.median(steps)
        if pitch <= 0:
            break
        step = steps / pitch
        off_pitch = (np.abs(step - np.round(step)) > tolerance) | (np.round(step) < 1)
        remove = np.flatnonzero(off_pitch) + 1
        if len(remove) == 0:
            break
        logger.debug(f"Removing {len(remove)} out-of-step breaks at {np.round(x[remove], 1).tolist()}")
        x = np.delete(x, remove)
    return x


def add_missing_steps(breaks: np.ndarray, gap_factor: float = 1.25) -> np.ndarray:
    """Fill gaps wider than `gap_factor` median pitches with breaks at the median pitch."""
    x = np.asarray(breaks, dtype=float)
    if len(x) < 2:
        return x

    steps = np.diff(x)
    width = np.median(steps)
    if width <= 0:
        return x

    added = []
    for i in np.flatnonzero(steps > width * gap_factor):
        start, stop = x[i], x[i + 1]
        first = start + width
        last = max(first, stop - width * 0.6)
        n_new = int(np.floor((last - first) / width + 1e-9)) + 1
        added.extend(first + width * np.arange(n_new))

    if added:
        logger.debug(f"Adding {len(added)} missing breaks")
    return np.sort(np.concatenate([x, added]))


def deal_with_edges(breaks: np.ndarray, n: int, dim: float) -> np.ndarray:
    """
    Trim or extend the outer breaks until `n` reaches zero.

    n > 0: drop whichever outermost break has the spacing furthest from the
    mean spacing, n times.
    n < 0: add a break one mean pitch beyond the extreme on the side further
    from the image edge (bounded by 1 and `dim`), -n times.
    """
    x = np.asarray(breaks, dtype=float)
    n = int(n)

    while n > 0:
        if len(x) < 3:
            raise GridRepairDivergence(f"Cannot trim {n} more breaks from an axis of {len(x)}")
        steps = np.diff(x)
        out_of_step = np.abs(steps.mean() - steps)
        x = x[1:] if out_of_step[0] > out_of_step[-1] else x[:-1]
        n -= 1

    while n < 0:
        if len(x) < 2:
            raise GridRepairDivergence(f"Cannot extend an axis of {len(x)} breaks")
        pitch = np.diff(x).mean()
        if (x[0] - 1) > (dim - x[-1]):
            new = max(1.0, x[0] - pitch)
            if new >= x[0]:
                raise GridRepairDivergence(f"No room to add a break before {x[0]:.1f}")
            x = np.concatenate([[new], x])
        else:
            new = min(float(dim), x[-1] + pitch)
            if new <= x[-1]:
                raise GridRepairDivergence(f"No room to add a break after {x[-1]:.1f} (dim={dim})")
            x = np.concatenate([x, [new]])
        n += 1

    return x
