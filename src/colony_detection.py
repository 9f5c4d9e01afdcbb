"""
Colony object detection on a cropped, rotation-corrected plate.

Pipeline: contrast normalisation -> Gaussian blur -> Otsu threshold ->
distance transform -> watershed. The blur merges the sub-structure of spotted
colonies into single blobs and the watershed splits touching blobs apart.

Usage:
    objects = detect_objects(plate, config)
    # DataFrame with label, area, centroid_x, centroid_y, eccentricity
"""

# %% ------------------------------------ Imports ------------------------------------ #
import numpy as np
import pandas as pd
from loguru import logger
from scipy import ndimage
from skimage import exposure, measure
from skimage.feature import peak_local_max
from skimage.filters import gaussian, threshold_otsu
from skimage.segmentation import watershed

from utils import CalibrationConfig, InsufficientObjects

OBJECT_COLUMNS = ["label", "area", "centroid_x", "centroid_y", "eccentricity"]

# %% ------------------------------------ Functions ------------------------------------ #
def binarize_plate(
    image: np.ndarray,
    normalize_range: tuple[float, float] = (0.1, 0.8),
    sigma: float = 6
) -> np.ndarray:
    """Normalise, blur and threshold a colony-bright plate image with Otsu's method."""
    rescaled = exposure.rescale_intensity(
        image.astype(float), in_range=normalize_range, out_range=(0.0, 1.0)
    )
    blurred = gaussian(rescaled, sigma=sigma, preserve_range=True)

    # Otsu needs at least two grey levels
    if np.ptp(blurred) == 0:
        return np.zeros(image.shape, dtype=bool)

    return blurred > threshold_otsu(blurred)


def watershed_segmentation(
    binary_image: np.ndarray,
    min_distance: int = 5
) -> np.ndarray:
    """Label touching blobs separately by flooding the distance map from its peaks."""
    distance = ndimage.distance_transform_edt(binary_image)

    local_max = peak_local_max(
        distance,
        min_distance=min_distance,
        labels=binary_image.astype(int),
        exclude_border=False
    )

    markers = np.zeros(binary_image.shape, dtype=int)
    markers[tuple(local_max.T)] = np.arange(1, len(local_max) + 1)

    return watershed(-distance, markers, mask=binary_image)


def object_features(labels: np.ndarray) -> pd.DataFrame:
    """Tabulate area, 1-based centroid and eccentricity of every labelled object."""
    if labels.max() == 0:
        return pd.DataFrame(columns=OBJECT_COLUMNS)

    features = pd.DataFrame(
        measure.regionprops_table(labels, properties=("label", "area", "centroid", "eccentricity"))
    )
    # note the order of centroid-1 and centroid-0 for x and y
    features["centroid_x"] = features["centroid-1"] + 1
    features["centroid_y"] = features["centroid-0"] + 1
    return features[OBJECT_COLUMNS].reset_index(drop=True)


def detect_objects(image: np.ndarray, config: CalibrationConfig) -> pd.DataFrame:
    """Segment a colony-bright plate image into objects, raising if the grid cannot be covered."""
    binary = binarize_plate(image, normalize_range=config.normalize_range, sigma=config.blur_sigma)
    labels = watershed_segmentation(binary, min_distance=config.watershed_min_distance)
    objects = object_features(labels)

    needed = max(config.grid_rows, config.grid_cols)
    if len(objects) < needed:
        raise InsufficientObjects(
            f"Detected {len(objects)} objects, need at least {needed} "
            f"for a {config.grid_rows}x{config.grid_cols} grid"
        )

    logger.debug(f"Detected {len(objects)} objects")
    return objects
