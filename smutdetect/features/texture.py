from __future__ import annotations

import cv2
import numpy as np

from smutdetect.models import DecodedRaster

CANNY_LOW = 100
CANNY_HIGH = 200
# Edge density inside skin at which it stops looking like skin at all.
EDGE_SATURATION = 0.25
MIN_SKIN_FOR_TEXTURE = 0.02


def edge_map(raster: DecodedRaster) -> np.ndarray:
    """Boolean HxW Canny edge map of the luminance channel."""

    pixels = raster.pixels
    if raster.channels == 1:
        gray = np.ascontiguousarray(pixels[:, :, 0])
    else:
        gray = cv2.cvtColor(np.ascontiguousarray(pixels[:, :, :3]), cv2.COLOR_RGB2GRAY)
    return cv2.Canny(gray, CANNY_LOW, CANNY_HIGH) > 0


def edge_density(edges: np.ndarray) -> float:
    if edges.size == 0:
        return 0.0
    return float(np.count_nonzero(edges)) / float(edges.size)


def skin_smoothness(edges: np.ndarray, mask: np.ndarray) -> float:
    """1.0 for edge-free skin, falling to 0.0 as skin texture saturates."""

    skin_pixels = int(np.count_nonzero(mask))
    if mask.size == 0 or skin_pixels / float(mask.size) < MIN_SKIN_FOR_TEXTURE:
        return 0.0
    density_in_skin = float(np.count_nonzero(edges & mask)) / float(skin_pixels)
    return 1.0 - min(1.0, density_in_skin / EDGE_SATURATION)
