"""Skin-tone pixel classification.

A pixel counts as skin only when it passes both the RGB daylight rule
(Peer et al.) and a YCrCb chroma box.
"""

from __future__ import annotations

import cv2
import numpy as np

from smutdetect.models import DecodedRaster

# YCrCb box, OpenCV channel order (Y, Cr, Cb).
Y_MIN = 80
CR_RANGE = (135, 180)
CB_RANGE = (85, 135)


def skin_mask(raster: DecodedRaster) -> np.ndarray:
    """Boolean HxW mask of skin-coloured pixels."""

    rgb = _as_rgb(raster)
    channels = rgb.astype(np.int16)
    red, green, blue = channels[:, :, 0], channels[:, :, 1], channels[:, :, 2]
    spread = channels.max(axis=2) - channels.min(axis=2)

    rgb_rule = (
        (red > 95)
        & (green > 40)
        & (blue > 20)
        & (spread > 15)
        & (np.abs(red - green) > 15)
        & (red > green)
        & (red > blue)
    )

    ycrcb = cv2.cvtColor(rgb, cv2.COLOR_RGB2YCrCb)
    luma, cr, cb = ycrcb[:, :, 0], ycrcb[:, :, 1], ycrcb[:, :, 2]
    chroma_rule = (
        (luma > Y_MIN)
        & (cr >= CR_RANGE[0])
        & (cr <= CR_RANGE[1])
        & (cb >= CB_RANGE[0])
        & (cb <= CB_RANGE[1])
    )

    return rgb_rule & chroma_rule


def skin_ratio(mask: np.ndarray) -> float:
    if mask.size == 0:
        return 0.0
    return float(np.count_nonzero(mask)) / float(mask.size)


def largest_region_ratio(mask: np.ndarray) -> float:
    """Area of the largest 8-connected skin blob over the whole frame."""

    if mask.size == 0 or not mask.any():
        return 0.0
    count, _, stats, _ = cv2.connectedComponentsWithStats(mask.astype(np.uint8), connectivity=8)
    if count <= 1:
        return 0.0
    largest = int(stats[1:, cv2.CC_STAT_AREA].max())
    return float(largest) / float(mask.size)


def _as_rgb(raster: DecodedRaster) -> np.ndarray:
    pixels = raster.pixels
    if raster.channels == 1:
        return np.repeat(pixels, 3, axis=2)
    if raster.channels >= 3:
        return np.ascontiguousarray(pixels[:, :, :3])
    raise ValueError(f"Unsupported channel layout with {raster.channels} channels.")
