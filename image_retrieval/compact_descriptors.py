"""
Compact composite descriptors: CEDD and FCTH.

Both split the image into a grid of blocks, assign each block a colour from
a shared 24-colour palette and one or more texture classes, and accumulate a
(texture × colour) histogram. The histogram is quantized to 3 bits per bin
so descriptors stay small and compare well with the Tanimoto coefficient.

Palette (24 colours):
    0 black, 1 grey, 2 white, then 7 hues (red, orange, yellow, green,
    cyan, blue, magenta) × 3 shades (dark, normal, light).
"""

import os
import logging

import cv2
import numpy as np

from .preprocessing import prepare_image, to_gray

logger = logging.getLogger(__name__)

PALETTE_SIZE = 24
# Upper hue bounds in degrees; hues at or above 345 wrap back to red.
HUE_EDGES = np.array([15, 45, 75, 165, 195, 270, 345])

CEDD_TEXTURES = 6
CEDD_DIM = CEDD_TEXTURES * PALETTE_SIZE
CEDD_GRID = 40
# Strongest edge response (0-255 scale) for a block to count as an edge
CEDD_EDGE_THRESHOLD = float(os.environ.get("CEDD_EDGE_THRESHOLD", "14"))
CEDD_NONDIRECTIONAL_RATIO = 0.68
CEDD_DIRECTIONAL_RATIO = 0.98

FCTH_TEXTURES = 8
FCTH_DIM = FCTH_TEXTURES * PALETTE_SIZE
FCTH_GRID = 40
FCTH_ENERGY_THRESHOLD = float(os.environ.get("FCTH_ENERGY_THRESHOLD", "4.0"))

# Bin-share thresholds for the 3-bit quantization (levels 0..7).
QUANTIZATION_EDGES = np.array([0.001, 0.005, 0.015, 0.04, 0.08, 0.15, 0.3])

_SQRT2 = np.sqrt(2.0)


def palette_index(block_rgb: np.ndarray) -> np.ndarray:
    """Map an array of RGB block colours to palette indices 0..23."""
    hsv = cv2.cvtColor(block_rgb, cv2.COLOR_RGB2HSV).astype(np.float64)
    hue = hsv[:, :, 0] * 2.0
    saturation = hsv[:, :, 1] / 255.0
    value = hsv[:, :, 2] / 255.0

    hue_index = np.searchsorted(HUE_EDGES, hue, side="right") % 7
    shade = np.where(value < 0.4, 0, np.where(saturation < 0.45, 2, 1))
    chromatic = 3 + hue_index * 3 + shade

    grey_level = np.where(value < 0.7, 1, 2)
    index = np.where(saturation < 0.15, grey_level, chromatic)
    index = np.where(value < 0.2, 0, index)
    return index.astype(np.int64)


def quantize_histogram(hist: np.ndarray) -> np.ndarray:
    """Normalize to unit sum and map each bin share to a level in 0..7."""
    total = hist.sum()
    if total == 0:
        return np.zeros(hist.shape, dtype=np.float32)
    shares = hist / total
    levels = np.searchsorted(QUANTIZATION_EDGES, shares, side="right")
    return levels.astype(np.float32)


def _grid_views(image: np.ndarray, grid: int, cells: int):
    """
    Resize luminance to (grid*cells)² and colour to grid², both area-averaged.

    Returns:
        (luma, block_rgb) where luma is float64 and block_rgb is uint8 RGB.
    """
    side = grid * cells
    luma = cv2.resize(to_gray(image), (side, side),
                      interpolation=cv2.INTER_AREA).astype(np.float64)
    block_rgb = cv2.resize(image, (grid, grid), interpolation=cv2.INTER_AREA)
    return luma, block_rgb


def _quadrants(luma: np.ndarray):
    """Top-left, top-right, bottom-left, bottom-right of every 2x2 cell."""
    return luma[0::2, 0::2], luma[0::2, 1::2], luma[1::2, 0::2], luma[1::2, 1::2]


def extract_cedd(pixels: np.ndarray) -> np.ndarray:
    """
    Extract a Colour and Edge Directivity Descriptor.

    Each block's 2x2 sub-block means are run through the five MPEG-7 edge
    filters. A block whose strongest response is below CEDD_EDGE_THRESHOLD
    is a non-edge block. Otherwise it joins every class whose response,
    relative to the strongest, passes that class's ratio. Texture classes:
    0 non-edge, 1 non-directional, 2 horizontal, 3 vertical, 4 45°, 5 135°.

    Returns:
        Float32 vector of CEDD_DIM integer levels in 0..7.
    """
    image = prepare_image(pixels)
    grid = min(CEDD_GRID, min(image.shape[:2]) // 2)
    luma, block_rgb = _grid_views(image, grid, 2)
    a, b, c, d = _quadrants(luma)

    responses = np.stack([
        np.abs(2 * a - 2 * b - 2 * c + 2 * d),
        np.abs(a + b - c - d),
        np.abs(a - b + c - d),
        np.abs(_SQRT2 * a - _SQRT2 * d),
        np.abs(_SQRT2 * b - _SQRT2 * c),
    ], axis=-1).reshape(-1, 5)

    strongest = responses.max(axis=1)
    is_edge = strongest >= CEDD_EDGE_THRESHOLD
    relative = np.zeros_like(responses)
    relative[is_edge] = responses[is_edge] / strongest[is_edge, None]

    ratios = np.array([CEDD_NONDIRECTIONAL_RATIO] + [CEDD_DIRECTIONAL_RATIO] * 4)
    membership = np.zeros((len(responses), CEDD_TEXTURES), dtype=bool)
    membership[:, 0] = ~is_edge
    membership[:, 1:] = is_edge[:, None] & (relative >= ratios)

    colours = palette_index(block_rgb).ravel()
    hist = np.zeros((CEDD_TEXTURES, PALETTE_SIZE), dtype=np.float64)
    for texture in range(CEDD_TEXTURES):
        hist[texture] = np.bincount(colours[membership[:, texture]],
                                    minlength=PALETTE_SIZE)

    return quantize_histogram(hist.ravel())


def extract_fcth(pixels: np.ndarray) -> np.ndarray:
    """
    Extract a Colour and Texture Histogram descriptor.

    Each block of 4x4 luminance samples gets a one-level Haar transform.
    The RMS energies of the LH, HL and HH bands are each compared with
    FCTH_ENERGY_THRESHOLD, giving one of 8 texture classes
    (LH * 4 + HL * 2 + HH).

    Returns:
        Float32 vector of FCTH_DIM integer levels in 0..7.
    """
    image = prepare_image(pixels)
    grid = min(FCTH_GRID, min(image.shape[:2]) // 4)
    luma, block_rgb = _grid_views(image, grid, 4)
    a, b, c, d = _quadrants(luma)

    def band_energy(band: np.ndarray) -> np.ndarray:
        squared = (band ** 2).reshape(grid, 2, grid, 2).mean(axis=(1, 3))
        return np.sqrt(squared)

    lh = band_energy((a + b - c - d) / 2.0) > FCTH_ENERGY_THRESHOLD
    hl = band_energy((a - b + c - d) / 2.0) > FCTH_ENERGY_THRESHOLD
    hh = band_energy((a - b - c + d) / 2.0) > FCTH_ENERGY_THRESHOLD
    texture = lh.astype(np.int64) * 4 + hl.astype(np.int64) * 2 + hh.astype(np.int64)

    index = (texture * PALETTE_SIZE + palette_index(block_rgb)).ravel()
    hist = np.bincount(index, minlength=FCTH_DIM).astype(np.float64)
    return quantize_histogram(hist)
