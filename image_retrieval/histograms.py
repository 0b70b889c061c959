"""
Colour-distribution descriptors.

    ScalableColor         HSV histogram compressed with a Haar transform
    ColorHistogram        plain RGB histogram
    JointHistogram        local intensity rank × hue
    AutoColorCorrelogram  spatial colour co-occurrence at fixed distances

All functions take a decoded pixel buffer and return a fixed-length float32
vector. They raise ExtractionError (via prepare_image) on unusable input.
"""

import os
import logging

import cv2
import numpy as np

from .preprocessing import prepare_image, to_gray

logger = logging.getLogger(__name__)

# ScalableColor: 16 hue × 4 saturation × 4 value bins, Haar-transformed.
SCALABLE_COLOR_BINS = 256
SCALABLE_COLOR_COEFFS = int(os.environ.get("SCALABLE_COLOR_COEFFS", "64"))
SCALABLE_COLOR_DIM = SCALABLE_COLOR_COEFFS

# ColorHistogram: bins per RGB channel.
COLOR_HIST_BINS = int(os.environ.get("COLOR_HIST_BINS", "4"))
COLOR_HIST_DIM = COLOR_HIST_BINS ** 3

# JointHistogram: 9 rank levels (0..8 darker neighbours) × 8 hue bins.
JOINT_RANK_LEVELS = 9
JOINT_HUE_BINS = 8
JOINT_HIST_DIM = JOINT_RANK_LEVELS * JOINT_HUE_BINS

# AutoColorCorrelogram: 64 quantized colours at chessboard distances.
CORRELOGRAM_COLORS = 64
CORRELOGRAM_DISTANCES = (1, 3, 5, 7)
CORRELOGRAM_DIM = CORRELOGRAM_COLORS * len(CORRELOGRAM_DISTANCES)
CORRELOGRAM_MAX_SIDE = 256

_NEIGHBOUR_OFFSETS = [(dy, dx) for dy in (-1, 0, 1) for dx in (-1, 0, 1)
                      if (dy, dx) != (0, 0)]


def extract_scalable_color(pixels: np.ndarray) -> np.ndarray:
    """
    Extract a ScalableColor descriptor.

    Process:
        1. Build a 256-bin HSV histogram (16H × 4S × 4V), sum-normalized
        2. Apply a full 1-D Haar transform (pairwise sums / differences)
        3. Keep the first SCALABLE_COLOR_COEFFS coefficients
        4. Quantize with a square-root law to integers in [-255, 255]

    Returns:
        Float32 vector of SCALABLE_COLOR_DIM integer-valued coefficients.
    """
    image = prepare_image(pixels)
    hsv = cv2.cvtColor(image, cv2.COLOR_RGB2HSV)

    h_bin = hsv[:, :, 0].astype(np.int32) * 16 // 180
    s_bin = hsv[:, :, 1].astype(np.int32) >> 6
    v_bin = hsv[:, :, 2].astype(np.int32) >> 6
    index = (h_bin * 16 + s_bin * 4 + v_bin).ravel()

    hist = np.bincount(index, minlength=SCALABLE_COLOR_BINS).astype(np.float64)
    hist /= hist.sum()

    coeffs = _haar_transform(hist)[:SCALABLE_COLOR_COEFFS]
    quantized = np.rint(np.sign(coeffs) * np.sqrt(np.abs(coeffs)) * 255)
    return quantized.astype(np.float32)


def _haar_transform(values: np.ndarray) -> np.ndarray:
    """Full unnormalized Haar decomposition, coarsest coefficients first."""
    coeffs = values.astype(np.float64).copy()
    length = coeffs.size
    while length > 1:
        half = length // 2
        pairs = coeffs[:length].reshape(half, 2)
        sums = pairs[:, 0] + pairs[:, 1]
        diffs = pairs[:, 0] - pairs[:, 1]
        coeffs[:half] = sums
        coeffs[half:length] = diffs
        length = half
    return coeffs


def extract_color_histogram(pixels: np.ndarray) -> np.ndarray:
    """
    Extract a sum-normalized RGB histogram with COLOR_HIST_BINS per channel.

    Returns:
        Float32 vector of COLOR_HIST_DIM bins summing to 1.
    """
    image = prepare_image(pixels)
    bins = COLOR_HIST_BINS
    hist = cv2.calcHist([image], [0, 1, 2], None,
                        [bins, bins, bins], [0, 256, 0, 256, 0, 256])
    hist = hist.flatten().astype(np.float64)
    hist /= hist.sum()
    return hist.astype(np.float32)


def extract_joint_histogram(pixels: np.ndarray) -> np.ndarray:
    """
    Extract a joint histogram of local intensity rank and hue.

    The rank of a pixel is the number of its 8 neighbours that are strictly
    darker, so flat regions land in rank 0 and local peaks in rank 8.

    Returns:
        Float32 vector of JOINT_HIST_DIM bins summing to 1.
    """
    image = prepare_image(pixels)
    gray = to_gray(image).astype(np.int16)
    h, w = gray.shape

    padded = cv2.copyMakeBorder(gray, 1, 1, 1, 1, cv2.BORDER_REFLECT_101)
    rank = np.zeros((h, w), dtype=np.int32)
    for dy, dx in _NEIGHBOUR_OFFSETS:
        neighbour = padded[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
        rank += neighbour < gray

    hue = cv2.cvtColor(image, cv2.COLOR_RGB2HSV)[:, :, 0].astype(np.int32)
    hue_bin = hue * JOINT_HUE_BINS // 180

    index = (rank * JOINT_HUE_BINS + hue_bin).ravel()
    hist = np.bincount(index, minlength=JOINT_HIST_DIM).astype(np.float64)
    hist /= hist.sum()
    return hist.astype(np.float32)


def quantize_rgb64(image: np.ndarray) -> np.ndarray:
    """Map each RGB pixel to one of 64 colours (2 bits per channel)."""
    rgb = image.astype(np.int32) >> 6
    return rgb[:, :, 0] * 16 + rgb[:, :, 1] * 4 + rgb[:, :, 2]


def extract_auto_color_correlogram(pixels: np.ndarray) -> np.ndarray:
    """
    Extract an auto colour correlogram.

    For every quantized colour c and distance d, the entry is the
    probability that a pixel at chessboard distance d from a pixel of
    colour c also has colour c. All 8d offsets on the square ring of
    radius d are sampled.

    Returns:
        Float32 vector of CORRELOGRAM_DIM values in [0, 1], laid out
        distance-major (all colours for d=1, then d=3, ...).
    """
    image = prepare_image(pixels, min_side=2 * max(CORRELOGRAM_DISTANCES) + 2,
                          max_side=CORRELOGRAM_MAX_SIDE)
    colours = quantize_rgb64(image)
    h, w = colours.shape

    table = np.zeros((len(CORRELOGRAM_DISTANCES), CORRELOGRAM_COLORS),
                     dtype=np.float64)

    for row, distance in enumerate(CORRELOGRAM_DISTANCES):
        matches = np.zeros(CORRELOGRAM_COLORS, dtype=np.int64)
        totals = np.zeros(CORRELOGRAM_COLORS, dtype=np.int64)
        for dy, dx in _ring_offsets(distance):
            y0, y1 = max(0, -dy), h - max(0, dy)
            x0, x1 = max(0, -dx), w - max(0, dx)
            src = colours[y0:y1, x0:x1]
            dst = colours[y0 + dy:y1 + dy, x0 + dx:x1 + dx]
            totals += np.bincount(src.ravel(), minlength=CORRELOGRAM_COLORS)
            matches += np.bincount(src[src == dst], minlength=CORRELOGRAM_COLORS)

        present = totals > 0
        table[row, present] = matches[present] / totals[present]

    return table.ravel().astype(np.float32)


def _ring_offsets(distance: int):
    """All (dy, dx) offsets at exactly the given chessboard distance."""
    return [(dy, dx)
            for dy in range(-distance, distance + 1)
            for dx in range(-distance, distance + 1)
            if max(abs(dy), abs(dx)) == distance]
