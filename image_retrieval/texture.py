"""
Texture descriptors: Tamura and Gabor.

Tamura (18 values):
    [0]     coarseness (mean best window size / 32)
    [1]     contrast (sigma / kurtosis^0.25, scaled by 1/128)
    [2:18]  16-bin gradient directionality histogram

Gabor (60 values):
    (mean, std) of the response magnitude for each of 5 scales × 6
    orientations, scale-major.
"""

import os
import logging
from functools import lru_cache
from typing import List

import cv2
import numpy as np

from .preprocessing import prepare_image, to_gray

logger = logging.getLogger(__name__)

TAMURA_MAX_K = 5
TAMURA_DIRECTION_BINS = 16
TAMURA_DIM = 2 + TAMURA_DIRECTION_BINS
TAMURA_MAX_SIDE = 256
# Gradient magnitude below this does not vote for a direction
TAMURA_DIRECTION_THRESHOLD = float(os.environ.get("TAMURA_DIRECTION_THRESHOLD", "12"))

GABOR_SCALES = 5
GABOR_ORIENTATIONS = 6
GABOR_DIM = 2 * GABOR_SCALES * GABOR_ORIENTATIONS
GABOR_SIDE = int(os.environ.get("GABOR_SIDE", "128"))

MIN_TEXTURE_SIDE = 16


def extract_tamura(pixels: np.ndarray) -> np.ndarray:
    """
    Extract Tamura coarseness, contrast and directionality.

    Returns:
        Float32 vector of TAMURA_DIM values.
    """
    image = prepare_image(pixels, min_side=MIN_TEXTURE_SIDE,
                          max_side=TAMURA_MAX_SIDE)
    gray = to_gray(image).astype(np.float64)

    coarseness = _tamura_coarseness(gray)
    contrast = _tamura_contrast(gray)
    directionality = _tamura_directionality(gray)

    return np.concatenate([[coarseness, contrast], directionality]).astype(np.float32)


def _tamura_coarseness(gray: np.ndarray) -> float:
    """Mean of the per-pixel window size 2^k maximizing neighbour contrast."""
    energies = []
    for k in range(1, TAMURA_MAX_K + 1):
        window = 2 ** k
        half = window // 2
        average = cv2.blur(gray, (window, window))
        horizontal = np.abs(np.roll(average, -half, axis=1) - np.roll(average, half, axis=1))
        vertical = np.abs(np.roll(average, -half, axis=0) - np.roll(average, half, axis=0))
        energies.append(np.maximum(horizontal, vertical))

    best = np.argmax(np.stack(energies), axis=0)
    sizes = np.power(2.0, best + 1)
    return float(sizes.mean() / 2 ** TAMURA_MAX_K)


def _tamura_contrast(gray: np.ndarray) -> float:
    sigma = gray.std()
    if sigma == 0:
        return 0.0
    mu4 = np.mean((gray - gray.mean()) ** 4)
    kurtosis = mu4 / sigma ** 4
    return float(sigma / kurtosis ** 0.25 / 128.0)


def _tamura_directionality(gray: np.ndarray) -> np.ndarray:
    gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)
    magnitude = (np.abs(gx) + np.abs(gy)) / 2.0

    mask = magnitude >= TAMURA_DIRECTION_THRESHOLD
    if not np.any(mask):
        return np.zeros(TAMURA_DIRECTION_BINS, dtype=np.float64)

    angles = np.arctan2(gy[mask], gx[mask]) % np.pi
    hist, _ = np.histogram(angles, bins=TAMURA_DIRECTION_BINS, range=(0.0, np.pi))
    return hist.astype(np.float64) / mask.sum()


@lru_cache(maxsize=None)
def _gabor_bank() -> List[np.ndarray]:
    """Zero-mean Gabor kernels, scale-major, built once per process."""
    kernels = []
    for scale in range(GABOR_SCALES):
        wavelength = 4.0 * 2 ** (scale / 2.0)
        sigma = 0.56 * wavelength
        size = 2 * int(np.ceil(2.5 * sigma)) + 1
        for orientation in range(GABOR_ORIENTATIONS):
            theta = orientation * np.pi / GABOR_ORIENTATIONS
            kernel = cv2.getGaborKernel((size, size), sigma, theta, wavelength,
                                        0.5, 0, ktype=cv2.CV_32F)
            kernels.append(kernel - kernel.mean())
    return kernels


def extract_gabor(pixels: np.ndarray) -> np.ndarray:
    """
    Extract Gabor filter-bank energy statistics.

    The image is reduced to GABOR_SIDE on its longest side and scaled to
    [0, 1] before filtering, so the output does not depend on resolution.

    Returns:
        Float32 vector of GABOR_DIM values.
    """
    image = prepare_image(pixels, min_side=MIN_TEXTURE_SIDE, max_side=GABOR_SIDE)
    gray = to_gray(image).astype(np.float32) / 255.0

    features = []
    for kernel in _gabor_bank():
        response = np.abs(cv2.filter2D(gray, cv2.CV_32F, kernel))
        features.append(response.mean())
        features.append(response.std())

    return np.array(features, dtype=np.float32)
