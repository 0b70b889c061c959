"""
Frequency-domain descriptors built on the 8x8 DCT.

ColorLayout summarizes the spatial arrangement of colour with the low
frequencies of an 8x8 thumbnail. JpegCoefficientHistogram summarizes
block-level luminance structure the way a JPEG encoder sees it: per 8x8
block DCT coefficients, histogrammed per zig-zag position.
"""

import logging

import cv2
import numpy as np

from .preprocessing import prepare_image, to_gray

logger = logging.getLogger(__name__)

BLOCK = 8

# ColorLayout coefficient counts per channel (Y, Cb, Cr).
COLOR_LAYOUT_Y_COEFFS = 21
COLOR_LAYOUT_C_COEFFS = 6
COLOR_LAYOUT_DIM = COLOR_LAYOUT_Y_COEFFS + 2 * COLOR_LAYOUT_C_COEFFS

# JpegCoefficientHistogram: first 8 zig-zag positions × 16 bins each.
JPEG_COEFFS = 8
JPEG_BINS = 16
JPEG_COEFF_DIM = JPEG_COEFFS * JPEG_BINS
JPEG_DC_RANGE = 1024.0
JPEG_AC_RANGE = 256.0


def _zigzag_order(n: int = BLOCK) -> np.ndarray:
    """Flat indices of an n×n block in JPEG zig-zag order."""
    cells = [(r, c) for r in range(n) for c in range(n)]
    cells.sort(key=lambda rc: (rc[0] + rc[1],
                               rc[0] if (rc[0] + rc[1]) % 2 else -rc[0]))
    return np.array([r * n + c for r, c in cells], dtype=np.int64)


def _dct_matrix(n: int = BLOCK) -> np.ndarray:
    """Orthonormal DCT-II basis, so that coefficients = D @ block @ D.T."""
    k = np.arange(n).reshape(-1, 1)
    x = np.arange(n).reshape(1, -1)
    basis = np.cos(np.pi * (2 * x + 1) * k / (2 * n))
    basis[0, :] *= np.sqrt(1.0 / n)
    basis[1:, :] *= np.sqrt(2.0 / n)
    return basis


ZIGZAG = _zigzag_order()
DCT_MATRIX = _dct_matrix()


def extract_color_layout(pixels: np.ndarray) -> np.ndarray:
    """
    Extract a ColorLayout descriptor.

    Process:
        1. Area-resize to an 8×8 grid of representative colours
        2. Convert to YCrCb
        3. 2-D DCT on each channel, read out in zig-zag order
        4. Keep 21 luma and 6 + 6 chroma coefficients, quantized by 1/8

    Returns:
        Float32 vector laid out as [Y(21), Cb(6), Cr(6)].
    """
    image = prepare_image(pixels)
    grid = cv2.resize(image, (BLOCK, BLOCK), interpolation=cv2.INTER_AREA)
    ycrcb = cv2.cvtColor(grid, cv2.COLOR_RGB2YCrCb).astype(np.float32)

    def coefficients(channel: int, count: int) -> np.ndarray:
        dct = cv2.dct(np.ascontiguousarray(ycrcb[:, :, channel]))
        return dct.flatten()[ZIGZAG[:count]]

    y = coefficients(0, COLOR_LAYOUT_Y_COEFFS)
    cb = coefficients(2, COLOR_LAYOUT_C_COEFFS)
    cr = coefficients(1, COLOR_LAYOUT_C_COEFFS)

    descriptor = np.rint(np.concatenate([y, cb, cr]) / 8.0)
    return descriptor.astype(np.float32)


def extract_jpeg_coefficient_histogram(pixels: np.ndarray) -> np.ndarray:
    """
    Extract a histogram of block DCT coefficients.

    The luminance image is level-shifted by -128 and cut into 8×8 blocks
    (partial edge blocks are dropped). For each of the first JPEG_COEFFS
    zig-zag positions a JPEG_BINS histogram over the blocks is computed.
    The DC term spans ±JPEG_DC_RANGE; AC terms are clipped to ±JPEG_AC_RANGE.

    Returns:
        Float32 vector of JPEG_COEFF_DIM values; each 16-bin group sums to 1.
    """
    image = prepare_image(pixels, min_side=BLOCK)
    gray = to_gray(image).astype(np.float64) - 128.0

    rows, cols = gray.shape[0] // BLOCK, gray.shape[1] // BLOCK
    blocks = (gray[:rows * BLOCK, :cols * BLOCK]
              .reshape(rows, BLOCK, cols, BLOCK)
              .transpose(0, 2, 1, 3)
              .reshape(-1, BLOCK, BLOCK))

    coeffs = np.einsum("ij,njk,lk->nil", DCT_MATRIX, blocks, DCT_MATRIX)
    coeffs = coeffs.reshape(len(blocks), -1)[:, ZIGZAG[:JPEG_COEFFS]]

    ranges = np.full(JPEG_COEFFS, JPEG_AC_RANGE)
    ranges[0] = JPEG_DC_RANGE
    scaled = (coeffs + ranges) / (2 * ranges) * JPEG_BINS
    bins = np.clip(np.floor(scaled), 0, JPEG_BINS - 1).astype(np.int64)

    hist = np.zeros((JPEG_COEFFS, JPEG_BINS), dtype=np.float64)
    for position in range(JPEG_COEFFS):
        hist[position] = np.bincount(bins[:, position], minlength=JPEG_BINS)
    hist /= len(blocks)

    return hist.ravel().astype(np.float32)
