"""
Image decoding and pixel-buffer preparation for feature extraction.

Every extractor goes through prepare_image() so that all of them see the
same normalized input: a uint8 RGB array no larger than MAX_EXTRACTION_SIDE
on its longest side, unless that would shrink its shorter side below the
extractor's minimum. Malformed or undersized buffers raise ExtractionError
rather than being silently patched, so the caller can skip that kind.
"""

import os
import logging

import cv2
import numpy as np

from .errors import DecodeError, ExtractionError

logger = logging.getLogger(__name__)

# Longest side used for extraction. Larger inputs are area-downsampled first,
# which bounds extraction time on very large photographs.
MAX_EXTRACTION_SIDE = int(os.environ.get("CBIR_MAX_SIDE", "512"))


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8 format."""
    if image_np.dtype != np.uint8:
        if np.issubdtype(image_np.dtype, np.floating) and image_np.max() <= 1.0:
            image_np = np.clip(image_np * 255, 0, 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)
    return image_np


def to_rgb(image_np: np.ndarray) -> np.ndarray:
    """Convert grayscale / single-channel / RGBA buffers to 3-channel RGB."""
    if image_np.ndim == 2:
        return cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    channels = image_np.shape[2]
    if channels == 1:
        return cv2.cvtColor(image_np[:, :, 0], cv2.COLOR_GRAY2RGB)
    if channels == 4:
        return cv2.cvtColor(image_np, cv2.COLOR_RGBA2RGB)
    return image_np


def resize_max_side(image_np: np.ndarray, max_side: int,
                    min_side: int = 1) -> np.ndarray:
    """
    Area-downsample so the longest side is at most max_side.

    The shorter side never drops below min_side, so very elongated images
    keep enough rows (or columns) for the calling extractor.
    """
    h, w = image_np.shape[:2]
    scale = max(max_side / max(h, w), min_side / min(h, w))
    if scale >= 1.0:
        return image_np
    size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    return cv2.resize(image_np, size, interpolation=cv2.INTER_AREA)


def prepare_image(pixels, min_side: int = 8,
                  max_side: int = None) -> np.ndarray:
    """
    Validate a decoded pixel buffer and normalize it for extraction.

    Args:
        pixels: Decoded image: HxW, HxWx1, HxWx3 (RGB) or HxWx4 (RGBA),
                uint8 or float in [0, 1].
        min_side: Smallest height/width the calling extractor can sample.
        max_side: Downsampling bound (defaults to MAX_EXTRACTION_SIDE).

    Returns:
        Contiguous uint8 RGB array.

    Raises:
        ExtractionError: If the buffer is not an image or is too small.
    """
    if not isinstance(pixels, np.ndarray):
        raise ExtractionError(f"Expected a numpy array, got {type(pixels).__name__}")
    if pixels.ndim not in (2, 3) or (pixels.ndim == 3 and pixels.shape[2] not in (1, 3, 4)):
        raise ExtractionError(f"Unsupported pixel buffer shape {pixels.shape}")
    if pixels.size == 0:
        raise ExtractionError("Empty pixel buffer")
    if not (np.issubdtype(pixels.dtype, np.integer)
            or np.issubdtype(pixels.dtype, np.floating)):
        raise ExtractionError(f"Unsupported pixel dtype {pixels.dtype}")
    if not np.all(np.isfinite(pixels)):
        raise ExtractionError("Pixel buffer contains NaN or inf")

    h, w = pixels.shape[:2]
    if min(h, w) < min_side:
        raise ExtractionError(
            f"Image {w}x{h} is smaller than the {min_side}px minimum"
        )

    image = to_rgb(normalize_image(pixels))
    image = resize_max_side(image, max_side or MAX_EXTRACTION_SIDE, min_side)
    return np.ascontiguousarray(image)


def to_gray(image_rgb: np.ndarray) -> np.ndarray:
    return cv2.cvtColor(image_rgb, cv2.COLOR_RGB2GRAY)


def decode_image(path) -> np.ndarray:
    """
    Read an image file into an RGB uint8 array.

    Raises:
        DecodeError: If the file is missing, unreadable or not an image.
    """
    path = os.fspath(path)
    if not os.path.isfile(path):
        raise DecodeError(path, "file not found")

    # imdecode on the raw bytes handles non-ASCII paths, unlike imread
    try:
        raw = np.fromfile(path, dtype=np.uint8)
    except OSError as e:
        raise DecodeError(path, str(e)) from e
    if raw.size == 0:
        raise DecodeError(path, "empty file")

    image = cv2.imdecode(raw, cv2.IMREAD_COLOR)
    if image is None:
        raise DecodeError(path, "not a decodable image")

    logger.debug(f"Decoded {path}: {image.shape[1]}x{image.shape[0]}")
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
