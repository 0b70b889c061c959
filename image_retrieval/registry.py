"""
Fixed table of feature kinds: how to extract each one and how to compare it.

Adding a kind means adding a FeatureKind member and one row here; the
extractor chain, index store, searcher and builder only ever go through
this table.
"""

import logging
from typing import Callable, Dict, NamedTuple

import cv2
import numpy as np

from . import compact_descriptors, dct_descriptors, histograms, scoring, texture
from .errors import ExtractionError
from .model import FeatureKind, FeatureVector

logger = logging.getLogger(__name__)


class FeatureSpec(NamedTuple):
    kind: FeatureKind
    dim: int
    extract: Callable[[np.ndarray], np.ndarray]
    distance: Callable[[np.ndarray, np.ndarray], float]
    distance_batch: Callable[[np.ndarray, np.ndarray], np.ndarray]


FEATURES: Dict[FeatureKind, FeatureSpec] = {
    spec.kind: spec for spec in (
        FeatureSpec(FeatureKind.SCALABLE_COLOR,
                    histograms.SCALABLE_COLOR_DIM,
                    histograms.extract_scalable_color,
                    scoring.l1_distance, scoring.l1_distance_batch),
        FeatureSpec(FeatureKind.JPEG_COEFFICIENT_HISTOGRAM,
                    dct_descriptors.JPEG_COEFF_DIM,
                    dct_descriptors.extract_jpeg_coefficient_histogram,
                    scoring.l1_distance, scoring.l1_distance_batch),
        FeatureSpec(FeatureKind.COLOR_LAYOUT,
                    dct_descriptors.COLOR_LAYOUT_DIM,
                    dct_descriptors.extract_color_layout,
                    scoring.color_layout_distance, scoring.color_layout_distance_batch),
        FeatureSpec(FeatureKind.COLOR_HISTOGRAM,
                    histograms.COLOR_HIST_DIM,
                    histograms.extract_color_histogram,
                    scoring.l2_distance, scoring.l2_distance_batch),
        FeatureSpec(FeatureKind.TAMURA,
                    texture.TAMURA_DIM,
                    texture.extract_tamura,
                    scoring.l2_distance, scoring.l2_distance_batch),
        FeatureSpec(FeatureKind.AUTO_COLOR_CORRELOGRAM,
                    histograms.CORRELOGRAM_DIM,
                    histograms.extract_auto_color_correlogram,
                    scoring.correlogram_distance, scoring.correlogram_distance_batch),
        FeatureSpec(FeatureKind.CEDD,
                    compact_descriptors.CEDD_DIM,
                    compact_descriptors.extract_cedd,
                    scoring.tanimoto_distance, scoring.tanimoto_distance_batch),
        FeatureSpec(FeatureKind.FCTH,
                    compact_descriptors.FCTH_DIM,
                    compact_descriptors.extract_fcth,
                    scoring.tanimoto_distance, scoring.tanimoto_distance_batch),
        FeatureSpec(FeatureKind.GABOR,
                    texture.GABOR_DIM,
                    texture.extract_gabor,
                    scoring.l2_distance, scoring.l2_distance_batch),
        FeatureSpec(FeatureKind.JOINT_HISTOGRAM,
                    histograms.JOINT_HIST_DIM,
                    histograms.extract_joint_histogram,
                    scoring.jensen_shannon_distance, scoring.jensen_shannon_distance_batch),
    )
}


def get_spec(kind: FeatureKind) -> FeatureSpec:
    return FEATURES[FeatureKind.parse(kind)]


def extract_feature(kind: FeatureKind, pixels: np.ndarray) -> FeatureVector:
    """
    Run one kind's extractor and validate its output.

    Raises:
        ExtractionError: If the buffer is unusable for this kind, the
            extractor fails numerically, or the payload has the wrong
            length or non-finite values.
    """
    spec = get_spec(kind)
    try:
        payload = spec.extract(pixels)
    except ExtractionError:
        raise
    except (cv2.error, ValueError, ArithmeticError) as e:
        raise ExtractionError(f"{spec.kind.label} extraction failed: {e}") from e

    payload = np.asarray(payload, dtype=np.float32).reshape(-1)
    if payload.shape[0] != spec.dim:
        raise ExtractionError(
            f"{spec.kind.label} produced {payload.shape[0]} values, expected {spec.dim}"
        )
    if not np.all(np.isfinite(payload)):
        raise ExtractionError(f"{spec.kind.label} produced non-finite values")

    return FeatureVector(spec.kind, payload)
