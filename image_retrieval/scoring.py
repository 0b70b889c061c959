"""
Distance metrics and top-k selection.

Each feature kind is compared with its own metric. Every metric comes in two
forms: a pairwise distance(a, b) -> float and a batched
distance_batch(query, matrix) -> ndarray used by the searcher's linear scan.

All metrics are non-negative, symmetric and exactly zero for identical
inputs. Lower is always better; scores from different kinds are not
comparable with each other.

    l1                  ScalableColor, JpegCoefficientHistogram
    l2 (FAISS flat)     ColorHistogram, Tamura, Gabor
    color_layout        ColorLayout (MPEG-7 weighted per-channel)
    correlogram         AutoColorCorrelogram (normalized L1)
    jensen_shannon      JointHistogram
    tanimoto            CEDD, FCTH
"""

import heapq
import logging
from typing import List, Sequence, Tuple

import faiss
import numpy as np

from .dct_descriptors import COLOR_LAYOUT_C_COEFFS, COLOR_LAYOUT_Y_COEFFS

logger = logging.getLogger(__name__)

# MPEG-7 ColorLayout weights: low frequencies count more.
_Y_WEIGHTS = np.array([2, 2, 2] + [1] * (COLOR_LAYOUT_Y_COEFFS - 3), dtype=np.float64)
_CB_WEIGHTS = np.array([2] + [1] * (COLOR_LAYOUT_C_COEFFS - 1), dtype=np.float64)
_CR_WEIGHTS = np.array([4, 2, 2] + [1] * (COLOR_LAYOUT_C_COEFFS - 3), dtype=np.float64)
_Y_END = COLOR_LAYOUT_Y_COEFFS
_CB_END = _Y_END + COLOR_LAYOUT_C_COEFFS


def _as_vector(values) -> np.ndarray:
    return np.asarray(values, dtype=np.float64).reshape(-1)


def _as_matrix(values) -> np.ndarray:
    matrix = np.asarray(values, dtype=np.float64)
    return matrix.reshape(len(matrix), -1)


# --- L1 -------------------------------------------------------------------

def l1_distance(a, b) -> float:
    return float(np.abs(_as_vector(a) - _as_vector(b)).sum())


def l1_distance_batch(query, matrix) -> np.ndarray:
    return np.abs(_as_matrix(matrix) - _as_vector(query)).sum(axis=1)


# --- L2 -------------------------------------------------------------------

def l2_distance(a, b) -> float:
    diff = _as_vector(a) - _as_vector(b)
    return float(np.sqrt(np.dot(diff, diff)))


def l2_distance_batch(query, matrix) -> np.ndarray:
    """
    Exact Euclidean distance from query to every row, via a flat FAISS scan.

    A fresh IndexFlatL2 is built per call: the scan is exhaustive and the
    index never outlives the query, so there is no approximation and no
    cached state shared between concurrent searches.
    """
    vectors = np.ascontiguousarray(matrix, dtype=np.float32)
    if len(vectors) == 0:
        return np.zeros(0, dtype=np.float64)
    vectors = vectors.reshape(len(vectors), -1)

    index = faiss.IndexFlatL2(vectors.shape[1])
    index.add(vectors)
    query = np.ascontiguousarray(query, dtype=np.float32).reshape(1, -1)
    distances, indices = index.search(query, len(vectors))

    scores = np.empty(len(vectors), dtype=np.float64)
    scores[indices[0]] = np.sqrt(np.maximum(distances[0].astype(np.float64), 0.0))
    return scores


# --- ColorLayout ----------------------------------------------------------

def color_layout_distance(a, b) -> float:
    return float(color_layout_distance_batch(a, _as_vector(b).reshape(1, -1))[0])


def color_layout_distance_batch(query, matrix) -> np.ndarray:
    diff_sq = (_as_matrix(matrix) - _as_vector(query)) ** 2
    y = np.sqrt(diff_sq[:, :_Y_END] @ _Y_WEIGHTS)
    cb = np.sqrt(diff_sq[:, _Y_END:_CB_END] @ _CB_WEIGHTS)
    cr = np.sqrt(diff_sq[:, _CB_END:] @ _CR_WEIGHTS)
    return y + cb + cr


# --- AutoColorCorrelogram -------------------------------------------------

def correlogram_distance(a, b) -> float:
    a, b = _as_vector(a), _as_vector(b)
    return float((np.abs(a - b) / (1.0 + (a + b))).sum())


def correlogram_distance_batch(query, matrix) -> np.ndarray:
    matrix, query = _as_matrix(matrix), _as_vector(query)
    return (np.abs(matrix - query) / (1.0 + (matrix + query))).sum(axis=1)


# --- Jensen-Shannon -------------------------------------------------------

def _jensen_shannon_terms(p: np.ndarray, q: np.ndarray) -> np.ndarray:
    mixture = p + q
    with np.errstate(divide="ignore", invalid="ignore"):
        p_term = np.where(p > 0, p * np.log(2.0 * p / mixture), 0.0)
        q_term = np.where(q > 0, q * np.log(2.0 * q / mixture), 0.0)
    return 0.5 * (p_term + q_term)


def jensen_shannon_distance(a, b) -> float:
    total = _jensen_shannon_terms(_as_vector(a), _as_vector(b)).sum()
    return float(max(total, 0.0))


def jensen_shannon_distance_batch(query, matrix) -> np.ndarray:
    matrix = _as_matrix(matrix)
    query = np.broadcast_to(_as_vector(query), matrix.shape)
    return np.maximum(_jensen_shannon_terms(query, matrix).sum(axis=1), 0.0)


# --- Tanimoto -------------------------------------------------------------

def tanimoto_distance(a, b) -> float:
    """1 - Tanimoto coefficient; two all-zero vectors are identical (0.0)."""
    a, b = _as_vector(a), _as_vector(b)
    dot = np.dot(a, b)
    denominator = np.dot(a, a) + np.dot(b, b) - dot
    if denominator == 0:
        return 0.0
    return float(max(1.0 - dot / denominator, 0.0))


def tanimoto_distance_batch(query, matrix) -> np.ndarray:
    matrix, query = _as_matrix(matrix), _as_vector(query)
    dot = matrix @ query
    denominator = np.einsum("ij,ij->i", matrix, matrix) + np.dot(query, query) - dot

    scores = np.zeros(len(matrix), dtype=np.float64)
    nonzero = denominator != 0
    scores[nonzero] = np.maximum(1.0 - dot[nonzero] / denominator[nonzero], 0.0)
    return scores


# --- Ranking --------------------------------------------------------------

def top_k(scores: Sequence[float],
          ids: Sequence[str],
          k: int) -> List[Tuple[float, str]]:
    """
    Select the k best (lowest) scores.

    Ties are broken by id ascending so equal inputs always produce the
    same ordering.

    Returns:
        List of (score, id) pairs, best first.
    """
    if k <= 0:
        return []
    pairs = zip((float(s) for s in scores), ids)
    return heapq.nsmallest(k, pairs)
