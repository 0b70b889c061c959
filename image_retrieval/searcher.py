"""
Exhaustive top-k search over an opened index.

Every document holding the requested kind is scored against the query with
that kind's metric; documents without it are left out of the ranking. The
scan is linear and exact, and a query handle is never mutated, so any
number of searches can run concurrently on the same handle.
"""

import os
import numbers
import logging
from typing import List

import numpy as np

from .errors import QueryError
from .index_store import IndexHandle
from .model import FeatureKind, FeatureVector, SearchHit
from .registry import FEATURES
from .scoring import top_k

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = int(os.environ.get("CBIR_TOP_K", "100"))


def resolve_kind(kind) -> FeatureKind:
    try:
        return FeatureKind.parse(kind)
    except ValueError as e:
        raise QueryError(str(e)) from e


def search(handle: IndexHandle,
           query: FeatureVector,
           kind,
           k: int = DEFAULT_TOP_K) -> List[SearchHit]:
    """
    Rank indexed documents by distance to a query vector.

    Args:
        handle: Index opened with open_for_query().
        query: Feature vector extracted from the query image.
        kind: Feature kind to compare on (FeatureKind or its name/label).
        k: Maximum number of hits to return.

    Returns:
        Up to k SearchHits, best match (lowest distance) first, ties broken
        by document id. Empty for an empty index or k <= 0.

    Raises:
        QueryError: Unknown kind, query of another kind or wrong length,
            non-finite query values, non-integer k, or indexed vectors whose
            length does not match the kind.
        IndexIoError: If the handle is not open for query.
    """
    kind = resolve_kind(kind)
    spec = FEATURES[kind]

    if not isinstance(query, FeatureVector):
        raise QueryError(f"Query must be a FeatureVector, got {type(query).__name__}")
    if query.kind is not kind:
        raise QueryError(f"Query is a {query.kind.label} vector, not {kind.label}")
    if len(query) != spec.dim:
        raise QueryError(
            f"{kind.label} query has {len(query)} values, expected {spec.dim}"
        )
    if not np.all(np.isfinite(query.payload)):
        raise QueryError(f"{kind.label} query contains non-finite values")
    if isinstance(k, bool) or not isinstance(k, numbers.Integral):
        raise QueryError(f"k must be an integer, got {k!r}")

    if k <= 0:
        return []

    ids, vectors = handle.feature_matrix(kind)
    if not ids:
        logger.info(f"No documents with {kind.label} in {handle.location}")
        return []
    if vectors.ndim != 2 or vectors.shape[1] != spec.dim:
        raise QueryError(
            f"Index holds {kind.label} vectors of shape {vectors.shape}, "
            f"expected {spec.dim} values"
        )

    scores = spec.distance_batch(query.payload, vectors)
    hits = [SearchHit(doc_id, score) for score, doc_id in top_k(scores, ids, int(k))]

    logger.info(
        f"Search complete: {len(ids)} {kind.label} candidates -> {len(hits)} results"
    )
    return hits
