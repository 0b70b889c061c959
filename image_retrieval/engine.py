"""
Query-by-example search engine.

Thin facade over the index store and searcher for callers that hold a query
image rather than a feature vector: open an index directory once, then ask
for the images most similar to a query under one chosen feature kind.
Fusing several kinds into one score is left to the caller.
"""

import logging
from typing import List

import numpy as np

from .errors import ExtractionError, QueryError
from .index_store import open_for_query
from .model import FeatureKind, SearchHit
from .preprocessing import decode_image
from .registry import extract_feature
from .searcher import DEFAULT_TOP_K, resolve_kind, search

logger = logging.getLogger(__name__)

DEFAULT_FEATURE = FeatureKind.SCALABLE_COLOR


class SearchEngine:
    """
    Loads a finalized index from disk and answers query-by-example
    searches against it.
    """

    def __init__(self, index_dir: str, missing_ok: bool = True):
        """
        Open an index for querying.

        Args:
            index_dir: Directory written by build_index().
            missing_ok: Treat a location with no finalized index as an
                empty index instead of raising IndexIoError.
        """
        self.index_dir = index_dir
        self.missing_ok = missing_ok
        self.handle = open_for_query(index_dir, missing_ok=missing_ok)

    def __len__(self) -> int:
        return len(self.handle)

    def reload(self) -> None:
        """Reopen the index, picking up the latest finalized build."""
        self.handle = open_for_query(self.index_dir, missing_ok=self.missing_ok)

    def search(self,
               query_image: np.ndarray,
               kind=DEFAULT_FEATURE,
               top_k: int = DEFAULT_TOP_K) -> List[SearchHit]:
        """
        Search for images similar to a decoded query image.

        Args:
            query_image: RGB (or grayscale) pixel array.
            kind: Feature kind used for the similarity measure.
            top_k: Maximum number of results.

        Returns:
            SearchHits, closest first.

        Raises:
            QueryError: If the kind is unknown or the query image cannot
                produce that kind of feature.
        """
        kind = resolve_kind(kind)
        try:
            query = extract_feature(kind, query_image)
        except ExtractionError as e:
            raise QueryError(f"Cannot extract {kind.label} from query image: {e}") from e

        logger.info(f"Using {kind.label} feature for similarity calculation")
        return search(self.handle, query, kind, top_k)

    def search_path(self, path,
                    kind=DEFAULT_FEATURE,
                    top_k: int = DEFAULT_TOP_K) -> List[SearchHit]:
        """
        Decode a query image file and search with it.

        Raises:
            DecodeError: If the query file cannot be read.
        """
        return self.search(decode_image(path), kind=kind, top_k=top_k)
