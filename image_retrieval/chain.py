"""
Extractor chain: run every registered extractor over one pixel buffer.

Each kind succeeds or fails on its own. A Document is always produced,
holding whichever kinds were extracted.
"""

import logging
from typing import Dict, Iterable, Optional, Tuple

import numpy as np

from .errors import ExtractionError
from .model import Document, FeatureKind
from .registry import FEATURES, extract_feature

logger = logging.getLogger(__name__)


class ExtractorChain:
    """Ordered set of feature kinds applied to each image."""

    def __init__(self, kinds: Optional[Iterable[FeatureKind]] = None):
        if kinds is None:
            self.kinds = tuple(FEATURES)
        else:
            resolved = []
            for kind in kinds:
                kind = FeatureKind.parse(kind)
                if kind not in resolved:
                    resolved.append(kind)
            self.kinds = tuple(resolved)

    def run(self, pixels: np.ndarray,
            doc_id: str) -> Tuple[Document, Dict[FeatureKind, str]]:
        """
        Extract every kind and collect the failures.

        Returns:
            (document, failures) where failures maps each kind that could
            not be extracted to the reason.
        """
        features = {}
        failures = {}
        for kind in self.kinds:
            try:
                features[kind] = extract_feature(kind, pixels)
            except ExtractionError as e:
                failures[kind] = str(e)
                logger.warning(f"Skipping {kind.label} for {doc_id}: {e}")

        logger.debug(f"Extracted {len(features)}/{len(self.kinds)} features for {doc_id}")
        return Document(doc_id, features), failures

    def build(self, pixels: np.ndarray, doc_id: str) -> Document:
        document, _ = self.run(pixels, doc_id)
        return document
