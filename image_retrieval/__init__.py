"""
image_retrieval: content-based image retrieval over classic visual descriptors.

Extracts ten independent feature kinds per image (colour histograms, DCT
layouts, texture statistics, correlograms and compact composite
descriptors), stores them in a build-once / query-many index, and ranks
indexed images against a query image under one chosen kind.

Modules:
    model                Feature kinds, vectors, documents, search hits
    errors               Decode / extraction / index / query errors
    preprocessing        Image decoding and pixel-buffer validation
    histograms           ScalableColor, ColorHistogram, JointHistogram, AutoColorCorrelogram
    dct_descriptors      ColorLayout, JpegCoefficientHistogram
    texture              Tamura, Gabor
    compact_descriptors  CEDD, FCTH
    scoring              Per-kind distance metrics + top-k selection
    registry             Fixed (extract, distance) table per kind
    chain                Extractor chain producing one document per image
    index_store          Persistent index (build / finalize / open for query)
    searcher             Exhaustive ranked search
    index_builder        Batch index construction
    engine               Query-by-example SearchEngine
"""

from .errors import (DecodeError, ExtractionError, ImageRetrievalError,
                     IndexIoError, QueryError)
from .model import Document, FeatureKind, FeatureVector, SearchHit
from .chain import ExtractorChain
from .index_store import IndexHandle, create_for_build, open_for_query
from .searcher import search
from .index_builder import BuildReport, build_index, build_index_from_directory
from .engine import SearchEngine

__version__ = "1.0.0"

__all__ = [
    "BuildReport", "DecodeError", "Document", "ExtractionError",
    "ExtractorChain", "FeatureKind", "FeatureVector", "ImageRetrievalError",
    "IndexHandle", "IndexIoError", "QueryError", "SearchEngine", "SearchHit",
    "build_index", "build_index_from_directory", "create_for_build",
    "open_for_query", "search",
]
