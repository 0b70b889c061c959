"""
Error taxonomy for indexing and search.

Per-image and per-feature failures (DecodeError, ExtractionError) are
recoverable: the index builder records them and moves on. Location-level
and query failures (IndexIoError, QueryError) are surfaced to the caller.
"""


class ImageRetrievalError(Exception):
    """Base class for all errors raised by image_retrieval."""


class DecodeError(ImageRetrievalError, ValueError):
    """An image file could not be read or decoded into pixels."""

    def __init__(self, path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Could not decode {path}: {reason}")


class ExtractionError(ImageRetrievalError, ValueError):
    """A single feature kind could not be extracted from a pixel buffer."""


class IndexIoError(ImageRetrievalError, OSError):
    """The index location cannot be written, locked, or read."""


class QueryError(ImageRetrievalError, ValueError):
    """A search request is malformed (bad kind, shape, or k)."""
