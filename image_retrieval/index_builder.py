"""
Batch index construction.

Decodes each image, runs the extractor chain over it and appends the
resulting document to a fresh index generation, then finalizes:

    - per-image decode + extraction runs on a thread pool
    - documents are appended by the collecting thread, in input order
    - a corrupt image is skipped and reported, never fatal
    - a failed feature kind is dropped from that document and reported

Builds are cancellable between images. On cancellation, in-flight images
finish and the index is finalized with everything completed so far, so the
location always holds a valid, queryable index.
"""

import os
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

import numpy as np

from .chain import ExtractorChain
from .errors import DecodeError
from .index_store import create_for_build
from .model import FeatureKind
from .preprocessing import decode_image

logger = logging.getLogger(__name__)

BUILD_WORKERS = int(os.environ.get("CBIR_BUILD_WORKERS", "4"))
PROGRESS_EVERY = int(os.environ.get("CBIR_PROGRESS_EVERY", "500"))

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.webp', '.tif', '.tiff'}


@dataclass(frozen=True)
class SkippedImage:
    path: str
    reason: str


@dataclass(frozen=True)
class FeatureFailure:
    document_id: str
    kind: FeatureKind
    reason: str


@dataclass
class BuildReport:
    """
    Outcome of one build: what was indexed and what was skipped, and why.

    not_processed lists the images a cancelled build never reached.
    """

    destination: str
    document_ids: List[str] = field(default_factory=list)
    skipped: List[SkippedImage] = field(default_factory=list)
    feature_failures: List[FeatureFailure] = field(default_factory=list)
    not_processed: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def documents_indexed(self) -> int:
        return len(self.document_ids)

    @property
    def images_skipped(self) -> int:
        return len(self.skipped)

    def as_dict(self) -> dict:
        return {
            "success": True,
            "destination": self.destination,
            "processed": self.documents_indexed,
            "errors": self.images_skipped,
            "feature_failures": len(self.feature_failures),
            "cancelled": self.cancelled,
            "skipped": [{"path": s.path, "reason": s.reason} for s in self.skipped],
            "not_processed": list(self.not_processed),
        }


def find_images(image_dir, recursive: bool = True) -> List[str]:
    """
    List image files under a directory by extension, sorted.

    Raises:
        NotADirectoryError: If image_dir is not a directory.
    """
    image_dir = os.fspath(image_dir)
    if not os.path.isdir(image_dir):
        raise NotADirectoryError(f"Not a directory: {image_dir}")

    found = []
    for root, dirs, files in os.walk(image_dir):
        dirs.sort()
        for name in files:
            if os.path.splitext(name)[1].lower() in IMAGE_EXTENSIONS:
                found.append(os.path.join(root, name))
        if not recursive:
            break
    return sorted(found)


def _process_image(path: str,
                   chain: ExtractorChain,
                   decoder: Callable[[str], np.ndarray]):
    """Decode and extract one image. Runs on a worker thread."""
    try:
        pixels = decoder(path)
    except DecodeError as e:
        return path, None, {}, e.reason
    document, failures = chain.run(pixels, path)
    return path, document, failures, None


def build_index(image_paths: Iterable,
                destination,
                kinds: Optional[Iterable[FeatureKind]] = None,
                decoder: Callable[[str], np.ndarray] = decode_image,
                workers: int = BUILD_WORKERS,
                cancel_event: Optional[threading.Event] = None) -> BuildReport:
    """
    Build an index from a batch of images, replacing any index at destination.

    Args:
        image_paths: Image files to index. The path string is the document
            id; repeated paths are indexed once.
        destination: Index location (directory).
        kinds: Feature kinds to extract (default: all registered kinds).
        decoder: Callable turning a path into an RGB pixel array, raising
            DecodeError on failure.
        workers: Extraction threads.
        cancel_event: When set, stop submitting images, finish in-flight
            ones and finalize what completed.

    Returns:
        BuildReport listing indexed ids, skipped images and failed kinds.

    Raises:
        IndexIoError: If the destination cannot be opened or finalized.
    """
    paths = list(dict.fromkeys(os.fspath(p) for p in image_paths))
    chain = ExtractorChain(kinds)
    workers = max(1, int(workers))

    handle = create_for_build(destination)
    report = BuildReport(destination=handle.location)
    logger.info(
        f"Building index from {len(paths)} images into {handle.location} "
        f"({len(chain.kinds)} feature kinds, {workers} workers)"
    )

    def collect(future):
        path, document, failures, reason = future.result()
        if document is None:
            logger.warning(f"Could not read: {path} ({reason})")
            report.skipped.append(SkippedImage(path, reason))
        else:
            handle.append(document)
            report.document_ids.append(document.id)
            for kind, failure in failures.items():
                report.feature_failures.append(FeatureFailure(document.id, kind, failure))

        done = report.documents_indexed + report.images_skipped
        if PROGRESS_EVERY > 0 and done % PROGRESS_EVERY == 0:
            logger.info(f"Processed {done}/{len(paths)} images")

    try:
        in_flight = deque()
        submitted = 0
        with ThreadPoolExecutor(max_workers=workers) as executor:
            for path in paths:
                if cancel_event is not None and cancel_event.is_set():
                    report.cancelled = True
                    report.not_processed = paths[submitted:]
                    logger.warning(f"Build cancelled after submitting {submitted}/{len(paths)} images")
                    break
                in_flight.append(executor.submit(_process_image, path, chain, decoder))
                submitted += 1
                if len(in_flight) >= 2 * workers:
                    collect(in_flight.popleft())
            while in_flight:
                collect(in_flight.popleft())

        handle.finalize()
    finally:
        handle.abort()

    logger.info(
        f"Index built: {report.documents_indexed} images, "
        f"{report.images_skipped} skipped, "
        f"{len(report.feature_failures)} feature failures"
        + (" (cancelled)" if report.cancelled else "")
    )
    return report


def build_index_from_directory(image_dir, destination,
                               recursive: bool = True, **kwargs) -> BuildReport:
    """Index every image found under image_dir. See build_index()."""
    return build_index(find_images(image_dir, recursive), destination, **kwargs)
