"""
Persistent index store: build once, query many times.

On-disk layout of an index location:

    <location>/
        CURRENT          name of the finalized generation directory
        .build.lock      present while a build holds the location (owner pid)
        gen-XXXXXXXX/    one generation per successful build
            manifest.json
            ids.npy                  document ids in insertion order
            <kind>.npz               positions (int64) + vectors (float32)

A build writes into a fresh generation directory and only becomes visible
when finalize() atomically replaces CURRENT. Until then readers keep seeing
the previous generation, and a crashed build leaves it untouched. Query
handles load their generation fully into memory, so later builds and
generation pruning never disturb an open reader.
"""

import os
import json
import time
import shutil
import logging
import tempfile
import threading
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from .errors import IndexIoError
from .model import Document, FeatureKind, FeatureVector
from .registry import get_spec

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
CURRENT_FILE = "CURRENT"
LOCK_FILE = ".build.lock"
MANIFEST_FILE = "manifest.json"
IDS_FILE = "ids.npy"
GENERATION_PREFIX = "gen-"

# A lock file with no readable owner pid (crash between create and write) is
# stale once it is older than this.
STALE_LOCK_SECONDS = float(os.environ.get("CBIR_STALE_LOCK_SECONDS", "60"))

BUILD = "build"
QUERY = "query"
CLOSED = "closed"


class IndexHandle:
    """
    An index location opened in build mode (write-only, single writer) or
    query mode (read-only, any number of readers).

    Use create_for_build() and open_for_query() rather than constructing
    handles directly.
    """

    def __init__(self, location: str, mode: str):
        self.location = location
        self.mode = mode
        self.generation: Optional[str] = None
        self.manifest: Dict = {}

        self._lock = threading.Lock()
        self._ids: List[str] = []
        self._id_set = set()
        self._dims: Dict[FeatureKind, int] = {}

        # build mode: kind -> (positions, payloads) accumulated by append()
        self._pending: Dict[FeatureKind, Tuple[List[int], List[np.ndarray]]] = {}
        self._staging: Optional[str] = None
        self._lock_path: Optional[str] = None

        # query mode: kind -> (row ids, positions, vectors)
        self._columns: Dict[FeatureKind, Tuple[List[str], np.ndarray, np.ndarray]] = {}

    def __repr__(self) -> str:
        return f"IndexHandle({self.location!r}, mode={self.mode!r}, documents={len(self)})"

    def __len__(self) -> int:
        return len(self._ids)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.mode == BUILD:
            self.abort()
        return False

    def _require(self, mode: str):
        if self.mode != mode:
            raise IndexIoError(
                f"Index handle for {self.location} is in {self.mode} mode, "
                f"{mode} mode required"
            )

    @property
    def kinds(self) -> Tuple[FeatureKind, ...]:
        """Feature kinds present in at least one document."""
        if self.mode == QUERY:
            return tuple(self._columns)
        return tuple(self._pending)

    # --- build mode -------------------------------------------------------

    def append(self, document: Document) -> None:
        """
        Add one document to the in-progress build. Safe to call from
        several threads; appends are serialized.

        Raises:
            IndexIoError: If the handle is not in build mode.
            ValueError: On a duplicate id or a vector whose length is not the
                registered length for its kind.
        """
        self._require(BUILD)
        if not isinstance(document, Document):
            raise TypeError(f"Expected Document, got {type(document).__name__}")

        with self._lock:
            if document.id in self._id_set:
                raise ValueError(f"Duplicate document id: {document.id}")
            for kind, vector in document.features.items():
                expected = get_spec(kind).dim
                if len(vector) != expected:
                    raise ValueError(
                        f"{kind.label} vector for {document.id} has {len(vector)} "
                        f"values, expected {expected}"
                    )

            position = len(self._ids)
            self._ids.append(document.id)
            self._id_set.add(document.id)
            for kind, vector in document.features.items():
                self._dims[kind] = len(vector)
                positions, payloads = self._pending.setdefault(kind, ([], []))
                positions.append(position)
                payloads.append(vector.payload)

    def finalize(self) -> None:
        """
        Commit the build and make it the location's queryable index.

        Writes the generation files, atomically switches CURRENT, prunes
        generations older than the previous one and releases the lock.

        Raises:
            IndexIoError: If the handle is not in build mode or the files
                cannot be written. The previous index stays current.
        """
        self._require(BUILD)
        with self._lock:
            previous = _read_current(self.location)
            generation = os.path.basename(self._staging)
            try:
                manifest = self._write_generation(self._staging)
                _write_current(self.location, generation)
            except OSError as e:
                self._discard()
                raise IndexIoError(f"Failed to finalize index at {self.location}: {e}") from e

            self.generation = generation
            self.manifest = manifest
            self.mode = CLOSED
            self._pending = {}

        logger.info(
            f"Finalized index at {self.location}: {manifest['document_count']} documents, "
            f"{len(manifest['kinds'])} feature kinds ({generation})"
        )
        _prune_generations(self.location, keep={generation, previous})
        self._release_lock()

    def _write_generation(self, directory: str) -> Dict:
        """Write every generation file and flush them all to disk."""
        written = [os.path.join(directory, IDS_FILE)]
        np.save(written[0], np.array(self._ids, dtype=str))

        kinds = {}
        for kind, (positions, payloads) in self._pending.items():
            written.append(os.path.join(directory, f"{kind.value}.npz"))
            np.savez_compressed(
                written[-1],
                positions=np.array(positions, dtype=np.int64),
                vectors=np.vstack(payloads).astype(np.float32),
            )
            kinds[kind.value] = {"dim": self._dims[kind], "count": len(positions)}

        manifest = {
            "format_version": FORMAT_VERSION,
            "created_at": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "document_count": len(self._ids),
            "kinds": kinds,
        }
        written.append(os.path.join(directory, MANIFEST_FILE))
        with open(written[-1], "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)

        for path in written:
            _fsync_file(path)
        _fsync_directory(directory)
        return manifest

    def abort(self) -> None:
        """Discard an unfinished build. The finalized index is untouched."""
        if self.mode != BUILD:
            return
        with self._lock:
            self._discard()
        logger.info(f"Aborted index build at {self.location}")

    def _discard(self):
        if self._staging:
            shutil.rmtree(self._staging, ignore_errors=True)
            self._staging = None
        self._pending = {}
        self.mode = CLOSED
        self._release_lock()

    def _release_lock(self):
        if self._lock_path:
            try:
                os.remove(self._lock_path)
            except FileNotFoundError:
                pass
            self._lock_path = None

    # --- query mode -------------------------------------------------------

    def feature_matrix(self, kind: FeatureKind) -> Tuple[List[str], np.ndarray]:
        """
        Return (ids, vectors) for every document holding the given kind.

        Rows of vectors line up with ids. A kind absent from the index
        yields an empty id list and a (0, 0) matrix.
        """
        self._require(QUERY)
        column = self._columns.get(kind)
        if column is None:
            return [], np.zeros((0, 0), dtype=np.float32)
        row_ids, _, vectors = column
        return row_ids, vectors

    def documents(self) -> Iterator[Document]:
        """Iterate over all documents in insertion order. Restartable."""
        self._require(QUERY)
        return self._iter_documents()

    def _iter_documents(self) -> Iterator[Document]:
        rows = {kind: {position: row for row, position in enumerate(positions.tolist())}
                for kind, (_, positions, _) in self._columns.items()}
        for position, doc_id in enumerate(self._ids):
            features = {}
            for kind, lookup in rows.items():
                row = lookup.get(position)
                if row is not None:
                    features[kind] = FeatureVector(kind, self._columns[kind][2][row])
            yield Document(doc_id, features)


def create_for_build(location) -> IndexHandle:
    """
    Open a location in build mode.

    Whatever is finalized there now is replaced when this build finalizes;
    builds never merge with earlier contents.

    Raises:
        IndexIoError: If the location cannot be created or written, or
            another live build holds it.
    """
    location = os.path.abspath(os.fspath(location))
    try:
        os.makedirs(location, exist_ok=True)
    except OSError as e:
        raise IndexIoError(f"Cannot create index location {location}: {e}") from e
    if not os.access(location, os.W_OK | os.X_OK):
        raise IndexIoError(f"Index location {location} is not writable")

    handle = IndexHandle(location, BUILD)
    handle._lock_path = _acquire_lock(location)
    try:
        handle._staging = tempfile.mkdtemp(prefix=GENERATION_PREFIX, dir=location)
    except OSError as e:
        handle._release_lock()
        raise IndexIoError(f"Cannot create build directory in {location}: {e}") from e

    logger.info(f"Opened index at {location} for build")
    return handle


def open_for_query(location, missing_ok: bool = False) -> IndexHandle:
    """
    Open the finalized index at a location, read-only.

    Args:
        location: Index directory previously written by a build.
        missing_ok: Return an empty handle instead of failing when no
            finalized index exists.

    Raises:
        IndexIoError: If there is no finalized index (and not missing_ok)
            or its files are unreadable.
    """
    location = os.path.abspath(os.fspath(location))
    generation = _read_current(location)
    handle = IndexHandle(location, QUERY)

    if generation is None:
        if missing_ok:
            logger.warning(f"No finalized index at {location}, using an empty index")
            return handle
        raise IndexIoError(f"No finalized index at {location}")

    directory = os.path.join(location, generation)
    try:
        with open(os.path.join(directory, MANIFEST_FILE), "r", encoding="utf-8") as f:
            manifest = json.load(f)
        if manifest.get("format_version") != FORMAT_VERSION:
            raise IndexIoError(
                f"Unsupported index format {manifest.get('format_version')} at {directory}"
            )

        ids = [str(i) for i in np.load(os.path.join(directory, IDS_FILE)).tolist()]
        columns = {}
        for value, info in manifest["kinds"].items():
            kind = FeatureKind(value)
            with np.load(os.path.join(directory, f"{value}.npz")) as data:
                positions = data["positions"].astype(np.int64)
                vectors = data["vectors"].astype(np.float32)
            if vectors.shape != (len(positions), info["dim"]):
                raise IndexIoError(f"Corrupt {kind.label} table in {directory}")
            if info["dim"] != get_spec(kind).dim:
                raise IndexIoError(
                    f"{kind.label} table in {directory} holds {info['dim']}-value "
                    f"vectors, expected {get_spec(kind).dim}"
                )
            vectors.setflags(write=False)
            columns[kind] = ([ids[p] for p in positions.tolist()], positions, vectors)
    except IndexIoError:
        raise
    except (OSError, ValueError, KeyError, IndexError) as e:
        raise IndexIoError(f"Cannot read index at {directory}: {e}") from e

    handle.generation = generation
    handle.manifest = manifest
    handle._ids = ids
    handle._id_set = set(ids)
    handle._columns = columns
    handle._dims = {kind: column[2].shape[1] for kind, column in columns.items()}

    logger.info(f"Opened index at {location}: {len(ids)} documents ({generation})")
    return handle


def append(handle: IndexHandle, document: Document) -> None:
    handle.append(document)


def finalize(handle: IndexHandle) -> None:
    handle.finalize()


def documents(handle: IndexHandle) -> Iterator[Document]:
    return handle.documents()


def _read_current(location: str) -> Optional[str]:
    """Name of the finalized generation, or None if there is none."""
    path = os.path.join(location, CURRENT_FILE)
    try:
        with open(path, "r", encoding="utf-8") as f:
            generation = f.read().strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise IndexIoError(f"Cannot read {path}: {e}") from e

    if not generation or not os.path.isdir(os.path.join(location, generation)):
        logger.warning(f"{path} points to a missing generation {generation!r}")
        return None
    return generation


def _write_current(location: str, generation: str) -> None:
    pointer = os.path.join(location, CURRENT_FILE)
    staged = pointer + ".tmp"
    with open(staged, "w", encoding="utf-8") as f:
        f.write(generation)
        f.flush()
        os.fsync(f.fileno())
    os.replace(staged, pointer)
    # CURRENT already names the new generation, so a failed flush only warns
    try:
        _fsync_directory(location)
    except OSError as e:
        logger.warning(f"Could not flush {location} after switching {CURRENT_FILE}: {e}")


def _fsync_file(path: str) -> None:
    with open(path, "rb") as f:
        os.fsync(f.fileno())


def _fsync_directory(path: str) -> None:
    """Persist directory entries (new files, renames). Not supported on Windows."""
    if os.name == "nt":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _prune_generations(location: str, keep) -> None:
    """Remove generation directories other than those in keep."""
    for name in os.listdir(location):
        path = os.path.join(location, name)
        if name.startswith(GENERATION_PREFIX) and name not in keep and os.path.isdir(path):
            try:
                shutil.rmtree(path)
                logger.debug(f"Pruned old index generation {name}")
            except OSError as e:
                logger.warning(f"Could not prune {path}: {e}")


def _acquire_lock(location: str) -> str:
    """
    Take the single-builder lock on a location.

    A lock whose recorded owner process no longer exists, or an ownerless
    lock older than STALE_LOCK_SECONDS, is stale and is taken over once.
    """
    lock_path = os.path.join(location, LOCK_FILE)
    for attempt in range(2):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            owner = _read_lock_owner(lock_path)
            if attempt == 0 and _lock_is_stale(lock_path, owner):
                logger.warning(f"Removing stale build lock {lock_path} (owner pid {owner})")
                try:
                    os.remove(lock_path)
                except FileNotFoundError:
                    pass
                continue
            raise IndexIoError(
                f"Index at {location} is already being built (lock held by pid {owner})"
            )
        except OSError as e:
            raise IndexIoError(f"Cannot lock index location {location}: {e}") from e

        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return lock_path

    raise IndexIoError(f"Cannot lock index location {location}")


def _lock_is_stale(lock_path: str, owner: Optional[int]) -> bool:
    if owner is not None:
        return not _pid_alive(owner)
    try:
        age = time.time() - os.path.getmtime(lock_path)
    except FileNotFoundError:
        return True
    except OSError:
        return False
    return age > STALE_LOCK_SECONDS


def _read_lock_owner(lock_path: str) -> Optional[int]:
    try:
        with open(lock_path, "r", encoding="utf-8") as f:
            return int(f.read().strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # os.kill would terminate the process on Windows
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
