"""Tests for the persistent index store."""

import os
import json
import time

import numpy as np
import pytest

from image_retrieval import index_store
from image_retrieval.errors import IndexIoError
from image_retrieval.index_store import (
    create_for_build, open_for_query, CURRENT_FILE, LOCK_FILE, GENERATION_PREFIX,
)
from image_retrieval.model import Document, FeatureKind, FeatureVector
from image_retrieval.registry import get_spec

CEDD_DIM = get_spec(FeatureKind.CEDD).dim


def _vector(name, fill):
    kind = FeatureKind.parse(name)
    return FeatureVector(kind, np.full(get_spec(kind).dim, fill, dtype=np.float32))


def _doc(doc_id, **fills):
    """Document whose vectors are constant-filled at each kind's registered length."""
    return Document(doc_id, {FeatureKind.parse(name): _vector(name, fill)
                             for name, fill in fills.items()})


def _build(location, documents):
    handle = create_for_build(location)
    for doc in documents:
        handle.append(doc)
    handle.finalize()
    return handle


def _generations(location):
    return sorted(name for name in os.listdir(location)
                  if name.startswith(GENERATION_PREFIX))


class TestRoundTrip:

    def test_documents_survive_finalize_and_reopen(self, tmp_path):
        docs = [
            _doc("a.png", cedd=1, tamura=0.5),
            _doc("b.png", cedd=4),
            _doc("c.png", tamura=1.0),
        ]
        _build(tmp_path / "idx", docs)

        handle = open_for_query(tmp_path / "idx")
        assert len(handle) == 3
        assert list(handle.documents()) == docs

    def test_documents_iteration_is_restartable(self, tmp_path):
        _build(tmp_path, [_doc("a", cedd=1), _doc("b", cedd=2)])
        handle = open_for_query(tmp_path)
        assert [d.id for d in handle.documents()] == ["a", "b"]
        assert [d.id for d in handle.documents()] == ["a", "b"]

    def test_feature_matrix_lines_up_with_ids(self, tmp_path):
        _build(tmp_path, [
            _doc("a", cedd=1),
            _doc("b", tamura=9),
            _doc("c", cedd=3),
        ])
        handle = open_for_query(tmp_path)
        ids, vectors = handle.feature_matrix(FeatureKind.CEDD)
        assert ids == ["a", "c"]
        assert vectors.shape == (2, CEDD_DIM)
        assert np.all(vectors[0] == 1) and np.all(vectors[1] == 3)
        assert not vectors.flags.writeable

    def test_absent_kind_gives_empty_matrix(self, tmp_path):
        _build(tmp_path, [_doc("a", cedd=1)])
        ids, vectors = open_for_query(tmp_path).feature_matrix(FeatureKind.GABOR)
        assert ids == []
        assert vectors.shape == (0, 0)

    def test_manifest_describes_generation(self, tmp_path):
        handle = _build(tmp_path, [_doc("a", cedd=1), _doc("b", cedd=3)])
        with open(tmp_path / handle.generation / "manifest.json") as f:
            manifest = json.load(f)
        assert manifest["document_count"] == 2
        assert manifest["kinds"] == {"cedd": {"dim": CEDD_DIM, "count": 2}}

    def test_empty_build_is_queryable(self, tmp_path):
        _build(tmp_path, [])
        handle = open_for_query(tmp_path)
        assert len(handle) == 0
        assert list(handle.documents()) == []
        assert handle.kinds == ()

    def test_unicode_ids(self, tmp_path):
        docs = [_doc("фото/猫.jpg", cedd=1)]
        _build(tmp_path, docs)
        assert list(open_for_query(tmp_path).documents()) == docs

    def test_module_level_functions(self, tmp_path):
        handle = create_for_build(tmp_path)
        index_store.append(handle, _doc("a", fcth=7))
        index_store.finalize(handle)
        reader = open_for_query(tmp_path)
        assert [d.id for d in index_store.documents(reader)] == ["a"]


class TestAppend:

    def test_duplicate_id_rejected(self, tmp_path):
        with create_for_build(tmp_path) as handle:
            handle.append(_doc("a", cedd=1))
            with pytest.raises(ValueError):
                handle.append(_doc("a", cedd=2))

    def test_wrong_length_rejected(self, tmp_path):
        short = FeatureVector(FeatureKind.COLOR_HISTOGRAM, np.ones(32))
        with create_for_build(tmp_path) as handle:
            handle.append(_doc("a", cedd=1))
            with pytest.raises(ValueError, match="expected 64"):
                handle.append(Document("b", {FeatureKind.COLOR_HISTOGRAM: short}))
            assert len(handle) == 1

    def test_first_vector_of_a_kind_is_checked_too(self, tmp_path):
        long = FeatureVector(FeatureKind.CEDD, np.ones(CEDD_DIM + 1))
        with create_for_build(tmp_path) as handle:
            with pytest.raises(ValueError):
                handle.append(Document("a", {FeatureKind.CEDD: long}))
            assert len(handle) == 0

    def test_non_document_rejected(self, tmp_path):
        with create_for_build(tmp_path) as handle:
            with pytest.raises(TypeError):
                handle.append({"id": "a"})


class TestModes:

    def test_query_handle_cannot_append(self, tmp_path):
        _build(tmp_path, [])
        with pytest.raises(IndexIoError):
            open_for_query(tmp_path).append(_doc("a", cedd=1))

    def test_build_handle_cannot_be_queried(self, tmp_path):
        with create_for_build(tmp_path) as handle:
            with pytest.raises(IndexIoError):
                handle.feature_matrix(FeatureKind.CEDD)
            with pytest.raises(IndexIoError):
                handle.documents()

    def test_finalized_handle_is_closed(self, tmp_path):
        handle = _build(tmp_path, [])
        with pytest.raises(IndexIoError):
            handle.append(_doc("a", cedd=1))
        with pytest.raises(IndexIoError):
            handle.finalize()


class TestMissingIndex:

    def test_open_missing_location_raises(self, tmp_path):
        with pytest.raises(IndexIoError):
            open_for_query(tmp_path / "nowhere")

    def test_open_unfinalized_location_raises(self, tmp_path):
        with create_for_build(tmp_path):
            pass
        with pytest.raises(IndexIoError):
            open_for_query(tmp_path)

    def test_missing_ok_gives_empty_handle(self, tmp_path):
        handle = open_for_query(tmp_path / "nowhere", missing_ok=True)
        assert len(handle) == 0
        assert handle.feature_matrix(FeatureKind.CEDD)[0] == []

    def test_location_that_is_a_file(self, tmp_path):
        target = tmp_path / "file"
        target.write_text("x")
        with pytest.raises(IndexIoError):
            create_for_build(target)

    def test_corrupt_table_raises(self, tmp_path):
        handle = _build(tmp_path, [_doc("a", cedd=1)])
        (tmp_path / handle.generation / "cedd.npz").write_bytes(b"garbage")
        with pytest.raises(IndexIoError):
            open_for_query(tmp_path)

    def test_unknown_format_version_raises(self, tmp_path):
        handle = _build(tmp_path, [])
        manifest_path = tmp_path / handle.generation / "manifest.json"
        manifest = json.loads(manifest_path.read_text())
        manifest["format_version"] = 99
        manifest_path.write_text(json.dumps(manifest))
        with pytest.raises(IndexIoError, match="format"):
            open_for_query(tmp_path)

    def test_table_of_wrong_length_raises(self, tmp_path):
        handle = _build(tmp_path, [_doc("a", cedd=1)])
        directory = tmp_path / handle.generation
        np.savez_compressed(directory / "cedd.npz",
                            positions=np.array([0], dtype=np.int64),
                            vectors=np.ones((1, 32), dtype=np.float32))
        manifest = json.loads((directory / "manifest.json").read_text())
        manifest["kinds"]["cedd"]["dim"] = 32
        (directory / "manifest.json").write_text(json.dumps(manifest))
        with pytest.raises(IndexIoError, match="expected"):
            open_for_query(tmp_path)


class TestBuildLock:

    def test_second_builder_is_refused(self, tmp_path):
        with create_for_build(tmp_path):
            with pytest.raises(IndexIoError, match="already being built"):
                create_for_build(tmp_path)

    def test_lock_released_after_finalize(self, tmp_path):
        _build(tmp_path, [])
        assert not (tmp_path / LOCK_FILE).exists()
        _build(tmp_path, [])

    def test_lock_released_after_abort(self, tmp_path):
        handle = create_for_build(tmp_path)
        handle.abort()
        handle.abort()
        assert not (tmp_path / LOCK_FILE).exists()
        create_for_build(tmp_path).abort()

    def test_stale_lock_is_taken_over(self, tmp_path):
        (tmp_path / LOCK_FILE).write_text("999999999")
        handle = create_for_build(tmp_path)
        assert (tmp_path / LOCK_FILE).read_text() == str(os.getpid())
        handle.abort()

    def test_live_lock_is_respected(self, tmp_path):
        (tmp_path / LOCK_FILE).write_text(str(os.getpid()))
        with pytest.raises(IndexIoError):
            create_for_build(tmp_path)

    def test_old_ownerless_lock_is_taken_over(self, tmp_path):
        lock = tmp_path / LOCK_FILE
        lock.write_text("")
        an_hour_ago = time.time() - 3600
        os.utime(lock, (an_hour_ago, an_hour_ago))
        handle = create_for_build(tmp_path)
        assert lock.read_text() == str(os.getpid())
        handle.abort()

    def test_fresh_ownerless_lock_is_respected(self, tmp_path):
        (tmp_path / LOCK_FILE).write_text("")
        with pytest.raises(IndexIoError):
            create_for_build(tmp_path)


class TestGenerations:

    def test_generation_files_are_flushed(self, tmp_path, monkeypatch):
        flushed = []
        real_fsync = os.fsync

        def recording_fsync(fd):
            flushed.append(fd)
            real_fsync(fd)

        monkeypatch.setattr(os, "fsync", recording_fsync)
        _build(tmp_path, [_doc("a", cedd=1)])
        # ids, cedd table, manifest and CURRENT, plus both directories on POSIX
        assert len(flushed) == (4 if os.name == "nt" else 6)

    def test_rebuild_replaces_contents(self, tmp_path):
        _build(tmp_path, [_doc("old", cedd=1)])
        _build(tmp_path, [_doc("new", cedd=2)])
        assert [d.id for d in open_for_query(tmp_path).documents()] == ["new"]

    def test_aborted_build_keeps_previous_index(self, tmp_path):
        _build(tmp_path, [_doc("kept", cedd=1)])
        with create_for_build(tmp_path) as handle:
            handle.append(_doc("lost", cedd=2))
        assert [d.id for d in open_for_query(tmp_path).documents()] == ["kept"]
        assert len(_generations(tmp_path)) == 1

    def test_unfinalized_build_is_invisible(self, tmp_path):
        _build(tmp_path, [_doc("kept", cedd=1)])
        handle = create_for_build(tmp_path)
        handle.append(_doc("pending", cedd=2))
        assert [d.id for d in open_for_query(tmp_path).documents()] == ["kept"]
        handle.abort()

    def test_open_reader_survives_rebuilds(self, tmp_path):
        _build(tmp_path, [_doc("first", cedd=1)])
        reader = open_for_query(tmp_path)
        for i in range(3):
            _build(tmp_path, [_doc(f"later-{i}", cedd=i)])
        assert [d.id for d in reader.documents()] == ["first"]
        assert np.all(reader.feature_matrix(FeatureKind.CEDD)[1] == 1)

    def test_old_generations_are_pruned(self, tmp_path):
        for i in range(4):
            _build(tmp_path, [_doc(str(i), cedd=i)])
        generations = _generations(tmp_path)
        assert len(generations) == 2
        assert (tmp_path / CURRENT_FILE).read_text() in generations

    def test_failed_finalize_keeps_previous_index(self, tmp_path, monkeypatch):
        _build(tmp_path, [_doc("kept", cedd=1)])
        handle = create_for_build(tmp_path)
        handle.append(_doc("lost", cedd=2))

        def fail(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(np, "savez_compressed", fail)
        with pytest.raises(IndexIoError, match="disk full"):
            handle.finalize()
        monkeypatch.undo()

        assert [d.id for d in open_for_query(tmp_path).documents()] == ["kept"]
        assert not (tmp_path / LOCK_FILE).exists()
