from __future__ import annotations

import zipfile

import numpy as np
import orjson
import pytest

from storyspine.exceptions import StorageError, VectorIOError
from storyspine.host import ChatMessage
from storyspine.pipeline.chunker import chunk_messages
from storyspine.storage.sqlite_store import SQLiteStore
from storyspine.storage.vector_io import export_vectors, import_vectors
from storyspine.types import Atom, Edge

FP = "hash:blake2b:8"


def _vec(seed: int) -> np.ndarray:
    return np.random.default_rng(seed).standard_normal(8).astype(np.float32)


def _seed(sqlite: SQLiteStore, chat_id: str) -> None:
    messages = [ChatMessage(mes=f"第{i}楼的对话。", is_user=i % 2 == 0) for i in range(4)]
    chunks = chunk_messages(messages)
    sqlite.save_chunks(chat_id, chunks)
    sqlite.save_vectors(chat_id, "chunk", [(c.chunk_id, c.floor, _vec(i), None) for i, c in enumerate(chunks)], FP)
    sqlite.save_vectors(chat_id, "event", [("evt-1", None, _vec(10), None), ("evt-2", None, _vec(11), None)], FP)
    atoms = [
        Atom(atom_id="atom-1-0", floor=1, semantic="Bob递来一杯酒", edges=[Edge("Bob", "Alice", "递酒")], quality=0.5),
        Atom(atom_id="atom-3-0", floor=3, semantic="Alice一饮而尽"),
    ]
    sqlite.save_atoms(chat_id, atoms)
    sqlite.save_vectors(chat_id, "atom", [
        ("atom-1-0", 1, _vec(20), _vec(21)),
        ("atom-3-0", 3, _vec(22), None),
    ], FP)
    sqlite.update_meta(chat_id, fingerprint=FP, last_chunk_floor=3)


@pytest.fixture
def sqlite(tmp_path):
    db = SQLiteStore(tmp_path / "io.db")
    yield db
    db.close()


def test_round_trip_into_fresh_database(sqlite, tmp_path):
    _seed(sqlite, "source")
    info = export_vectors(sqlite, "source", tmp_path / "out" / "vectors.zip")
    assert (info["chunk_count"], info["event_count"], info["atom_count"]) == (4, 2, 2)

    fresh = SQLiteStore(tmp_path / "fresh.db")
    try:
        result = import_vectors(fresh, "target", info["path"], current_fingerprint=FP)
        assert not result.fingerprint_mismatch
        assert (result.chunk_count, result.event_count, result.atom_count, result.state_vector_count) == (4, 2, 2, 2)
        assert any("source" in w for w in result.warnings)

        meta = fresh.get_meta("target")
        assert (meta.fingerprint, meta.last_chunk_floor) == (FP, 3)
        assert [a.edges[0].r for a in fresh.get_atoms("target") if a.edges] == ["递酒"]

        atom_vecs = fresh.get_vectors("target", "atom")
        floor, vec, rvec = atom_vecs["atom-1-0"]
        assert floor == 1
        np.testing.assert_allclose(vec, _vec(20))
        np.testing.assert_allclose(rvec, _vec(21))
        assert atom_vecs["atom-3-0"][2] is None
        np.testing.assert_allclose(fresh.get_vectors("target", "event")["evt-2"][1], _vec(11))
        assert fresh.count_vectors("target", "chunk") == 4
    finally:
        fresh.close()


def test_fingerprint_mismatch_is_reported(sqlite, tmp_path):
    _seed(sqlite, "source")
    path = export_vectors(sqlite, "source", tmp_path / "v.zip")["path"]
    result = import_vectors(sqlite, "source", path, current_fingerprint="siliconflow:bge-m3:1024")
    assert result.fingerprint_mismatch
    assert result.warnings


def test_count_mismatch_leaves_data_untouched(sqlite, tmp_path):
    _seed(sqlite, "source")
    good = tmp_path / "good.zip"
    export_vectors(sqlite, "source", good)

    bad = tmp_path / "bad.zip"
    with zipfile.ZipFile(good) as src, zipfile.ZipFile(bad, "w") as dst:
        for name in src.namelist():
            data = src.read(name)
            if name == "chunk_vectors.bin":
                data = data[: 8 * 4 * 3]
            dst.writestr(name, data)

    with pytest.raises(VectorIOError, match="chunk count mismatch"):
        import_vectors(sqlite, "source", bad)
    assert sqlite.count_chunks("source") == 4
    assert sqlite.count_vectors("source", "event") == 2


def test_unsupported_version_and_garbage_are_rejected(tmp_path, sqlite):
    archive = tmp_path / "future.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("manifest.json", orjson.dumps({"version": 9, "chat_id": "x"}))
    with pytest.raises(VectorIOError, match="unsupported"):
        import_vectors(sqlite, "x", archive)

    garbage = tmp_path / "garbage.zip"
    garbage.write_bytes(b"not a zip")
    with pytest.raises(VectorIOError):
        import_vectors(sqlite, "x", garbage)


def test_export_without_vectors_fails(sqlite, tmp_path):
    with pytest.raises(VectorIOError):
        export_vectors(sqlite, "empty", tmp_path / "empty.zip")


def test_failed_restore_keeps_previous_vectors(sqlite, tmp_path, monkeypatch):
    _seed(sqlite, "source")
    info = export_vectors(sqlite, "source", tmp_path / "vectors.zip")

    def broken_save(chat_id, atoms):
        raise StorageError("disk full")

    monkeypatch.setattr(sqlite, "save_atoms", broken_save)
    with pytest.raises(StorageError):
        import_vectors(sqlite, "source", info["path"], current_fingerprint=FP)

    # the clear ran before the failure and was rolled back with it
    assert sqlite.count_chunks("source") == 4
    assert sqlite.count_vectors("source", "chunk") == 4
    assert sqlite.count_vectors("source", "event") == 2
    assert sqlite.count_vectors("source", "atom") == 2
    assert [a.atom_id for a in sqlite.get_atoms("source")] == ["atom-1-0", "atom-3-0"]
    assert sqlite.get_meta("source").last_chunk_floor == 3


def test_nested_transactions_commit_once(sqlite):
    with pytest.raises(RuntimeError):
        with sqlite.transaction():
            sqlite.save_vectors("source", "event", [("evt-1", None, _vec(1), None)], FP)
            sqlite.update_meta("source", fingerprint=FP)
            raise RuntimeError("abort")
    assert sqlite.count_vectors("source", "event") == 0
    assert sqlite.get_meta("source").fingerprint is None
