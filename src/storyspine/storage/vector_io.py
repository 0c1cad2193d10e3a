"""Per-chat vector archive: export to and import from a zip file.

Layout::

    manifest.json
    chunks.jsonl          chunk_vectors.bin
    events.jsonl          event_vectors.bin
    state_atoms.json
    state_vectors.jsonl   state_vectors.bin   state_r_vectors.bin

Each ``.bin`` holds little-endian float32 rows in the order of its metadata
file. Missing vectors are exported as zero rows.
"""

from __future__ import annotations

import logging
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import orjson

from storyspine.exceptions import VectorIOError
from storyspine.storage.sqlite_store import SQLiteStore
from storyspine.types import Atom, Chunk

logger = logging.getLogger(__name__)

EXPORT_VERSION = 2
SUPPORTED_VERSIONS = (1, 2)
_F32 = np.dtype("<f4")


@dataclass
class ImportResult:
    chunk_count: int = 0
    event_count: int = 0
    atom_count: int = 0
    state_vector_count: int = 0
    fingerprint_mismatch: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_count": self.chunk_count,
            "event_count": self.event_count,
            "atom_count": self.atom_count,
            "state_vector_count": self.state_vector_count,
            "fingerprint_mismatch": self.fingerprint_mismatch,
            "warnings": list(self.warnings),
        }


def _rows_to_bytes(rows: list[np.ndarray | None], dims: int) -> bytes:
    if not rows:
        return b""
    mat = np.zeros((len(rows), dims), dtype=_F32)
    for i, row in enumerate(rows):
        if row is not None and row.size == dims:
            mat[i] = row
    return mat.tobytes()


def _bytes_to_rows(data: bytes, dims: int) -> np.ndarray:
    if not data or dims <= 0:
        return np.zeros((0, max(dims, 0)), dtype=np.float32)
    if len(data) % (dims * 4):
        raise VectorIOError(f"vector blob of {len(data)} bytes is not a multiple of {dims} float32")
    return np.frombuffer(data, dtype=_F32).reshape(-1, dims).astype(np.float32)


def _jsonl(items: list[dict[str, Any]]) -> bytes:
    return b"\n".join(orjson.dumps(i) for i in items)


def _read_jsonl(zf: zipfile.ZipFile, name: str) -> list[dict[str, Any]]:
    if name not in zf.namelist():
        return []
    return [orjson.loads(line) for line in zf.read(name).splitlines() if line.strip()]


def export_vectors(sqlite: SQLiteStore, chat_id: str, path: Path | str) -> dict[str, Any]:
    """Write the chat's chunks, atoms and all vectors to ``path``."""
    meta = sqlite.get_meta(chat_id)
    chunks = sorted(sqlite.get_chunks(chat_id), key=lambda c: c.chunk_id)
    chunk_vecs = sqlite.get_vectors(chat_id, "chunk")
    event_vecs = sqlite.get_vectors(chat_id, "event")
    atom_vecs = sqlite.get_vectors(chat_id, "atom")
    atoms = sqlite.get_atoms(chat_id)

    if not chunk_vecs and not event_vecs and not atom_vecs:
        raise VectorIOError("no vectors to export")

    dims = 0
    for group in (chunk_vecs, event_vecs, atom_vecs):
        for _, vec, _ in group.values():
            if vec is not None and vec.size:
                dims = int(vec.size)
                break
        if dims:
            break
    if not dims:
        raise VectorIOError("cannot determine vector dimensions")

    atom_ids = sorted(atom_vecs)
    r_dims = next((int(atom_vecs[a][2].size) for a in atom_ids if atom_vecs[a][2] is not None), dims)
    event_ids = sorted(event_vecs)

    manifest = {
        "version": EXPORT_VERSION,
        "exported_at": int(time.time() * 1000),
        "chat_id": chat_id,
        "fingerprint": meta.fingerprint or "",
        "dims": dims,
        "chunk_count": len(chunks),
        "chunk_vector_count": len(chunk_vecs),
        "event_count": len(event_ids),
        "state_atom_count": len(atoms),
        "state_vector_count": len(atom_ids),
        "state_r_vector_count": sum(1 for a in atom_ids if atom_vecs[a][2] is not None),
        "r_dims": r_dims,
        "last_chunk_floor": meta.last_chunk_floor,
    }

    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=1) as zf:
        zf.writestr("manifest.json", orjson.dumps(manifest, option=orjson.OPT_INDENT_2))
        zf.writestr("chunks.jsonl", _jsonl([c.to_dict() for c in chunks]))
        zf.writestr("chunk_vectors.bin", _rows_to_bytes(
            [chunk_vecs[c.chunk_id][1] if c.chunk_id in chunk_vecs else None for c in chunks], dims))
        zf.writestr("events.jsonl", _jsonl([{"event_id": e} for e in event_ids]))
        zf.writestr("event_vectors.bin", _rows_to_bytes([event_vecs[e][1] for e in event_ids], dims))
        zf.writestr("state_atoms.json", orjson.dumps([a.to_dict() for a in atoms]))
        zf.writestr("state_vectors.jsonl", _jsonl([
            {
                "atom_id": a,
                "floor": atom_vecs[a][0],
                "has_r_vector": atom_vecs[a][2] is not None,
                "r_dims": int(atom_vecs[a][2].size) if atom_vecs[a][2] is not None else 0,
            }
            for a in atom_ids
        ]))
        zf.writestr("state_vectors.bin", _rows_to_bytes([atom_vecs[a][1] for a in atom_ids], dims))
        zf.writestr("state_r_vectors.bin", _rows_to_bytes([atom_vecs[a][2] for a in atom_ids], r_dims))

    size = out.stat().st_size
    logger.info("exported vectors for %s to %s (%d bytes)", chat_id, out, size)
    return {
        "path": str(out),
        "size": size,
        "chunk_count": len(chunks),
        "event_count": len(event_ids),
        "atom_count": len(atoms),
    }


def import_vectors(
    sqlite: SQLiteStore,
    chat_id: str,
    path: Path | str,
    current_fingerprint: str | None = None,
) -> ImportResult:
    """Replace the chat's chunks, atoms and vectors with an archive's contents.

    Everything is validated before anything is cleared; a count mismatch
    aborts the import with ``VectorIOError``.
    """
    try:
        zf = zipfile.ZipFile(Path(path))
    except (zipfile.BadZipFile, OSError) as e:
        raise VectorIOError(f"cannot open archive: {e}") from e

    with zf:
        if "manifest.json" not in zf.namelist():
            raise VectorIOError("archive has no manifest.json")
        manifest = orjson.loads(zf.read("manifest.json"))
        version = manifest.get("version")
        if version not in SUPPORTED_VERSIONS:
            raise VectorIOError(f"unsupported archive version: {version}")

        result = ImportResult()
        fingerprint = manifest.get("fingerprint") or ""
        if fingerprint and current_fingerprint and fingerprint != current_fingerprint:
            result.fingerprint_mismatch = True
            result.warnings.append(
                f"archive fingerprint {fingerprint} differs from {current_fingerprint}; regenerate vectors"
            )
        if manifest.get("chat_id") != chat_id:
            result.warnings.append(f"archive chat {manifest.get('chat_id')} differs from {chat_id}")

        names = set(zf.namelist())

        def read(name: str) -> bytes:
            return zf.read(name) if name in names else b""

        dims = int(manifest.get("dims") or 0)
        r_dims = int(manifest.get("r_dims") or dims)
        chunk_metas = _read_jsonl(zf, "chunks.jsonl")
        chunk_rows = _bytes_to_rows(read("chunk_vectors.bin"), dims)
        event_metas = _read_jsonl(zf, "events.jsonl")
        event_rows = _bytes_to_rows(read("event_vectors.bin"), dims)
        atom_dicts = orjson.loads(read("state_atoms.json") or b"[]")
        state_metas = _read_jsonl(zf, "state_vectors.jsonl")
        state_rows = _bytes_to_rows(read("state_vectors.bin") if state_metas else b"", dims)
        r_rows = _bytes_to_rows(read("state_r_vectors.bin") if state_metas else b"", r_dims)

    if len(chunk_metas) != len(chunk_rows):
        raise VectorIOError(f"chunk count mismatch: {len(chunk_metas)} metas, {len(chunk_rows)} vectors")
    if len(event_metas) != len(event_rows):
        raise VectorIOError(f"event count mismatch: {len(event_metas)} metas, {len(event_rows)} vectors")
    if len(state_metas) != len(state_rows):
        raise VectorIOError(f"state vector count mismatch: {len(state_metas)} metas, {len(state_rows)} vectors")
    if len(r_rows) and len(r_rows) != len(state_metas):
        raise VectorIOError(f"state r-vector count mismatch: {len(state_metas)} metas, {len(r_rows)} vectors")

    try:
        chunks = [Chunk.from_dict(m) for m in chunk_metas]
        atoms = [Atom.from_dict(a) for a in atom_dicts]
        event_ids = [str(m["event_id"]) for m in event_metas]
        atom_ids = [str(m["atom_id"]) for m in state_metas]
    except (KeyError, TypeError, ValueError) as e:
        raise VectorIOError(f"malformed archive metadata: {e}") from e
    has_r_meta = any(isinstance(m.get("has_r_vector"), bool) for m in state_metas)

    # one commit: a failed restore leaves the previous vectors in place
    with sqlite.transaction():
        sqlite.clear_chunks(chat_id)
        sqlite.clear_vectors(chat_id)
        sqlite.clear_atoms(chat_id)

        fp = fingerprint or None
        if chunks:
            sqlite.save_chunks(chat_id, chunks)
            sqlite.save_vectors(chat_id, "chunk", [
                (c.chunk_id, c.floor, chunk_rows[i], None) for i, c in enumerate(chunks)
            ], fp)
        if event_ids:
            sqlite.save_vectors(chat_id, "event", [
                (eid, None, event_rows[i], None) for i, eid in enumerate(event_ids)
            ], fp)
        if atoms:
            sqlite.save_atoms(chat_id, atoms)
        if atom_ids:
            items = []
            for i, meta in enumerate(state_metas):
                use_r = len(r_rows) > 0 and (not has_r_meta or meta.get("has_r_vector"))
                items.append((atom_ids[i], meta.get("floor"), state_rows[i], r_rows[i] if use_r else None))
            sqlite.save_vectors(chat_id, "atom", items, fp)

        sqlite.update_meta(chat_id, fingerprint=fp, last_chunk_floor=int(manifest.get("last_chunk_floor", -1)))

    result.chunk_count = len(chunks)
    result.event_count = len(event_ids)
    result.atom_count = len(atoms)
    result.state_vector_count = len(atom_ids)
    for w in result.warnings:
        logger.warning("vector import: %s", w)
    logger.info(
        "imported %d chunks, %d events, %d atoms into %s",
        result.chunk_count, result.event_count, result.atom_count, chat_id,
    )
    return result
