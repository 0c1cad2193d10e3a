"""SQLite persistence for per-chat memory tiers and vectors."""

from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

import numpy as np

from storyspine.exceptions import StorageError
from storyspine.types import Atom, Chunk, ChatMeta, Checkpoint, StoryState, SummarySnapshot
from storyspine.utils import iso_str, json_dumps, json_loads, utcnow

SCHEMA_VERSION = 1

VECTOR_KINDS = ("chunk", "event", "atom")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_meta (
    chat_id TEXT PRIMARY KEY,
    fingerprint TEXT,
    last_chunk_floor INTEGER NOT NULL DEFAULT -1,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS summary_store (
    chat_id TEXT PRIMARY KEY,
    last_summarized INTEGER NOT NULL DEFAULT -1,
    state TEXT,
    history TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    chat_id TEXT NOT NULL,
    chunk_id TEXT NOT NULL,
    floor INTEGER NOT NULL,
    chunk_idx INTEGER NOT NULL,
    speaker TEXT NOT NULL DEFAULT '',
    is_user INTEGER NOT NULL DEFAULT 0,
    text TEXT NOT NULL,
    text_hash TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (chat_id, chunk_id)
);
CREATE INDEX IF NOT EXISTS idx_chunks_floor ON chunks(chat_id, floor);

CREATE TABLE IF NOT EXISTS atoms (
    chat_id TEXT NOT NULL,
    atom_id TEXT NOT NULL,
    floor INTEGER NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (chat_id, atom_id)
);
CREATE INDEX IF NOT EXISTS idx_atoms_floor ON atoms(chat_id, floor);

CREATE TABLE IF NOT EXISTS vectors (
    chat_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    item_id TEXT NOT NULL,
    floor INTEGER,
    vector BLOB NOT NULL,
    r_vector BLOB,
    fingerprint TEXT,
    PRIMARY KEY (chat_id, kind, item_id)
);
CREATE INDEX IF NOT EXISTS idx_vectors_floor ON vectors(chat_id, kind, floor);
"""

_UNSET: Any = object()


def _to_blob(vec: Any) -> bytes:
    return np.asarray(vec, dtype="<f4").tobytes()


def _from_blob(blob: bytes | None) -> np.ndarray | None:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype="<f4").astype(np.float32)


class SQLiteStore:
    """Main SQLite storage backend."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._depth = 0
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.execute("PRAGMA busy_timeout=30000")
        self._init_schema()

    def _init_schema(self) -> None:
        for attempt in range(5):
            try:
                cur = self._conn.cursor()
                cur.executescript(_SCHEMA)
                cur.execute(
                    "INSERT OR IGNORE INTO meta(key, value) VALUES (?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )
                self._conn.commit()
                return
            except sqlite3.OperationalError as e:
                if "locked" in str(e) and attempt < 4:
                    time.sleep(2 * (attempt + 1))
                    continue
                raise

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit on exit, roll back on error. Nested blocks join the outermost one."""
        self._depth += 1
        try:
            if self._depth > 1:
                yield
            else:
                with self._conn:
                    yield
        finally:
            self._depth -= 1

    # --- Chat meta ---

    def get_meta(self, chat_id: str) -> ChatMeta:
        row = self._conn.execute("SELECT * FROM chat_meta WHERE chat_id=?", (chat_id,)).fetchone()
        if not row:
            return ChatMeta(chat_id=chat_id)
        return ChatMeta(
            chat_id=chat_id,
            fingerprint=row["fingerprint"],
            last_chunk_floor=int(row["last_chunk_floor"]),
        )

    def update_meta(self, chat_id: str, fingerprint: Any = _UNSET,
                    last_chunk_floor: int | None = None) -> ChatMeta:
        meta = self.get_meta(chat_id)
        if fingerprint is not _UNSET:
            meta.fingerprint = fingerprint
        if last_chunk_floor is not None:
            meta.last_chunk_floor = int(last_chunk_floor)
        with self.transaction():
            self._conn.execute(
                """INSERT INTO chat_meta(chat_id, fingerprint, last_chunk_floor, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(chat_id) DO UPDATE SET
                       fingerprint=excluded.fingerprint,
                       last_chunk_floor=excluded.last_chunk_floor,
                       updated_at=excluded.updated_at""",
                (chat_id, meta.fingerprint, meta.last_chunk_floor, iso_str(utcnow())),
            )
        return meta

    # --- Summary store ---

    def load_summary(self, chat_id: str) -> SummarySnapshot:
        row = self._conn.execute("SELECT * FROM summary_store WHERE chat_id=?", (chat_id,)).fetchone()
        if not row:
            return SummarySnapshot()
        state = StoryState.from_dict(json_loads(row["state"])) if row["state"] else None
        history = [Checkpoint(end_floor=int(h["end_floor"])) for h in json_loads(row["history"] or "[]")]
        return SummarySnapshot(last_summarized=int(row["last_summarized"]), state=state, history=history)

    def save_summary(self, chat_id: str, snapshot: SummarySnapshot) -> None:
        state_json = json_dumps(snapshot.state.to_dict()) if snapshot.state is not None else None
        history_json = json_dumps([{"end_floor": h.end_floor} for h in snapshot.history])
        try:
            with self.transaction():
                self._conn.execute(
                    """INSERT INTO summary_store(chat_id, last_summarized, state, history, updated_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(chat_id) DO UPDATE SET
                           last_summarized=excluded.last_summarized,
                           state=excluded.state,
                           history=excluded.history,
                           updated_at=excluded.updated_at""",
                    (chat_id, snapshot.last_summarized, state_json, history_json, iso_str(utcnow())),
                )
        except sqlite3.Error as e:
            raise StorageError(f"failed to save summary for {chat_id}: {e}") from e

    # --- Chunks ---

    def save_chunks(self, chat_id: str, chunks: Iterable[Chunk]) -> int:
        rows = [
            (chat_id, c.chunk_id, c.floor, c.chunk_idx, c.speaker, int(c.is_user), c.text, c.text_hash)
            for c in chunks
        ]
        with self.transaction():
            self._conn.executemany(
                """INSERT OR REPLACE INTO chunks(chat_id, chunk_id, floor, chunk_idx, speaker,
                   is_user, text, text_hash) VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
        return len(rows)

    def get_chunks(self, chat_id: str, floors: Iterable[int] | None = None) -> list[Chunk]:
        if floors is None:
            rows = self._conn.execute(
                "SELECT * FROM chunks WHERE chat_id=? ORDER BY floor, chunk_idx", (chat_id,)
            ).fetchall()
        else:
            floor_list = sorted({int(f) for f in floors})
            if not floor_list:
                return []
            marks = ",".join("?" for _ in floor_list)
            rows = self._conn.execute(
                f"SELECT * FROM chunks WHERE chat_id=? AND floor IN ({marks}) ORDER BY floor, chunk_idx",
                (chat_id, *floor_list),
            ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    def delete_chunks_from_floor(self, chat_id: str, floor: int) -> list[str]:
        ids = [r[0] for r in self._conn.execute(
            "SELECT chunk_id FROM chunks WHERE chat_id=? AND floor>=?", (chat_id, floor)
        ).fetchall()]
        with self.transaction():
            self._conn.execute("DELETE FROM chunks WHERE chat_id=? AND floor>=?", (chat_id, floor))
            self._conn.execute(
                "DELETE FROM vectors WHERE chat_id=? AND kind='chunk' AND floor>=?", (chat_id, floor)
            )
        return ids

    def delete_chunks_at_floor(self, chat_id: str, floor: int) -> list[str]:
        ids = [r[0] for r in self._conn.execute(
            "SELECT chunk_id FROM chunks WHERE chat_id=? AND floor=?", (chat_id, floor)
        ).fetchall()]
        with self.transaction():
            self._conn.execute("DELETE FROM chunks WHERE chat_id=? AND floor=?", (chat_id, floor))
            self._conn.execute(
                "DELETE FROM vectors WHERE chat_id=? AND kind='chunk' AND floor=?", (chat_id, floor)
            )
        return ids

    def clear_chunks(self, chat_id: str) -> None:
        with self.transaction():
            self._conn.execute("DELETE FROM chunks WHERE chat_id=?", (chat_id,))
            self._conn.execute("DELETE FROM vectors WHERE chat_id=? AND kind='chunk'", (chat_id,))

    def count_chunks(self, chat_id: str) -> int:
        row = self._conn.execute("SELECT COUNT(*) FROM chunks WHERE chat_id=?", (chat_id,)).fetchone()
        return row[0]

    # --- Atoms ---

    def save_atoms(self, chat_id: str, atoms: Iterable[Atom]) -> int:
        """Upsert atoms keyed by atom_id; malformed atoms are skipped."""
        by_id: dict[str, Atom] = {}
        for atom in atoms:
            if not atom.atom_id or not isinstance(atom.floor, int) or atom.floor < 0:
                continue
            if not (atom.semantic or "").strip():
                continue
            by_id[atom.atom_id] = atom
        rows = [(chat_id, a.atom_id, a.floor, json_dumps(a.to_dict())) for a in by_id.values()]
        with self.transaction():
            self._conn.executemany(
                "INSERT OR REPLACE INTO atoms(chat_id, atom_id, floor, data) VALUES (?, ?, ?, ?)",
                rows,
            )
        return len(rows)

    def get_atoms(self, chat_id: str) -> list[Atom]:
        rows = self._conn.execute(
            "SELECT data FROM atoms WHERE chat_id=? ORDER BY floor, atom_id", (chat_id,)
        ).fetchall()
        return [Atom.from_dict(json_loads(r["data"])) for r in rows]

    def delete_atoms_from_floor(self, chat_id: str, floor: int) -> int:
        with self.transaction():
            cur = self._conn.execute("DELETE FROM atoms WHERE chat_id=? AND floor>=?", (chat_id, floor))
            self._conn.execute(
                "DELETE FROM vectors WHERE chat_id=? AND kind='atom' AND floor>=?", (chat_id, floor)
            )
        return cur.rowcount

    def delete_atoms_at_floor(self, chat_id: str, floor: int) -> int:
        with self.transaction():
            cur = self._conn.execute("DELETE FROM atoms WHERE chat_id=? AND floor=?", (chat_id, floor))
            self._conn.execute(
                "DELETE FROM vectors WHERE chat_id=? AND kind='atom' AND floor=?", (chat_id, floor)
            )
        return cur.rowcount

    def clear_atoms(self, chat_id: str) -> None:
        with self.transaction():
            self._conn.execute("DELETE FROM atoms WHERE chat_id=?", (chat_id,))
            self._conn.execute("DELETE FROM vectors WHERE chat_id=? AND kind='atom'", (chat_id,))

    # --- Vectors ---

    def save_vectors(
        self,
        chat_id: str,
        kind: str,
        items: list[tuple[str, int | None, Any, Any]],
        fingerprint: str | None,
    ) -> int:
        """Write one batch of ``(item_id, floor, vector, r_vector)`` in a single transaction."""
        if kind not in VECTOR_KINDS:
            raise StorageError(f"unknown vector kind: {kind}")
        rows = [
            (
                chat_id, kind, item_id, floor, _to_blob(vec),
                _to_blob(r_vec) if r_vec is not None else None, fingerprint,
            )
            for item_id, floor, vec, r_vec in items
        ]
        try:
            with self.transaction():
                self._conn.executemany(
                    """INSERT OR REPLACE INTO vectors(chat_id, kind, item_id, floor, vector,
                       r_vector, fingerprint) VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    rows,
                )
        except sqlite3.Error as e:
            raise StorageError(f"failed to save {kind} vectors: {e}") from e
        return len(rows)

    def get_vectors(self, chat_id: str, kind: str) -> dict[str, tuple[int | None, np.ndarray, np.ndarray | None]]:
        rows = self._conn.execute(
            "SELECT item_id, floor, vector, r_vector FROM vectors WHERE chat_id=? AND kind=? ORDER BY item_id",
            (chat_id, kind),
        ).fetchall()
        return {
            r["item_id"]: (r["floor"], _from_blob(r["vector"]), _from_blob(r["r_vector"]))
            for r in rows
        }

    def delete_vectors(self, chat_id: str, kind: str, item_ids: Iterable[str]) -> int:
        ids = list(item_ids)
        if not ids:
            return 0
        with self.transaction():
            cur = self._conn.executemany(
                "DELETE FROM vectors WHERE chat_id=? AND kind=? AND item_id=?",
                [(chat_id, kind, i) for i in ids],
            )
        return cur.rowcount

    def clear_vectors(self, chat_id: str, kind: str | None = None) -> None:
        with self.transaction():
            if kind is None:
                self._conn.execute("DELETE FROM vectors WHERE chat_id=?", (chat_id,))
            else:
                self._conn.execute("DELETE FROM vectors WHERE chat_id=? AND kind=?", (chat_id, kind))

    def count_vectors(self, chat_id: str, kind: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM vectors WHERE chat_id=? AND kind=?", (chat_id, kind)
        ).fetchone()
        return row[0]

    # --- Whole chat ---

    def clear_chat(self, chat_id: str) -> None:
        with self.transaction():
            for table in ("chunks", "atoms", "vectors", "summary_store", "chat_meta"):
                self._conn.execute(f"DELETE FROM {table} WHERE chat_id=?", (chat_id,))

    def status(self, chat_id: str) -> dict[str, Any]:
        meta = self.get_meta(chat_id)
        snap = self.load_summary(chat_id)
        atom_count = self._conn.execute(
            "SELECT COUNT(*) FROM atoms WHERE chat_id=?", (chat_id,)
        ).fetchone()[0]
        return {
            "chat_id": chat_id,
            "fingerprint": meta.fingerprint,
            "last_chunk_floor": meta.last_chunk_floor,
            "last_summarized": snap.last_summarized,
            "checkpoints": len(snap.history),
            "events": len(snap.state.events) if snap.state else 0,
            "facts": len(snap.state.facts) if snap.state else 0,
            "chunks": self.count_chunks(chat_id),
            "atoms": atom_count,
            "chunk_vectors": self.count_vectors(chat_id, "chunk"),
            "event_vectors": self.count_vectors(chat_id, "event"),
            "atom_vectors": self.count_vectors(chat_id, "atom"),
        }

    def _row_to_chunk(self, row: sqlite3.Row) -> Chunk:
        return Chunk(
            chunk_id=row["chunk_id"],
            floor=int(row["floor"]),
            chunk_idx=int(row["chunk_idx"]),
            speaker=row["speaker"],
            is_user=bool(row["is_user"]),
            text=row["text"],
            text_hash=row["text_hash"],
        )
