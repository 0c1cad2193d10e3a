"""In-memory FAISS index over one vector kind of one chat."""

from __future__ import annotations

import faiss
import numpy as np

from storyspine.exceptions import StorageError


class VectorIndex:
    """Read-only cosine index over a snapshot of stored vectors.

    Rows are L2-normalized on load, so inner product equals cosine. The
    index is rebuilt from SQLite for every recall and never writes back.
    """

    def __init__(self, ids: list[str], matrix: np.ndarray) -> None:
        if len(ids) != len(matrix):
            raise StorageError(f"{len(ids)} ids for {len(matrix)} vectors")
        self.ids = list(ids)
        self.dims = int(matrix.shape[1]) if matrix.ndim == 2 and len(ids) else 0
        self._row = {vid: row for row, vid in enumerate(self.ids)}
        self._index: faiss.Index = faiss.IndexFlatIP(self.dims or 1)
        if self.dims:
            rows = np.ascontiguousarray(matrix, dtype=np.float32)
            faiss.normalize_L2(rows)
            self._index.add(rows)

    @classmethod
    def from_vectors(cls, vectors: dict[str, np.ndarray]) -> VectorIndex:
        """Index every vector sharing the first non-empty vector's dimension."""
        sized = {vid: vec for vid, vec in vectors.items() if vec is not None and vec.size}
        if not sized:
            return cls([], np.zeros((0, 0), dtype=np.float32))
        dims = next(iter(sized.values())).size
        ids = [vid for vid, vec in sized.items() if vec.size == dims]
        return cls(ids, np.stack([sized[vid].reshape(-1) for vid in ids]))

    @property
    def size(self) -> int:
        return self._index.ntotal if self.dims else 0

    def __contains__(self, vid: str) -> bool:
        return vid in self._row

    def _query(self, vector: np.ndarray) -> np.ndarray | None:
        q = np.ascontiguousarray(np.asarray(vector, dtype=np.float32).reshape(1, -1))
        if not self.size or q.shape[1] != self.dims:
            return None
        faiss.normalize_L2(q)
        return q

    def search(self, vector: np.ndarray, top_k: int = 20) -> list[tuple[str, float]]:
        """Nearest neighbours as ``[(id, cosine), ...]``, best first."""
        q = self._query(vector)
        if q is None or top_k <= 0:
            return []
        scores, rows = self._index.search(q, min(top_k, self.size))
        return [(self.ids[r], float(s)) for s, r in zip(scores[0], rows[0]) if 0 <= r < len(self.ids)]

    def score_all(self, vector: np.ndarray) -> dict[str, float]:
        return dict(self.search(vector, top_k=self.size))

    def get_vector(self, vid: str) -> np.ndarray | None:
        """Stored (normalized) vector for ``vid``."""
        row = self._row.get(vid)
        if row is None:
            return None
        return self._index.reconstruct(row).astype(np.float32)
