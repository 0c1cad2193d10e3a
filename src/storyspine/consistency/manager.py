"""Keeps derived memory consistent with host-side message mutations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from storyspine.host import HostEvent
from storyspine.memory.store import MemoryStore, find_rollback_target, rollback_to
from storyspine.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

_KIND_ALIASES = {
    HostEvent.DELETED.value: "deleted",
    HostEvent.SWIPED.value: "swiped",
    HostEvent.EDITED.value: "edited",
    HostEvent.CHAT_CHANGED.value: "chat_changed",
}


@dataclass
class ConsistencyReport:
    kind: str
    floor: int
    rolled_back: bool = False
    rollback_target: int | None = None
    removed_event_ids: list[str] = field(default_factory=list)
    chunks_removed: int = 0
    atoms_removed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "floor": self.floor,
            "rolled_back": self.rolled_back,
            "rollback_target": self.rollback_target,
            "removed_event_ids": list(self.removed_event_ids),
            "chunks_removed": self.chunks_removed,
            "atoms_removed": self.atoms_removed,
        }


def normalize_kind(kind: HostEvent | str) -> str:
    value = kind.value if isinstance(kind, HostEvent) else str(kind)
    return _KIND_ALIASES.get(value, value)


class ConsistencyManager:
    """Rolls the summary back and cascades deletes into chunks, atoms and vectors."""

    def __init__(self, sqlite: SQLiteStore, store: MemoryStore) -> None:
        self.sqlite = sqlite
        self.store = store

    @property
    def chat_id(self) -> str:
        return self.store.chat_id

    def rollback_from(self, floor: int) -> tuple[int, list[str]] | None:
        """Roll the summary back so nothing at or after ``floor`` is summarized.

        Returns ``(target, removed_event_ids)``, or None when nothing was
        summarized at ``floor`` or later. Running it twice is a no-op.
        """
        if self.store.last_summarized < floor:
            return None
        snapshot = self.store.snapshot
        target = find_rollback_target(snapshot.history, floor)
        rolled, removed = rollback_to(snapshot, target)
        try:
            with self.sqlite.transaction():
                self.store.commit(rolled)
                if target < 0:
                    self.sqlite.clear_vectors(self.chat_id, "event")
                elif removed:
                    self.sqlite.delete_vectors(self.chat_id, "event", removed)
        except Exception:
            # the snapshot row was rolled back with the vectors
            self.store.reload()
            raise
        logger.warning(
            "rolled summary back to floor %d (deleted from %d, %d events removed)",
            target, floor, len(removed),
        )
        return target, removed

    def on_message(self, kind: HostEvent | str, floor: int) -> ConsistencyReport:
        k = normalize_kind(kind)
        report = ConsistencyReport(kind=k, floor=floor)
        if k == "deleted":
            self._apply_rollback(report, floor)
            report.chunks_removed = len(self.sqlite.delete_chunks_from_floor(self.chat_id, floor))
            report.atoms_removed = self.sqlite.delete_atoms_from_floor(self.chat_id, floor)
            self._lower_chunk_floor(floor - 1)
        elif k == "swiped":
            report.chunks_removed = len(self.sqlite.delete_chunks_at_floor(self.chat_id, floor))
            report.atoms_removed = self.sqlite.delete_atoms_at_floor(self.chat_id, floor)
            self._lower_chunk_floor(floor - 1)
        elif k == "edited":
            self._apply_rollback(report, floor)
            report.chunks_removed = len(self.sqlite.delete_chunks_at_floor(self.chat_id, floor))
            report.atoms_removed = self.sqlite.delete_atoms_at_floor(self.chat_id, floor)
        elif k == "chat_changed":
            self.store.reload()
        else:
            raise ValueError(f"unknown message mutation: {kind}")
        return report

    def _apply_rollback(self, report: ConsistencyReport, floor: int) -> None:
        result = self.rollback_from(floor)
        if result is not None:
            report.rolled_back = True
            report.rollback_target, report.removed_event_ids = result

    def _lower_chunk_floor(self, floor: int) -> None:
        meta = self.sqlite.get_meta(self.chat_id)
        if meta.last_chunk_floor > floor:
            self.sqlite.update_meta(self.chat_id, last_chunk_floor=max(-1, floor))
