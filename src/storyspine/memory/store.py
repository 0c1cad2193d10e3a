"""Summary-state merges, checkpoints and rollback.

Every function here is pure: inputs are deep-copied before modification and
a whole new structure is returned. ``MemoryStore`` persists the result and
then swaps it in, so readers always see a complete snapshot.
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Any

from storyspine.storage.sqlite_store import SQLiteStore
from storyspine.types import (
    Arc,
    ArcMoment,
    Character,
    Checkpoint,
    Fact,
    FactUpdate,
    Keyword,
    StoryDelta,
    StoryState,
    SummarySnapshot,
)
from storyspine.utils import is_relation_predicate, relation_target

logger = logging.getLogger(__name__)

FACT_CAP_PER_SUBJECT = 10
_FACT_ID_RE = re.compile(r"^f-(\d+)$")
_EVENT_ID_RE = re.compile(r"^evt-(\d+)$")


def _added(v: int | None) -> int:
    return v if v is not None else 0


# --- Facts ---

def next_fact_id(facts: list[Fact]) -> int:
    max_id = 0
    for f in facts:
        m = _FACT_ID_RE.match(f.id or "")
        if m:
            max_id = max(max_id, int(m.group(1)))
    return max_id + 1


def merge_facts(existing: list[Fact], updates: list[FactUpdate], floor: int) -> list[Fact]:
    """Apply fact updates keyed by (s, p) and prune per-subject overflow.

    Overwrites keep the original id, ``added_at`` and ``is_state``; ``since``
    moves to ``floor``. Non-state facts beyond FACT_CAP_PER_SUBJECT for one
    subject are dropped oldest ``added_at`` first.
    """
    by_key: dict[str, Fact] = {f.key: copy.deepcopy(f) for f in existing or []}
    next_id = next_fact_id(list(by_key.values()))

    for u in updates or []:
        s = (u.s or "").strip()
        p = (u.p or "").strip()
        if not s or not p:
            continue
        key = f"{s}::{p}"
        if u.retracted:
            by_key.pop(key, None)
            continue
        o = (u.o or "").strip()
        if not o:
            continue

        prev = by_key.get(key)
        if prev is not None:
            fact_id = prev.id
        else:
            fact_id = f"f-{next_id}"
            next_id += 1
        by_key[key] = Fact(
            id=fact_id,
            s=s,
            p=p,
            o=o,
            since=floor,
            added_at=prev.added_at if prev is not None and prev.added_at is not None else floor,
            is_state=prev.is_state if prev is not None else bool(u.is_state),
            trend=u.trend if (u.trend and is_relation_predicate(p)) else None,
        )

    facts = list(by_key.values())
    by_subject: dict[str, list[Fact]] = {}
    for f in facts:
        if f.is_state:
            continue
        by_subject.setdefault(f.s, []).append(f)

    dropped: set[str] = set()
    for subject, subject_facts in by_subject.items():
        if len(subject_facts) <= FACT_CAP_PER_SUBJECT:
            continue
        # sorted() is stable, so ties keep insertion order
        ordered = sorted(subject_facts, key=lambda f: _added(f.added_at))
        overflow = ordered[: len(ordered) - FACT_CAP_PER_SUBJECT]
        dropped.update(f.key for f in overflow)
        logger.debug("pruned %d facts for subject %s", len(overflow), subject)

    return [f for f in facts if f.key not in dropped]


def extract_relationships(facts: list[Fact]) -> list[dict[str, Any]]:
    out = []
    for f in facts or []:
        target = relation_target(f.p)
        if target is None:
            continue
        out.append({"from": f.s, "to": target, "label": f.o, "trend": f.trend or "陌生"})
    return out


# --- Story state ---

def merge_new_data(old: StoryState | None, delta: StoryDelta, end_floor: int) -> StoryState:
    """Fold a sanitized delta into the summary state, stamping ``end_floor``."""
    merged = copy.deepcopy(old) if old is not None else StoryState()

    if delta.keywords:
        merged.keywords = [
            Keyword(text=k.text, weight=k.weight, added_at=end_floor) for k in delta.keywords
        ]

    for ev in delta.events:
        new_ev = copy.deepcopy(ev)
        new_ev.added_at = end_floor
        merged.events.append(new_ev)

    existing_names = {c.name for c in merged.characters}
    for name in delta.new_characters:
        if name and name not in existing_names:
            merged.characters.append(Character(name=name, added_at=end_floor))
            existing_names.add(name)

    arcs_by_name = {a.name: a for a in merged.arcs}
    for upd in delta.arc_updates:
        if not upd.name:
            continue
        arc = arcs_by_name.get(upd.name)
        if arc is None:
            arc = Arc(
                name=upd.name,
                trajectory=upd.trajectory,
                progress=upd.progress,
                moments=[ArcMoment(text=upd.new_moment, added_at=end_floor)] if upd.new_moment else [],
                added_at=end_floor,
            )
            merged.arcs.append(arc)
            arcs_by_name[upd.name] = arc
            continue
        arc.trajectory = upd.trajectory
        arc.progress = upd.progress
        if upd.new_moment:
            arc.moments.append(ArcMoment(text=upd.new_moment, added_at=end_floor))

    merged.facts = merge_facts(merged.facts, delta.fact_updates, end_floor)
    return merged


def next_event_id(events: list[Any]) -> int:
    max_id = 0
    for e in events or []:
        m = _EVENT_ID_RE.match(getattr(e, "id", "") or "")
        if m:
            max_id = max(max_id, int(m.group(1)))
    return max_id + 1


# --- Checkpoints & rollback ---

def add_checkpoint(snapshot: SummarySnapshot, end_floor: int) -> SummarySnapshot:
    out = copy.deepcopy(snapshot)
    out.history.append(Checkpoint(end_floor=end_floor))
    return out


def find_rollback_target(history: list[Checkpoint], deleted_from: int) -> int:
    """Latest checkpoint end strictly before ``deleted_from``; -1 when none."""
    target = -1
    for cp in history:
        if cp.end_floor < deleted_from and cp.end_floor > target:
            target = cp.end_floor
    return target


def rollback_to(snapshot: SummarySnapshot, target: int) -> tuple[SummarySnapshot, list[str]]:
    """Return the snapshot as of checkpoint ``target`` plus the removed event ids.

    ``target < 0`` resets to empty memory.
    """
    old_state = snapshot.state
    all_event_ids = [e.id for e in old_state.events] if old_state else []
    if target < 0:
        return SummarySnapshot(last_summarized=-1, state=None, history=[]), all_event_ids

    state = copy.deepcopy(old_state) if old_state is not None else StoryState()

    def keep(v: int | None) -> bool:
        return _added(v) <= target

    removed = [e.id for e in state.events if not keep(e.added_at)]
    state.events = [e for e in state.events if keep(e.added_at)]
    state.keywords = [k for k in state.keywords if keep(k.added_at)]
    state.characters = [c for c in state.characters if keep(c.added_at)]
    arcs = []
    for arc in state.arcs:
        if not keep(arc.added_at):
            continue
        arc.moments = [m for m in arc.moments if keep(m.added_at)]
        arcs.append(arc)
    state.arcs = arcs
    state.facts = [f for f in state.facts if keep(f.added_at)]

    history = [Checkpoint(end_floor=h.end_floor) for h in snapshot.history if h.end_floor <= target]
    return SummarySnapshot(last_summarized=target, state=state, history=history), removed


def calc_hide_range(boundary: int, keep_visible: int | None = 6) -> dict[str, int] | None:
    """Floors that the host may hide: everything summarized except the last few."""
    try:
        keep = max(0, min(50, int(keep_visible if keep_visible is not None else 6)))
    except (TypeError, ValueError):
        keep = 6
    end = boundary - keep
    if end < 0:
        return None
    return {"start": 0, "end": end}


class MemoryStore:
    """Per-chat summary store with persist-then-swap commits."""

    def __init__(self, sqlite: SQLiteStore, chat_id: str) -> None:
        self.sqlite = sqlite
        self.chat_id = chat_id
        self._snapshot = sqlite.load_summary(chat_id)

    @property
    def snapshot(self) -> SummarySnapshot:
        return self._snapshot

    @property
    def state(self) -> StoryState:
        return self._snapshot.state or StoryState()

    @property
    def last_summarized(self) -> int:
        return self._snapshot.last_summarized

    def facts(self) -> list[Fact]:
        return list(self.state.facts)

    def commit(self, snapshot: SummarySnapshot) -> None:
        # Persist first; a storage failure leaves the previous snapshot in place.
        self.sqlite.save_summary(self.chat_id, snapshot)
        self._snapshot = snapshot

    def reload(self) -> None:
        self._snapshot = self.sqlite.load_summary(self.chat_id)
