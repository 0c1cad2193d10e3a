"""Semantic clean-up of a validated summary delta before it is merged."""

from __future__ import annotations

import re
from typing import Iterable

from storyspine.summary.parser import EventIn, FactUpdateIn, SummaryDelta
from storyspine.types import TRENDS, ArcUpdate, Event, FactUpdate, Keyword, StoryDelta

MAX_CAUSED_BY = 2

EVENT_ID_RE = re.compile(r"^evt-\d+$")
_RELATION_PREDICATE_RES = (re.compile(r"^对.+的看法$"), re.compile(r"^与.+的关系$"))


def is_relation_fact_predicate(p: str) -> bool:
    return any(rx.match(p) for rx in _RELATION_PREDICATE_RES)


def sanitize_fact_updates(updates: Iterable[FactUpdateIn]) -> list[FactUpdate]:
    out: list[FactUpdate] = []
    for item in updates:
        s = (item.s or "").strip()
        p = (item.p or "").strip()
        if not s or not p:
            continue
        if item.retracted:
            out.append(FactUpdate(s=s, p=p, retracted=True))
            continue
        o = (item.o or "").strip()
        if not o:
            continue
        trend = None
        if is_relation_fact_predicate(p) and item.trend in TRENDS:
            trend = item.trend
        out.append(FactUpdate(s=s, p=p, o=o, is_state=bool(item.is_state), trend=trend))
    return out


def sanitize_causality(events: list[EventIn], existing_ids: Iterable[str]) -> list[list[str]]:
    """Allowed ``caused_by`` list for each event, in input order.

    An entry survives only if it is well-formed, not the event itself, known
    (pre-existing or in this batch) and not a duplicate; at most two are kept.
    Longer cycles through other events are not detected.
    """
    new_ids = {e.id.strip() for e in events if EVENT_ID_RE.match(e.id.strip())}
    allowed = set(existing_ids) | new_ids
    result: list[list[str]] = []
    for ev in events:
        self_id = ev.id.strip()
        if not EVENT_ID_RE.match(self_id):
            result.append([])
            continue
        kept: list[str] = []
        for raw in ev.caused_by:
            cid = str(raw or "").strip()
            if not EVENT_ID_RE.match(cid) or cid == self_id or cid not in allowed or cid in kept:
                continue
            kept.append(cid)
            if len(kept) >= MAX_CAUSED_BY:
                break
        result.append(kept)
    return result


def to_story_delta(delta: SummaryDelta, existing_event_ids: Iterable[str]) -> StoryDelta:
    caused = sanitize_causality(delta.events, existing_event_ids)
    events = [
        Event(
            id=ev.id.strip(),
            title=ev.title.strip(),
            time_label=ev.time_label.strip(),
            summary=ev.summary.strip(),
            participants=[p.strip() for p in ev.participants if p and p.strip()],
            type=ev.type,
            weight=ev.weight,
            caused_by=cb,
        )
        for ev, cb in zip(delta.events, caused)
    ]
    return StoryDelta(
        keywords=[Keyword(text=k.text.strip(), weight=k.weight) for k in delta.keywords if k.text.strip()],
        events=events,
        new_characters=[n.strip() for n in delta.new_characters if n and n.strip()],
        arc_updates=[
            ArcUpdate(
                name=a.name.strip(),
                trajectory=a.trajectory.strip(),
                progress=a.progress,
                new_moment=a.new_moment.strip(),
            )
            for a in delta.arc_updates
            if a.name.strip()
        ],
        fact_updates=sanitize_fact_updates(delta.fact_updates),
    )
