"""Budgeted assembly of the memory block injected before generation.

Pools are filled in priority order: constraints, arcs, events (with their
per-floor evidence), then the distant and recent evidence pools. The shared
pool caps constraints, arcs and events together; the two evidence pools have
their own fixed budgets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from storyspine.assembler.render import (
    SECTION_ARCS,
    SECTION_CONSTRAINTS,
    SECTION_DIRECT,
    SECTION_DISTANT,
    SECTION_PLAIN_ARCS,
    SECTION_PLAIN_EVENTS,
    SECTION_RECENT,
    SECTION_RELATED,
    Budget,
    EvidenceGroup,
    apply_wrapper,
    build_evidence_group,
    event_sort_key,
    format_arc_line,
    format_constraint_line,
    format_constraints,
    format_event,
    format_evidence_group,
    format_plain_event,
    group_by_floor,
    renumber_event_text,
    wrap_sections,
)
from storyspine.config import Config
from storyspine.retrieval.query import build_trusted_characters
from storyspine.retrieval.recall import EventHit, EvidenceAtom, L1Pair, RecallResult
from storyspine.types import Atom, ChatMeta, Event, Fact, RecallType, StoryState
from storyspine.utils import estimate_tokens, normalize, parse_floor_range, relation_target

logger = logging.getLogger(__name__)


@dataclass
class AssembleResult:
    text: str = ""
    stats: dict[str, Any] = field(default_factory=dict)


@dataclass
class _SelectedEvent:
    event: Event
    text: str
    tokens: int
    candidate_rank: int
    direct: bool


# --- Constraints ---

def known_characters(state: StoryState | None, name1: str = "", name2: str = "") -> set[str]:
    """Normalized names whose facts need a focus match; includes the user persona."""
    names = set(build_trusted_characters(state, name1=name1, name2=name2))
    if name1:
        names.add(normalize(name1))
    return names


def filter_constraints(facts: Iterable[Fact], focus_characters: Iterable[str], known: set[str]) -> list[Fact]:
    focus = {normalize(c) for c in focus_characters}
    out = []
    for f in facts:
        if f.is_state:
            out.append(f)
            continue
        target = relation_target(f.p)
        if target is not None:
            if normalize(f.s) in focus or normalize(target) in focus:
                out.append(f)
            continue
        subject = normalize(f.s)
        if subject in known and subject not in focus:
            continue
        out.append(f)
    return out


def build_people_dict(events: Iterable[Event], focus_characters: Iterable[str] = ()) -> dict[str, str]:
    """normalized name -> display name, from event participants or else the focus."""
    people: dict[str, str] = {}

    def add(raw: Any) -> None:
        display = str(raw or "").strip()
        key = normalize(display)
        if display and key:
            people.setdefault(key, display)

    for ev in events:
        for p in ev.participants:
            add(p)
    if not people:
        for c in focus_characters:
            add(c)
    return people


def group_constraints(facts: Iterable[Fact], people_dict: dict[str, str]) -> tuple[dict[str, list[Fact]], list[Fact]]:
    people: dict[str, list[Fact]] = {}
    world: list[Fact] = []
    for f in facts:
        display = people_dict.get(normalize(f.s))
        if display:
            people.setdefault(display, []).append(f)
        else:
            world.append(f)
    return people, world


def select_constraints(
    people: dict[str, list[Fact]],
    world: list[Fact],
    budget: Budget,
) -> tuple[dict[str, list[Fact]], list[Fact]]:
    """Fill newest ``since`` first and stop at the first line that does not fit."""
    picked_people: dict[str, list[Fact]] = {}
    picked_world: list[Fact] = []

    def newest_first(facts: list[Fact]) -> list[Fact]:
        return sorted(facts, key=lambda f: f.since or 0, reverse=True)

    if people:
        if not budget.try_consume("people:"):
            return picked_people, picked_world
        for name, facts in people.items():
            if not budget.try_consume(f"  {name}:"):
                return picked_people, picked_world
            picked: list[Fact] = []
            picked_people[name] = picked
            for f in newest_first(facts):
                if not budget.try_consume(f"    {format_constraint_line(f)}"):
                    return picked_people, picked_world
                picked.append(f)
    if world:
        if not budget.try_consume("world:"):
            return picked_people, picked_world
        for f in newest_first(world):
            if not budget.try_consume(f"  {format_constraint_line(f, include_subject=True)}"):
                return picked_people, picked_world
            picked_world.append(f)
    return picked_people, picked_world


# --- Evidence filtering ---

def should_keep_evidence_l0(l0: EvidenceAtom, focus: set[str], bypass_similarity: float | None = None) -> bool:
    """Residual atoms must mention a focus entity, unless they scored very high."""
    if bypass_similarity is not None and l0.similarity >= bypass_similarity:
        return True
    if not focus:
        return False
    entities = {normalize(v) for e in l0.atom.edges for v in (e.s, e.t)}
    entities.discard("")
    if entities & focus:
        return True
    text = normalize(l0.atom.semantic or l0.text)
    return any(f and f in text for f in focus)


def collect_event_evidence(
    event: Event,
    l0_selected: Iterable[EvidenceAtom],
    l1_by_floor: dict[int, L1Pair],
    used: set[str],
    name1: str = "",
    name2: str = "",
) -> list[EvidenceGroup]:
    """Unused atoms inside the event's floor range, grouped by floor; marks them used."""
    rng = parse_floor_range(event.summary)
    if rng is None:
        return []
    by_floor: dict[int, list[EvidenceAtom]] = {}
    for l0 in l0_selected:
        if l0.id in used or not rng[0] <= l0.floor <= rng[1]:
            continue
        by_floor.setdefault(l0.floor, []).append(l0)
        used.add(l0.id)
    return [
        build_evidence_group(floor, atoms, l1_by_floor.get(floor), name1, name2)
        for floor, atoms in sorted(by_floor.items())
    ]


def _release(groups: Iterable[EvidenceGroup], used: set[str]) -> None:
    for g in groups:
        for a in g.atoms:
            used.discard(a.id)


class PromptAssembler:
    """Turns a recall result plus the summary state into injectable text."""

    def __init__(self, config: Config | None = None) -> None:
        self.config = config or Config()

    @property
    def _names(self) -> tuple[str, str]:
        return self.config.prompt.name1, self.config.prompt.name2

    def assemble(
        self,
        recall: RecallResult,
        state: StoryState | None,
        meta: ChatMeta,
        last_summarized: int = -1,
        atoms: Iterable[Atom] = (),
    ) -> AssembleResult:
        bc = self.config.budget
        name1, name2 = self._names
        state = state or StoryState()
        focus_characters = list(recall.focus_characters)
        total = Budget(bc.shared)
        used_l0: set[str] = set()
        stats: dict[str, Any] = {
            "budget": {"max": bc.shared + bc.distant_evidence + bc.recent_evidence},
            "constraints": {"count": 0, "tokens": 0, "filtered": 0},
            "arcs": {"count": 0, "tokens": 0},
            "events": {"selected": 0, "direct": 0, "related": 0, "tokens": 0, "l0_in_events": 0},
            "distant": {"groups": 0, "tokens": 0},
            "recent": {"groups": 0, "tokens": 0},
        }

        # Constraints
        facts = list(state.facts)
        known = known_characters(state, name1, name2)
        filtered = filter_constraints(facts, focus_characters, known)
        people_dict = build_people_dict((h.event for h in recall.events), focus_characters)
        people, world = group_constraints(filtered, people_dict)
        constraint_budget = Budget(min(bc.constraints, total.max - total.used))
        picked_people, picked_world = select_constraints(people, world, constraint_budget)
        constraint_lines = format_constraints(picked_people, picked_world, order="asc")
        if constraint_lines:
            total.used += constraint_budget.used
        stats["constraints"] = {
            "count": sum(len(v) for v in picked_people.values()) + len(picked_world),
            "tokens": constraint_budget.used if constraint_lines else 0,
            "filtered": len(facts) - len(filtered),
        }

        # Arcs
        arc_lines: list[str] = []
        if state.arcs and not total.full:
            relevant = {s.strip() for s in [name1, *focus_characters] if s and s.strip()}
            arcs = [a for a in state.arcs if a.name.strip() and a.name.strip() in relevant]
            if arcs:
                arc_budget = Budget(min(bc.arcs, total.max - total.used))
                for arc in arcs:
                    line = format_arc_line(arc)
                    if not arc_budget.try_consume(line):
                        break
                    arc_lines.append(line)
                total.used += arc_budget.used
                stats["arcs"] = {"count": len(arc_lines), "tokens": arc_budget.used}

        # Events
        causal_by_id = {h.event.id: h for h in recall.causal_chain}
        selected = self._select_events(recall, total, used_l0, causal_by_id, stats)
        direct = sorted((s for s in selected if s.direct), key=lambda s: event_sort_key(s.event))
        related = sorted((s for s in selected if not s.direct), key=lambda s: event_sort_key(s.event))
        direct_texts = []
        for i, item in enumerate(direct):
            text = renumber_event_text(item.text, i + 1)
            direct_texts.append(f"⭐{text}" if item.candidate_rank < bc.top_n_star else text)
        related_texts = [renumber_event_text(item.text, i + 1) for i, item in enumerate(related)]

        focus = {normalize(c) for c in focus_characters if normalize(c)}
        bypass = self.config.recall.residual_bypass_similarity
        distant_lines = self._distant_evidence(recall, last_summarized, used_l0, focus, bypass, stats)
        recent_lines = self._recent_evidence(recall, atoms, meta, last_summarized, used_l0, focus, bypass, stats)

        sections = []
        if constraint_lines:
            sections.append(SECTION_CONSTRAINTS + "\n" + "\n".join(constraint_lines))
        if direct_texts:
            sections.append(SECTION_DIRECT + "\n\n" + "\n\n".join(direct_texts))
        if related_texts:
            sections.append(SECTION_RELATED + "\n\n" + "\n\n".join(related_texts))
        if distant_lines:
            sections.append(SECTION_DISTANT + "\n" + "\n".join(distant_lines))
        if recent_lines:
            sections.append(SECTION_RECENT + "\n" + "\n".join(recent_lines))
        if arc_lines:
            sections.append(SECTION_ARCS + "\n" + "\n".join(arc_lines))

        stats["budget"]["shared_used"] = total.used
        stats["budget"]["used"] = total.used + stats["distant"]["tokens"] + stats["recent"]["tokens"]
        stats["sections"] = len(sections)
        logger.debug("assembled %d sections, %d tokens", len(sections), stats["budget"]["used"])
        text = apply_wrapper(wrap_sections(sections), self.config.prompt.wrapper_head, self.config.prompt.wrapper_tail)
        return AssembleResult(text=text, stats=stats)

    def _select_events(
        self,
        recall: RecallResult,
        total: Budget,
        used_l0: set[str],
        causal_by_id: dict[str, EventHit],
        stats: dict[str, Any],
    ) -> list[_SelectedEvent]:
        """Greedy fill by similarity.

        A candidate that does not fit with evidence is retried summary-only;
        after the first such fallback no later event gets evidence. Related
        events additionally draw from their own sub-pool.
        """
        bc = self.config.budget
        name1, name2 = self._names
        candidates = sorted(
            (h for h in recall.events if h.event.summary),
            key=lambda h: -h.similarity,
        )
        event_budget = Budget(min(bc.events, total.max - total.used))
        related_budget = Budget(bc.related)
        allow_evidence = True
        selected: list[_SelectedEvent] = []

        def render(hit: EventHit, groups: list[EvidenceGroup]) -> str:
            return format_event(hit.event, 0, groups, causal_by_id, name1, name2, bc.l0_joined_max_length)

        def fits(cost: int, is_direct: bool) -> tuple[bool, bool]:
            hard = total.fits(cost) and event_budget.fits(cost)
            return hard, is_direct or related_budget.fits(cost)

        for rank, hit in enumerate(candidates):
            if total.full or event_budget.full:
                break
            is_direct = hit.recall_type == RecallType.DIRECT
            if not is_direct and related_budget.full:
                continue

            use_evidence = is_direct and allow_evidence
            groups = (
                collect_event_evidence(hit.event, recall.l0_selected, recall.l1_by_floor, used_l0, name1, name2)
                if use_evidence else []
            )
            text = render(hit, groups)
            cost = estimate_tokens(text)
            hard_ok, related_ok = fits(cost, is_direct)
            if not (hard_ok and related_ok):
                _release(groups, used_l0)
                text = render(hit, [])
                cost = estimate_tokens(text)
                hard_ok, related_ok = fits(cost, is_direct)
                if not hard_ok:
                    break
                if not related_ok:
                    continue
                if use_evidence and groups:
                    allow_evidence = False
                    logger.debug("event %s admitted without evidence; evidence disabled", hit.event.id)
                groups = []

            selected.append(_SelectedEvent(hit.event, text, cost, rank, is_direct))
            total.used += cost
            event_budget.used += cost
            if not is_direct:
                related_budget.used += cost
            stats["events"]["l0_in_events"] += sum(len(g.atoms) for g in groups)

        stats["events"].update(
            selected=len(selected),
            direct=sum(1 for s in selected if s.direct),
            related=sum(1 for s in selected if not s.direct),
            tokens=sum(s.tokens for s in selected),
        )
        return selected

    def _distant_evidence(
        self,
        recall: RecallResult,
        last_summarized: int,
        used_l0: set[str],
        focus: set[str],
        bypass: float,
        stats: dict[str, Any],
    ) -> list[str]:
        """Leftover recalled atoms inside the summarized range: best floors first, printed in floor order."""
        bc = self.config.budget
        name1, name2 = self._names
        remaining = [
            l0 for l0 in recall.l0_selected
            if l0.id not in used_l0
            and l0.floor <= last_summarized
            and should_keep_evidence_l0(l0, focus, bypass)
        ]
        if not remaining:
            return []
        budget = Budget(bc.distant_evidence)
        ranked = []
        for floor, l0s in group_by_floor(remaining).items():
            group = build_evidence_group(floor, l0s, recall.l1_by_floor.get(floor), name1, name2)
            best = max(a.rerank_score for a in l0s)
            ranked.append((best, group))
        ranked.sort(key=lambda x: (-x[0], x[1].floor))

        accepted: list[EvidenceGroup] = []
        for _, group in ranked:
            if not budget.fits(group.tokens):
                continue
            budget.used += group.tokens
            accepted.append(group)
            used_l0.update(a.id for a in group.atoms)

        stats["distant"] = {"groups": len(accepted), "tokens": budget.used}
        lines: list[str] = []
        for group in sorted(accepted, key=lambda g: g.floor):
            lines.extend(format_evidence_group(group, name1, name2, bc.l0_joined_max_length))
        return lines

    def _recent_evidence(
        self,
        recall: RecallResult,
        atoms: Iterable[Atom],
        meta: ChatMeta,
        last_summarized: int,
        used_l0: set[str],
        focus: set[str],
        bypass: float,
        stats: dict[str, Any],
    ) -> list[str]:
        """Atoms past the summary boundary that are no longer on screen: newest floors first, printed in floor order."""
        bc = self.config.budget
        start = last_summarized + 1
        end = meta.last_chunk_floor - self.config.summary.keep_visible
        if end < start:
            return []
        recalled = {l0.atom_id: l0.similarity for l0 in recall.l0_selected}
        window = []
        for atom in atoms:
            if not start <= atom.floor <= end or not atom.semantic.strip():
                continue
            l0 = EvidenceAtom(
                id=f"anchor-{atom.atom_id}",
                atom_id=atom.atom_id,
                floor=atom.floor,
                similarity=recalled.get(atom.atom_id, 0.0),
                rerank_score=0.0,
                atom=atom,
                text=atom.semantic,
            )
            if l0.id in used_l0 or not should_keep_evidence_l0(l0, focus, bypass):
                continue
            window.append(l0)
        if not window:
            return []

        budget = Budget(bc.recent_evidence)
        accepted: list[EvidenceGroup] = []
        for floor, l0s in sorted(group_by_floor(window).items(), reverse=True):
            group = build_evidence_group(floor, l0s)
            if not budget.fits(group.tokens):
                continue
            budget.used += group.tokens
            accepted.append(group)
            used_l0.update(a.id for a in group.atoms)

        stats["recent"] = {"groups": len(accepted), "tokens": budget.used}
        lines: list[str] = []
        for group in sorted(accepted, key=lambda g: g.floor):
            lines.extend(format_evidence_group(group, joined_max_length=bc.l0_joined_max_length))
        return lines

    def build_plain(self, state: StoryState | None) -> str:
        """Everything in the summary, unranked: for chats without vectors."""
        if state is None:
            return ""
        name1, name2 = self._names
        sections = []

        people_dict = build_people_dict(state.events)
        known = known_characters(state, name1, name2)
        focus = list(people_dict.values()) if people_dict else list(known)
        filtered = filter_constraints(state.facts, focus, known)
        people, world = group_constraints(filtered, people_dict)
        constraint_lines = format_constraints(people, world, order="asc")
        if constraint_lines:
            sections.append(SECTION_CONSTRAINTS + "\n" + "\n".join(constraint_lines))
        if state.events:
            events = [format_plain_event(ev, i + 1) for i, ev in enumerate(state.events)]
            sections.append(SECTION_PLAIN_EVENTS + "\n\n" + "\n\n".join(events))
        if state.arcs:
            sections.append(SECTION_PLAIN_ARCS + "\n" + "\n".join(format_arc_line(a) for a in state.arcs))

        return apply_wrapper(wrap_sections(sections), self.config.prompt.wrapper_head, self.config.prompt.wrapper_tail)
