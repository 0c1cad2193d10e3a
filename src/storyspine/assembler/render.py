"""Text rendering for the injected memory block."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from storyspine.retrieval.recall import EventHit, EvidenceAtom, L1Pair, ScoredChunk
from storyspine.types import Arc, Event, Fact
from storyspine.utils import clean_summary, estimate_tokens, parse_floor_range, relation_target

SECTION_CONSTRAINTS = "[定了的事] 已确立的事实"
SECTION_DIRECT = "[印象深的事] 记得很清楚"
SECTION_RELATED = "[其他人的事] 别人经历的类似事"
SECTION_DISTANT = "[零散记忆] 没归入事件的片段"
SECTION_RECENT = "[新鲜记忆] 还没总结的部分"
SECTION_ARCS = "[这些人] 他们的弧光"
SECTION_PLAIN_EVENTS = "[剧情记忆]"
SECTION_PLAIN_ARCS = "[人物弧光]"

PREAMBLE = "\n".join([
    "以上是还留在眼前的对话",
    "以下是脑海里的记忆：",
    "• [定了的事] 这些是不会变的",
    "• [其他人的事] 别人的经历，当前角色可能不知晓",
    "• 其余部分是过往经历的回忆碎片",
    "",
    "请内化这些记忆：",
])
POSTSCRIPT = "\n".join(["", "这些记忆是真实的，请自然地记住它们。"])

# Fixed cost of a group's floor prefix, pin marker and separators.
GROUP_OVERHEAD_TOKENS = 10

_RENUMBER_RE = re.compile(r"^(\s*)\d+(\.\s*(?:【)?)")
_EVENT_NUM_RE = re.compile(r"evt-(\d+)")


@dataclass
class Budget:
    """Token pool with a hard ceiling."""
    max: int
    used: int = 0

    @property
    def full(self) -> bool:
        return self.used >= self.max

    def fits(self, cost: int) -> bool:
        return self.used + cost <= self.max

    def try_consume(self, text: str) -> bool:
        cost = estimate_tokens(text)
        if not self.fits(cost):
            return False
        self.used += cost
        return True


@dataclass
class EvidenceGroup:
    """All evidence atoms of one floor plus that floor's single chunk pair."""
    floor: int
    atoms: list[EvidenceAtom] = field(default_factory=list)
    user_chunk: ScoredChunk | None = None
    ai_chunk: ScoredChunk | None = None
    tokens: int = 0


# --- Events ---

def event_sort_key(event: Event) -> int:
    rng = parse_floor_range(event.summary)
    if rng is not None:
        return rng[0]
    m = _EVENT_NUM_RE.search(event.id or "")
    return int(m.group(1)) if m else 2**31


def renumber_event_text(text: str, index: int) -> str:
    return _RENUMBER_RE.sub(lambda m: f"{m.group(1)}{index}{m.group(2)}", text, count=1)


def floor_hint(summary: str) -> str:
    rng = parse_floor_range(summary)
    if rng is None:
        return ""
    start, end = rng
    return f"(#{start + 1}-{end + 1})" if end != start else f"(#{start + 1})"


def format_causal_line(hit: EventHit) -> str:
    ev = hit.event
    depth = max(1, min(9, hit.causal_depth or 1))
    indent = "  │" + "  " * (depth - 1)
    time = f"【{ev.time_label}】" if ev.time_label else ""
    people = " / ".join(ev.participants)
    hint = floor_hint(ev.summary)
    body = f"{clean_summary(ev.summary)} {hint}".strip()
    head = f"{indent}├─ 前因{time}" + (f" {people}" if people else "")
    return f"{head}\n{indent}  {body}"


def format_event(
    event: Event,
    idx: int,
    groups: Iterable[EvidenceGroup] = (),
    causal_by_id: dict[str, EventHit] | None = None,
    name1: str = "",
    name2: str = "",
    l0_joined_max_length: int = 120,
) -> str:
    people = " / ".join(event.participants).strip()
    title = event.title.strip() or people or event.id or "事件"
    header = f"{idx}.【{event.time_label}】{title}" if event.time_label else f"{idx}. {title}"
    lines = [header]
    if people and title != people:
        lines.append(f"  {people}")
    lines.append(f"  {clean_summary(event.summary)}")
    for cid in event.caused_by:
        hit = (causal_by_id or {}).get(cid)
        if hit is not None:
            lines.append(format_causal_line(hit))
    for group in groups:
        lines.extend(format_evidence_group(group, name1, name2, l0_joined_max_length))
    return "\n".join(lines)


def format_plain_event(event: Event, idx: int) -> str:
    people = " / ".join(event.participants)
    title = event.title or people
    header = f"{idx}.【{event.time_label}】{title}" if event.time_label else f"{idx}. {title}"
    return f"{header}\n  {clean_summary(event.summary)}"


# --- Evidence ---

def atom_display_text(l0: EvidenceAtom) -> str:
    return (l0.atom.semantic or l0.text or "").strip() or "（未知锚点）"


def format_l1_line(sc: ScoredChunk, is_context: bool, name1: str = "", name2: str = "") -> str:
    chunk = sc.chunk
    if chunk.is_user:
        speaker = name1 or "用户"
    else:
        speaker = chunk.speaker or name2 or "角色"
    symbol = "┌" if is_context else "›"
    return f"    {symbol} #{chunk.floor + 1} [{speaker}] {chunk.text.strip()}"


def build_evidence_group(
    floor: int,
    atoms: list[EvidenceAtom],
    pair: L1Pair | None = None,
    name1: str = "",
    name2: str = "",
) -> EvidenceGroup:
    group = EvidenceGroup(
        floor=floor,
        atoms=list(atoms),
        user_chunk=pair.user_top if pair else None,
        ai_chunk=pair.ai_top if pair else None,
    )
    tokens = sum(estimate_tokens(atom_display_text(a)) for a in atoms) + GROUP_OVERHEAD_TOKENS
    if group.user_chunk is not None:
        tokens += estimate_tokens(format_l1_line(group.user_chunk, True, name1, name2))
    if group.ai_chunk is not None:
        tokens += estimate_tokens(format_l1_line(group.ai_chunk, False, name1, name2))
    group.tokens = tokens
    return group


def format_evidence_group(
    group: EvidenceGroup,
    name1: str = "",
    name2: str = "",
    joined_max_length: int = 120,
) -> list[str]:
    """Short groups share one line; long ones put each atom on its own line."""
    texts = [atom_display_text(a) for a in group.atoms]
    joined = "；".join(texts)
    prefix = f"  › #{group.floor + 1} [📌] "
    if len(joined) <= joined_max_length:
        lines = [prefix + joined]
    else:
        lines = [prefix + texts[0]] + [f"  │      {t}" for t in texts[1:]]
    if group.user_chunk is not None:
        lines.append(format_l1_line(group.user_chunk, True, name1, name2))
    if group.ai_chunk is not None:
        lines.append(format_l1_line(group.ai_chunk, False, name1, name2))
    return lines


def group_by_floor(atoms: Iterable[EvidenceAtom]) -> dict[int, list[EvidenceAtom]]:
    out: dict[int, list[EvidenceAtom]] = {}
    for a in atoms:
        out.setdefault(a.floor, []).append(a)
    return out


# --- Constraints ---

def format_constraint_line(fact: Fact, include_subject: bool = False) -> str:
    trend = f" [{fact.trend.strip()}]" if fact.trend and relation_target(fact.p) else ""
    since = f" (#{fact.since + 1})" if fact.since is not None else ""
    tail = f"{fact.o.strip()}{trend}{since}"
    if include_subject:
        return f"- {fact.s.strip()} {fact.p.strip()}: {tail}"
    return f"- {fact.p.strip()}: {tail}"


def format_constraints(people: dict[str, list[Fact]], world: list[Fact], order: str = "asc") -> list[str]:
    reverse = order != "asc"

    def ordered(facts: list[Fact]) -> list[Fact]:
        return sorted(facts, key=lambda f: f.since or 0, reverse=reverse)

    lines: list[str] = []
    if people:
        lines.append("people:")
        for name, facts in people.items():
            lines.append(f"  {name}:")
            lines.extend(f"    {format_constraint_line(f)}" for f in ordered(facts))
    if world:
        lines.append("world:")
        lines.extend(f"  {format_constraint_line(f, include_subject=True)}" for f in ordered(world))
    return lines


def format_arc_line(arc: Arc) -> str:
    moments = [m.text for m in arc.moments if m.text]
    if moments:
        return f"- {arc.name}：{' → '.join(moments)}"
    return f"- {arc.name}：{arc.trajectory}"


# --- Framing ---

def wrap_sections(sections: list[str]) -> str:
    if not sections:
        return ""
    body = "\n\n".join(sections)
    return f"{PREAMBLE}\n<剧情记忆>\n\n{body}\n\n</剧情记忆>\n{POSTSCRIPT}"


def apply_wrapper(text: str, head: str = "", tail: str = "") -> str:
    if not text:
        return text
    if head:
        text = head + "\n" + text
    if tail:
        text = text + "\n" + tail
    return text
