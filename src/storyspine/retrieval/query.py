"""Deterministic query construction for recall (no LLM).

The last few messages are embedded separately and combined as a weighted
mean. The focus message (the pending user input, or else the newest message)
carries the largest share. Short messages are down-weighted by a length
factor, and the focus share is clamped so it never drops below
FOCUS_MIN_NORMALIZED_WEIGHT.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import numpy as np

from storyspine.host import ChatMessage
from storyspine.types import Atom, StoryState
from storyspine.utils import clean_message_text, clean_summary, normalize

FOCUS_BASE_WEIGHT = 0.55
CONTEXT_BASE_WEIGHTS = (0.15, 0.30)

FOCUS_BASE_WEIGHT_R2 = 0.45
CONTEXT_BASE_WEIGHTS_R2 = (0.10, 0.20)
HINTS_BASE_WEIGHT = 0.25

LENGTH_FULL_THRESHOLD = 50
LENGTH_MIN_FACTOR = 0.35
FOCUS_MIN_NORMALIZED_WEIGHT = 0.35

MEMORY_HINT_ATOMS_MAX = 5
MEMORY_HINT_EVENTS_MAX = 3

# Pronouns, role labels and common non-person nouns that leak into edges.
PERSON_BLACKLIST = frozenset({
    "我", "你", "他", "她", "它", "我们", "你们", "他们", "她们", "它们",
    "自己", "对方", "用户", "助手", "user", "assistant", "男人", "女性", "主人", "主角",
})


@dataclass
class QuerySegment:
    text: str
    base_weight: float
    char_count: int


@dataclass
class QueryBundle:
    segments: list[QuerySegment] = field(default_factory=list)
    hints: QuerySegment | None = None
    focus_terms: list[str] = field(default_factory=list)
    focus_characters: list[str] = field(default_factory=list)
    trusted_characters: set[str] = field(default_factory=set)


def compute_length_factor(char_count: int) -> float:
    if char_count >= LENGTH_FULL_THRESHOLD:
        return 1.0
    if char_count <= 0:
        return LENGTH_MIN_FACTOR
    return LENGTH_MIN_FACTOR + (1.0 - LENGTH_MIN_FACTOR) * (char_count / LENGTH_FULL_THRESHOLD)


def clamp_min_normalized_weight(weights: list[float], target_idx: int, min_weight: float) -> list[float]:
    """Raise ``weights[target_idx]`` to ``min_weight``, rescaling the rest so the sum stays 1."""
    if not weights or not 0 <= target_idx < len(weights):
        return list(weights)
    current = weights[target_idx]
    if current >= min_weight:
        return list(weights)
    other_sum = 1.0 - current
    if other_sum <= 0:
        out = [0.0] * len(weights)
        out[target_idx] = 1.0
        return out
    scale = (1.0 - min_weight) / other_sum
    out = [min_weight if i == target_idx else w * scale for i, w in enumerate(weights)]
    out[target_idx] += 1.0 - sum(out)
    return out


def _normalize_weights(adjusted: list[float]) -> list[float]:
    total = sum(adjusted)
    if total <= 0:
        return [1.0 / len(adjusted)] * len(adjusted)
    return [w / total for w in adjusted]


def _context_weights(base: Sequence[float], count: int) -> list[float]:
    # aligned to the tail: a single context message gets the nearest weight
    return [base[max(0, len(base) - count + i)] for i in range(count)]


def compute_segment_weights(segments: list[QuerySegment]) -> list[float]:
    if not segments:
        return []
    adjusted = [s.base_weight * compute_length_factor(s.char_count) for s in segments]
    return clamp_min_normalized_weight(_normalize_weights(adjusted), len(segments) - 1, FOCUS_MIN_NORMALIZED_WEIGHT)


def compute_r2_weights(segments: list[QuerySegment], hints: QuerySegment | None) -> list[float]:
    """Second-round weights: the focus cedes part of its share to the hints segment."""
    if not segments:
        return []
    base = _context_weights(CONTEXT_BASE_WEIGHTS_R2, len(segments) - 1) + [FOCUS_BASE_WEIGHT_R2]
    adjusted = [w * compute_length_factor(segments[i].char_count) for i, w in enumerate(base)]
    if hints is not None:
        adjusted.append(hints.base_weight * compute_length_factor(hints.char_count))
    return clamp_min_normalized_weight(_normalize_weights(adjusted), len(segments) - 1, FOCUS_MIN_NORMALIZED_WEIGHT)


def weighted_average(vectors: np.ndarray | list[np.ndarray], weights: list[float]) -> np.ndarray | None:
    if len(vectors) == 0 or len(vectors) != len(weights):
        return None
    mat = np.asarray(vectors, dtype=np.float32)
    w = np.asarray(weights, dtype=np.float32).reshape(-1, 1)
    return (mat * w).sum(axis=0)


def get_last_messages(chat: list[ChatMessage], count: int = 3, exclude_last_ai: bool = False) -> list[ChatMessage]:
    messages = list(chat or [])
    if exclude_last_ai and messages and not messages[-1].is_user:
        messages = messages[:-1]
    return messages[-count:] if count > 0 else []


# --- Entity lexicon ---

def _add_person(pool: dict[str, str], raw: Any) -> None:
    display = str(raw or "").strip()
    key = normalize(display)
    if len(key) < 2 or key in PERSON_BLACKLIST:
        return
    pool.setdefault(key, display)


def build_trusted_characters(state: StoryState | None, name1: str = "", name2: str = "") -> dict[str, str]:
    """Normalized name -> display name from characters, arcs, name2 and event participants.

    The user persona (``name1``) never counts as a character.
    """
    pool: dict[str, str] = {}
    if state is not None:
        for c in state.characters:
            _add_person(pool, c.name)
        for a in state.arcs:
            _add_person(pool, a.name)
    if name2:
        _add_person(pool, name2)
    if state is not None:
        for ev in state.events:
            for p in ev.participants:
                _add_person(pool, p)
    if name1:
        pool.pop(normalize(name1), None)
    return pool


def build_entity_lexicon(
    state: StoryState | None,
    atoms: Iterable[Atom] = (),
    name1: str = "",
    name2: str = "",
) -> dict[str, str]:
    """Trusted characters plus edge endpoints of L0 atoms."""
    lexicon = build_trusted_characters(state, name1=name1, name2=name2)
    for atom in atoms:
        for e in atom.edges:
            _add_person(lexicon, e.s)
            _add_person(lexicon, e.t)
    if name1:
        lexicon.pop(normalize(name1), None)
    return lexicon


def extract_entities(text: str, lexicon: dict[str, str]) -> list[str]:
    """Display names of lexicon entries contained in ``text``."""
    if not text or not lexicon:
        return []
    norm = normalize(text)
    return [display for key, display in lexicon.items() if key in norm]


# --- Bundle ---

def _message_entry(message: ChatMessage, name1: str, name2: str, filter_rules: Iterable[Any]) -> tuple[str, str] | None:
    clean = clean_message_text(message.mes, filter_rules)
    if not clean:
        return None
    if message.is_user:
        speaker = name1 or "用户"
    else:
        speaker = message.name or name2 or "角色"
    return f"{speaker}：{clean}", clean


def build_query_bundle(
    last_messages: list[ChatMessage],
    pending_user_message: str | None = None,
    state: StoryState | None = None,
    atoms: Iterable[Atom] = (),
    name1: str = "",
    name2: str = "",
    filter_rules: Iterable[Any] = (),
) -> QueryBundle:
    rules = list(filter_rules)
    lexicon = build_entity_lexicon(state, atoms, name1=name1, name2=name2)
    trusted = build_trusted_characters(state, name1=name1, name2=name2)

    context_entries: list[tuple[str, str]] = []
    focus_entry: tuple[str, str] | None = None
    if pending_user_message:
        pending_clean = clean_message_text(pending_user_message, rules)
        if pending_clean:
            focus_entry = (f"{name1 or '用户'}：{pending_clean}", pending_clean)
        context_messages = last_messages
    else:
        if last_messages:
            focus_entry = _message_entry(last_messages[-1], name1, name2, rules)
        context_messages = last_messages[:-1]
    for m in context_messages:
        entry = _message_entry(m, name1, name2, rules)
        if entry is not None:
            context_entries.append(entry)

    clean_texts = ([focus_entry[1]] if focus_entry else []) + [c for _, c in context_entries]
    focus_terms = extract_entities(" ".join(clean_texts), lexicon)
    focus_characters = [t for t in focus_terms if normalize(t) in trusted]

    segments = [
        QuerySegment(text=text, base_weight=w, char_count=len(clean))
        for (text, clean), w in zip(context_entries, _context_weights(CONTEXT_BASE_WEIGHTS, len(context_entries)))
    ]
    if focus_entry is not None:
        segments.append(QuerySegment(text=focus_entry[0], base_weight=FOCUS_BASE_WEIGHT, char_count=len(focus_entry[1])))

    return QueryBundle(
        segments=segments,
        focus_terms=focus_terms,
        focus_characters=focus_characters,
        trusted_characters=set(trusted),
    )


def refine_query_bundle(bundle: QueryBundle, anchor_hits: list[Any], event_hits: list[Any]) -> QueryBundle:
    """Attach a hints segment built from first-round hits (top atoms and events)."""
    hints: list[str] = []
    for hit in anchor_hits[:MEMORY_HINT_ATOMS_MAX]:
        semantic = getattr(getattr(hit, "atom", None), "semantic", "") or ""
        if semantic:
            hints.append(semantic)
    for hit in event_hits[:MEMORY_HINT_EVENTS_MAX]:
        ev = hit.event
        title = (ev.title or "").strip()
        summary = clean_summary(ev.summary)
        line = f"{title}: {summary}" if title and summary else (title or summary)
        if line:
            hints.append(line)
    if hints:
        text = "\n".join(hints)
        bundle.hints = QuerySegment(text=text, base_weight=HINTS_BASE_WEIGHT, char_count=len(text))
    else:
        bundle.hints = None
    return bundle
