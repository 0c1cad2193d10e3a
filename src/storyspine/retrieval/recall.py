"""Two-round dense recall over events (L2) and scene atoms (L0).

Round 1 embeds the query segments and scores atoms and events. Round 2
re-weights the same segment vectors with a hints segment built from the
round-1 hits and scores again. Evidence is then gathered per floor: every
atom on a selected floor plus at most one chunk pair (L1). Finally events
whose floor range overlaps the evidence are linked in and causal ancestors
are traced.
"""

from __future__ import annotations

import asyncio
import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import numpy as np

from storyspine.config import Config
from storyspine.embeddings import EmbeddingBackend
from storyspine.exceptions import FingerprintMismatchWarning, TransientError
from storyspine.host import ChatMessage
from storyspine.retrieval.query import (
    QueryBundle,
    build_query_bundle,
    compute_r2_weights,
    compute_segment_weights,
    get_last_messages,
    refine_query_bundle,
    weighted_average,
)
from storyspine.storage.faiss_store import VectorIndex
from storyspine.storage.sqlite_store import SQLiteStore
from storyspine.types import Atom, Chunk, Event, RecallType, StoryState
from storyspine.utils import cosine, normalize, parse_floor_range

logger = logging.getLogger(__name__)

_EVENT_ID_RE = re.compile(r"^evt-\d+$")
QUERY_EMBED_RETRY_DELAY = 0.5


@dataclass
class AnchorHit:
    atom: Atom
    similarity: float

    @property
    def floor(self) -> int:
        return self.atom.floor


@dataclass
class EventHit:
    event: Event
    similarity: float
    recall_type: RecallType
    causal_depth: int = 0
    chain_from: list[str] = field(default_factory=list)


@dataclass
class EvidenceAtom:
    """One L0 atom selected as evidence, tagged with its floor's score."""
    id: str
    atom_id: str
    floor: int
    similarity: float
    rerank_score: float
    atom: Atom
    text: str


@dataclass
class ScoredChunk:
    chunk: Chunk
    score: float


@dataclass
class L1Pair:
    ai_top: ScoredChunk | None = None
    user_top: ScoredChunk | None = None


@dataclass
class RecallResult:
    events: list[EventHit] = field(default_factory=list)
    causal_chain: list[EventHit] = field(default_factory=list)
    l0_selected: list[EvidenceAtom] = field(default_factory=list)
    l1_by_floor: dict[int, L1Pair] = field(default_factory=dict)
    focus_terms: list[str] = field(default_factory=list)
    focus_characters: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def has_useful(self) -> bool:
        return bool(self.events or self.l0_selected or self.causal_chain)


# --- Pure ranking helpers ---

def mmr_select(
    candidates: Sequence[Any],
    k: int,
    lam: float,
    get_vector: Callable[[Any], np.ndarray | None],
    get_score: Callable[[Any], float],
) -> list[Any]:
    """Maximal marginal relevance: ``lam * relevance - (1 - lam) * max_sim_to_selected``."""
    selected: list[Any] = []
    remaining = list(candidates)
    while remaining and len(selected) < k:
        best_idx = -1
        best_score = float("-inf")
        for i, c in enumerate(remaining):
            div = 0.0
            vc = get_vector(c)
            if selected and vc is not None:
                div = max((cosine(vc, get_vector(s)) for s in selected), default=0.0)
            score = lam * get_score(c) - (1 - lam) * div
            if score > best_score:
                best_score = score
                best_idx = i
        if best_idx < 0:
            break
        selected.append(remaining.pop(best_idx))
    return selected


def trace_causation(
    hits: Sequence[EventHit],
    event_index: dict[str, Event],
    max_depth: int = 10,
    cap: int = 30,
) -> tuple[list[EventHit], int]:
    """Walk ``caused_by`` upward from every hit.

    Returns ancestors sorted by how many hits reach them (descending), then by
    depth (ascending), plus the deepest level reached.
    """
    out: dict[str, EventHit] = {}
    deepest = 0

    def visit(parent_id: str, depth: int, root: str) -> None:
        nonlocal deepest
        if depth > max_depth or not _EVENT_ID_RE.match(parent_id):
            return
        ev = event_index.get(parent_id)
        if ev is None:
            return
        existing = out.get(parent_id)
        if existing is not None and root in existing.chain_from and depth >= existing.causal_depth:
            return
        deepest = max(deepest, depth)
        if existing is None:
            out[parent_id] = EventHit(ev, 0.0, RecallType.CAUSAL, causal_depth=depth, chain_from=[root])
        else:
            existing.causal_depth = min(existing.causal_depth, depth)
            if root not in existing.chain_from:
                existing.chain_from.append(root)
        for nxt in ev.caused_by:
            visit(str(nxt or "").strip(), depth + 1, root)

    for hit in hits:
        for cid in hit.event.caused_by:
            visit(str(cid or "").strip(), 1, hit.event.id)

    ranked = sorted(out.values(), key=lambda h: (-len(h.chain_from), h.causal_depth))
    return ranked[:cap], deepest


def select_evidence(
    anchor_hits: Sequence[AnchorHit],
    all_atoms: Sequence[Atom],
    floor_max: int = 20,
) -> list[EvidenceAtom]:
    """Rank floors by their best anchor and take every atom on each selected floor."""
    best_by_floor: dict[int, float] = {}
    sim_by_atom: dict[str, float] = {}
    for hit in anchor_hits:
        sim_by_atom[hit.atom.atom_id] = hit.similarity
        if hit.similarity > best_by_floor.get(hit.floor, float("-inf")):
            best_by_floor[hit.floor] = hit.similarity
    floors = sorted(best_by_floor.items(), key=lambda x: (-x[1], x[0]))[:floor_max]

    atoms_by_floor: dict[int, list[Atom]] = {}
    for atom in all_atoms:
        atoms_by_floor.setdefault(atom.floor, []).append(atom)

    selected: list[EvidenceAtom] = []
    for floor, best in floors:
        floor_atoms = sorted(atoms_by_floor.get(floor, []), key=lambda a: -sim_by_atom.get(a.atom_id, 0.0))
        for atom in floor_atoms:
            selected.append(EvidenceAtom(
                id=f"anchor-{atom.atom_id}",
                atom_id=atom.atom_id,
                floor=atom.floor,
                similarity=sim_by_atom.get(atom.atom_id, 0.0),
                rerank_score=best,
                atom=atom,
                text=atom.semantic,
            ))
    return selected


def build_l1_pairs(
    floors: Sequence[int],
    scored_chunks: Sequence[ScoredChunk],
    messages: Sequence[ChatMessage],
) -> dict[int, L1Pair]:
    """Best AI-side chunk at each floor, plus the best chunk of the preceding user message."""
    by_floor: dict[int, list[ScoredChunk]] = {}
    for sc in scored_chunks:
        by_floor.setdefault(sc.chunk.floor, []).append(sc)

    def top(floor: int) -> ScoredChunk | None:
        chunks = by_floor.get(floor) or []
        return max(chunks, key=lambda c: c.score) if chunks else None

    pairs: dict[int, L1Pair] = {}
    for floor in dict.fromkeys(floors):
        user_floor = floor - 1
        user_top = None
        if 0 <= user_floor < len(messages) and messages[user_floor].is_user:
            user_top = top(user_floor)
        pairs[floor] = L1Pair(ai_top=top(floor), user_top=user_top)
    return pairs


def l1_required_floors(floors: Sequence[int], messages: Sequence[ChatMessage]) -> list[int]:
    required: list[int] = []
    for floor in floors:
        if floor not in required:
            required.append(floor)
        user_floor = floor - 1
        if 0 <= user_floor < len(messages) and messages[user_floor].is_user and user_floor not in required:
            required.append(user_floor)
    return required


# --- Engine ---

class RecallEngine:
    """Dense recall for one chat against its stored vectors."""

    def __init__(
        self,
        sqlite: SQLiteStore,
        chat_id: str,
        embedder: EmbeddingBackend,
        config: Config | None = None,
    ) -> None:
        self.sqlite = sqlite
        self.chat_id = chat_id
        self.embedder = embedder
        self.config = config or Config()

    def fingerprint_matches(self) -> bool:
        meta = self.sqlite.get_meta(self.chat_id)
        if meta.fingerprint and meta.fingerprint != self.embedder.fingerprint():
            msg = (
                f"stored vectors use {meta.fingerprint}, engine is {self.embedder.fingerprint()}; "
                "regenerate vectors"
            )
            logger.warning(msg)
            warnings.warn(msg, FingerprintMismatchWarning, stacklevel=2)
            return False
        return True

    def _index(self, kind: str) -> VectorIndex:
        vectors = {item_id: vec for item_id, (_, vec, _) in self.sqlite.get_vectors(self.chat_id, kind).items()}
        return VectorIndex.from_vectors(vectors)

    async def _embed_segments(self, texts: list[str]) -> np.ndarray | None:
        for attempt in range(2):
            try:
                return await self.embedder.embed(texts)
            except TransientError as e:
                if attempt == 0:
                    logger.warning("query embedding failed, retrying: %s", e)
                    await asyncio.sleep(QUERY_EMBED_RETRY_DELAY)
                else:
                    logger.error("query embedding failed after retry: %s", e)
        return None

    def _recall_anchors(self, query: np.ndarray, atom_index: VectorIndex, atoms: dict[str, Atom]) -> list[AnchorHit]:
        threshold = self.config.recall.anchor_min_similarity
        hits = [
            AnchorHit(atoms[atom_id], sim)
            for atom_id, sim in atom_index.score_all(query).items()
            if atom_id in atoms and sim >= threshold
        ]
        hits.sort(key=lambda h: -h.similarity)
        return hits

    def _recall_events(
        self,
        query: np.ndarray,
        events: list[Event],
        event_index: VectorIndex,
        focus: set[str],
    ) -> tuple[list[EventHit], dict[str, float]]:
        rc = self.config.recall
        scores = event_index.score_all(query)
        scored = []
        for ev in events:
            if ev.id not in event_index:
                continue
            sim = scores.get(ev.id, 0.0)
            entity_match = any(normalize(p) in focus for p in ev.participants)
            scored.append((ev, sim, entity_match))

        candidates = sorted(
            (s for s in scored if s[1] >= rc.event_min_similarity),
            key=lambda s: -s[1],
        )[: rc.event_candidate_max]
        if focus:
            candidates = [c for c in candidates if c[2] or c[1] >= rc.event_entity_bypass_sim]

        selected = mmr_select(
            candidates,
            rc.event_select_max,
            rc.event_mmr_lambda,
            get_vector=lambda c: event_index.get_vector(c[0].id),
            get_score=lambda c: c[1],
        )
        hits = [
            EventHit(ev, sim, self._classify(entity_match, sim))
            for ev, sim, entity_match in selected
        ]
        return hits, scores

    def _classify(self, entity_match: bool, similarity: float) -> RecallType:
        if entity_match or similarity >= self.config.recall.direct_threshold:
            return RecallType.DIRECT
        return RecallType.RELATED

    async def recall(
        self,
        messages: list[ChatMessage],
        state: StoryState | None,
        pending_user_message: str | None = None,
        exclude_last_ai: bool = False,
    ) -> RecallResult:
        cfg = self.config
        events = list(state.events) if state else []
        metrics: dict[str, Any] = {"events_in_store": len(events)}
        if not events:
            return RecallResult(metrics=metrics)

        k = cfg.recall.last_messages_k - 1 if pending_user_message else cfg.recall.last_messages_k
        all_atoms = self.sqlite.get_atoms(self.chat_id)
        bundle: QueryBundle = build_query_bundle(
            get_last_messages(messages, k, exclude_last_ai),
            pending_user_message,
            state=state,
            atoms=all_atoms,
            name1=cfg.prompt.name1,
            name2=cfg.prompt.name2,
            filter_rules=cfg.filters.rules,
        )
        result = RecallResult(
            focus_terms=bundle.focus_terms,
            focus_characters=bundle.focus_characters,
            metrics=metrics,
        )
        if not bundle.segments or not self.fingerprint_matches():
            return result

        seg_vectors = await self._embed_segments([s.text for s in bundle.segments])
        if seg_vectors is None or len(seg_vectors) != len(bundle.segments):
            return result
        r1_weights = compute_segment_weights(bundle.segments)
        query_v0 = weighted_average(seg_vectors, r1_weights)
        if query_v0 is None:
            return result
        metrics["r1_weights"] = [round(w, 3) for w in r1_weights]

        atoms_by_id = {a.atom_id: a for a in all_atoms}
        atom_index = self._index("atom")
        event_index = self._index("event")
        focus = {normalize(c) for c in bundle.focus_characters}

        anchors_v0 = self._recall_anchors(query_v0, atom_index, atoms_by_id)
        events_v0, _ = self._recall_events(query_v0, events, event_index, focus)

        refine_query_bundle(bundle, anchors_v0, events_v0)
        query_v1 = query_v0
        if bundle.hints is not None:
            hint_vectors = await self._embed_segments([bundle.hints.text])
            if hint_vectors is not None and len(hint_vectors) == 1:
                r2_weights = compute_r2_weights(bundle.segments, bundle.hints)
                query_v1 = weighted_average(np.vstack([seg_vectors, hint_vectors]), r2_weights)
                metrics["r2_weights"] = [round(w, 3) for w in r2_weights]

        anchor_hits = self._recall_anchors(query_v1, atom_index, atoms_by_id)
        event_hits, event_scores = self._recall_events(query_v1, events, event_index, focus)
        metrics["anchor_hits"] = len(anchor_hits)
        metrics["event_hits"] = len(event_hits)

        l0_selected = select_evidence(anchor_hits, all_atoms, cfg.recall.l0_floor_max)

        # Events whose floor range covers recalled evidence join as extra candidates.
        hit_ids = {h.event.id for h in event_hits}
        recalled_floors = {l0.floor for l0 in l0_selected}
        linked = 0
        for ev in events:
            if ev.id in hit_ids or ev.id not in event_index:
                continue
            rng = parse_floor_range(ev.summary)
            if rng is None or not any(rng[0] <= f <= rng[1] for f in recalled_floors):
                continue
            sim = event_scores.get(ev.id, 0.0)
            if sim < cfg.recall.event_min_similarity:
                continue
            entity_match = bool(focus) and any(normalize(p) in focus for p in ev.participants)
            event_hits.append(EventHit(ev, sim, self._classify(entity_match, sim)))
            hit_ids.add(ev.id)
            linked += 1
        metrics["l0_linked_events"] = linked

        selected_floors = [l0.floor for l0 in l0_selected]
        required = l1_required_floors(selected_floors, messages)
        chunks = self.sqlite.get_chunks(self.chat_id, required) if required else []
        chunk_index = self._index("chunk") if chunks else None
        chunk_scores = chunk_index.score_all(query_v1) if chunk_index is not None else {}
        scored_chunks = [ScoredChunk(c, chunk_scores.get(c.chunk_id, 0.0)) for c in chunks]
        l1_by_floor = build_l1_pairs(selected_floors, scored_chunks, messages)

        causal, depth = trace_causation(
            event_hits,
            {e.id: e for e in events},
            cfg.recall.causal_max_depth,
            cfg.recall.causal_inject_max,
        )
        causal_chain = [c for c in causal if c.event.id not in hit_ids]
        metrics["causal"] = len(causal_chain)
        metrics["causal_depth"] = depth
        metrics["l0_selected"] = len(l0_selected)

        logger.debug(
            "recall: focus=%s anchors=%d events=%d (+%d linked) l0=%d causal=%d",
            bundle.focus_characters, len(anchor_hits), len(event_hits) - linked, linked,
            len(l0_selected), len(causal_chain),
        )
        result.events = event_hits
        result.causal_chain = causal_chain
        result.l0_selected = l0_selected
        result.l1_by_floor = l1_by_floor
        return result
