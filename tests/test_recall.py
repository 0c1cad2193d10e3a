from __future__ import annotations

import asyncio

import numpy as np
import pytest

from storyspine.embeddings import HashEmbedder
from storyspine.exceptions import FingerprintMismatchWarning
from storyspine.host import ChatMessage
from storyspine.retrieval import AnchorHit, EventHit, RecallEngine, ScoredChunk, mmr_select, trace_causation
from storyspine.retrieval.recall import build_l1_pairs, l1_required_floors, select_evidence
from storyspine.storage.sqlite_store import SQLiteStore
from storyspine.types import Atom, Chunk, Event, RecallType, StoryState

CHAT = "rainy-night"
SCENE = "Bob在雨夜的酒馆里擦拭着长剑，窗外雷声滚滚，他低声说明天必须出发去王城寻找失踪的妹妹，不能再等了"


def _hit(ev: Event) -> EventHit:
    return EventHit(ev, 0.9, RecallType.DIRECT)


def test_mmr_skips_near_duplicates():
    vecs = {
        "a": np.array([1.0, 0.0, 0.0], dtype=np.float32),
        "b": np.array([0.99, 0.01, 0.0], dtype=np.float32),
        "c": np.array([0.0, 1.0, 0.0], dtype=np.float32),
    }
    scores = {"a": 0.9, "b": 0.89, "c": 0.7}
    picked = mmr_select(["a", "b", "c"], 2, 0.5, get_vector=vecs.get, get_score=scores.get)
    assert picked == ["a", "c"]
    assert mmr_select(["a", "b", "c"], 0, 0.5, vecs.get, scores.get) == []


def test_trace_causation_ranks_shared_ancestors_first():
    events = {
        "evt-1": Event(id="evt-1"),
        "evt-2": Event(id="evt-2", caused_by=["evt-1"]),
        "evt-3": Event(id="evt-3", caused_by=["evt-2"]),
        "evt-4": Event(id="evt-4", caused_by=["evt-2"]),
    }
    ranked, deepest = trace_causation([_hit(events["evt-3"]), _hit(events["evt-4"])], events)
    assert [(h.event.id, h.causal_depth, len(h.chain_from)) for h in ranked] == [
        ("evt-2", 1, 2),
        ("evt-1", 2, 2),
    ]
    assert all(h.recall_type is RecallType.CAUSAL for h in ranked)
    assert deepest == 2


def test_trace_causation_survives_cycles_and_bad_ids():
    events = {
        "evt-1": Event(id="evt-1", caused_by=["evt-2"]),
        "evt-2": Event(id="evt-2", caused_by=["evt-1", "not-an-event"]),
        "evt-3": Event(id="evt-3", caused_by=["evt-1", "evt-99"]),
    }
    ranked, _ = trace_causation([_hit(events["evt-3"])], events)
    assert [h.event.id for h in ranked] == ["evt-1", "evt-2"]


def test_trace_causation_respects_depth_and_cap():
    events = {f"evt-{i}": Event(id=f"evt-{i}", caused_by=[f"evt-{i - 1}"] if i > 1 else []) for i in range(1, 6)}
    ranked, deepest = trace_causation([_hit(events["evt-5"])], events, max_depth=2)
    assert [h.event.id for h in ranked] == ["evt-4", "evt-3"]
    assert deepest == 2

    ranked, _ = trace_causation([_hit(events["evt-5"])], events, cap=1)
    assert [h.event.id for h in ranked] == ["evt-4"]


def test_select_evidence_takes_whole_floors():
    atoms = [
        Atom(atom_id="atom-1-0", floor=1, semantic="a"),
        Atom(atom_id="atom-1-1", floor=1, semantic="b"),
        Atom(atom_id="atom-3-0", floor=3, semantic="c"),
        Atom(atom_id="atom-5-0", floor=5, semantic="d"),
    ]
    hits = [AnchorHit(atoms[1], 0.8), AnchorHit(atoms[2], 0.9), AnchorHit(atoms[3], 0.6)]

    selected = select_evidence(hits, atoms, floor_max=2)
    assert [e.atom_id for e in selected] == ["atom-3-0", "atom-1-1", "atom-1-0"]
    assert selected[0].id == "anchor-atom-3-0"
    # unhit atoms on a selected floor carry the floor score
    assert (selected[2].similarity, selected[2].rerank_score) == (0.0, 0.8)


def test_l1_pairs_take_preceding_user_floor():
    messages = [
        ChatMessage(mes="u0", is_user=True),
        ChatMessage(mes="a1"),
        ChatMessage(mes="a2"),
    ]
    chunks = [
        ScoredChunk(Chunk("c-0-0", 0, 0, "用户", True, "u0"), 0.3),
        ScoredChunk(Chunk("c-1-0", 1, 0, "Bob", False, "a1 first"), 0.2),
        ScoredChunk(Chunk("c-1-1", 1, 1, "Bob", False, "a1 second"), 0.7),
    ]
    assert l1_required_floors([1, 2, 1], messages) == [1, 0, 2]

    pairs = build_l1_pairs([1, 2], chunks, messages)
    assert pairs[1].ai_top.chunk.chunk_id == "c-1-1"
    assert pairs[1].user_top.chunk.chunk_id == "c-0-0"
    assert pairs[2].ai_top is None and pairs[2].user_top is None


@pytest.fixture
def sqlite(tmp_path):
    db = SQLiteStore(tmp_path / "recall.db")
    yield db
    db.close()


def test_recall_without_events_is_empty(sqlite):
    engine = RecallEngine(sqlite, CHAT, HashEmbedder(64))
    result = asyncio.run(engine.recall([ChatMessage(mes="你好", is_user=True)], None))
    assert not result.has_useful
    assert result.metrics["events_in_store"] == 0


def test_recall_warns_on_fingerprint_mismatch(sqlite):
    sqlite.update_meta(CHAT, fingerprint="siliconflow:bge-m3:1024")
    engine = RecallEngine(sqlite, CHAT, HashEmbedder(64))
    state = StoryState(events=[Event(id="evt-1", summary="雨夜 (#1-1)")])

    with pytest.warns(FingerprintMismatchWarning):
        result = asyncio.run(engine.recall([ChatMessage(mes=SCENE, is_user=True)], state))
    assert not result.has_useful


def test_recall_finds_events_evidence_and_causes(sqlite):
    embedder = HashEmbedder(256)
    fp = embedder.fingerprint()
    messages = [ChatMessage(mes=SCENE, is_user=True)]
    state = StoryState(events=[
        Event(id="evt-1", title="妹妹失踪", summary="王城传来消息 (#1-1)"),
        Event(id="evt-2", summary=f"{SCENE} (#1-1)", participants=["Bob"], caused_by=["evt-1"]),
    ])
    atom = Atom(atom_id="atom-0-0", floor=0, semantic=SCENE)

    async def _run():
        query_vec = await embedder.embed_single(f"用户：{SCENE}")
        sqlite.save_atoms(CHAT, [atom])
        sqlite.save_vectors(CHAT, "atom", [(atom.atom_id, 0, await embedder.embed_single(SCENE), None)], fp)
        sqlite.save_vectors(CHAT, "event", [("evt-2", None, query_vec, None)], fp)
        sqlite.update_meta(CHAT, fingerprint=fp)
        return await RecallEngine(sqlite, CHAT, embedder).recall(messages, state)

    result = asyncio.run(_run())
    assert [(h.event.id, h.recall_type) for h in result.events] == [("evt-2", RecallType.DIRECT)]
    assert [h.event.id for h in result.causal_chain] == ["evt-1"]
    assert [e.atom_id for e in result.l0_selected] == ["atom-0-0"]
    assert result.focus_characters == ["Bob"]
    assert set(result.l1_by_floor) == {0}
    assert "r2_weights" in result.metrics
