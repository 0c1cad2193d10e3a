from __future__ import annotations

import asyncio
import json

import pytest

from storyspine.config import Config
from storyspine.embeddings import HashEmbedder
from storyspine.engine import MemoryEngine, PlainMode, injection_depth, relation_aggregate_text
from storyspine.exceptions import TaskBusyError, TransientError
from storyspine.host import ChatMessage, HostEvent
from storyspine.llm.backends import ChatResponse
from storyspine.storage.sqlite_store import SQLiteStore
from storyspine.types import Atom, Edge, Event

CHAT = "tavern"
SCENE = "Bob在雨夜的酒馆里擦拭着长剑，窗外雷声滚滚，他低声说明天必须出发去王城"

SUMMARY_REPLY = json.dumps({
    "events": [{
        "id": "evt-1",
        "title": "雨夜酒馆",
        "summary": "Alice在雨夜的酒馆遇见擦剑的Bob，两人约定明天出发去王城 (#1-8)",
        "participants": ["Alice", "Bob"],
        "type": "相遇",
        "weight": "主线",
    }],
    "newCharacters": ["Bob"],
    "factUpdates": [{"s": "Bob", "p": "位置", "o": "酒馆", "isState": True}],
}, ensure_ascii=False)

ANCHOR_REPLY = json.dumps(
    [{"scene": SCENE, "edges": [{"s": "Bob", "t": "Alice", "r": "擦拭长剑"}], "where": "酒馆"}],
    ensure_ascii=False,
)[1:] + "}"


class _FakeChat:
    """Answers anchor prompts with one scene and everything else with a summary."""

    def __init__(self) -> None:
        self.calls = 0
        self.kinds = []

    async def chat(self, messages, temperature=None, max_tokens=None, json_mode=False):  # noqa: ANN001
        self.calls += 1
        if "场景摘要器" in messages[0].content:
            self.kinds.append("anchor")
            return ChatResponse(content=ANCHOR_REPLY)
        self.kinds.append("summary")
        return ChatResponse(content=SUMMARY_REPLY)

    @property
    def stats(self) -> dict:
        return {"calls": self.calls}


class _FlakyEmbedder(HashEmbedder):
    def __init__(self, failures: int) -> None:
        super().__init__(64)
        self.failures = failures
        self.calls = 0

    async def embed(self, texts):  # noqa: ANN001
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientError("rate limited")
        return await super().embed(texts)


class _CancellingEmbedder(HashEmbedder):
    engine: MemoryEngine | None = None

    async def embed(self, texts):  # noqa: ANN001
        self.engine.cancel_vectors()
        return await super().embed(texts)


def _messages(n: int = 8) -> list[ChatMessage]:
    return [
        ChatMessage(mes=f"{SCENE}（第{i + 1}楼）", is_user=i % 2 == 0, name="Alice" if i % 2 == 0 else "Bob")
        for i in range(n)
    ]


@pytest.fixture
def make_engine(tmp_path):
    engines = []

    def _make(embedder=None, chat=None, mode=None, summary=None) -> MemoryEngine:
        cfg = Config(data_dir=tmp_path / "data")
        cfg.summary.retry_delay = 0.0
        cfg.embedding.retry_wait_seconds = 0.0
        for key, value in (summary or {}).items():
            setattr(cfg.summary, key, value)
        engine = MemoryEngine(
            cfg,
            CHAT,
            sqlite=SQLiteStore(tmp_path / f"engine-{len(engines)}.db"),
            embedder=embedder or HashEmbedder(64),
            chat=chat or _FakeChat(),
            mode=mode,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.sqlite.close()


def test_injection_depth_and_relation_text():
    assert injection_depth(10, 7) == 2
    assert injection_depth(20, 5) == 14
    atom = Atom(atom_id="atom-1-0", floor=1, semantic="场景", edges=[Edge("A", "B", "拥抱"), Edge("B", "A", "拥抱")])
    assert relation_aggregate_text(atom) == "拥抱"
    assert relation_aggregate_text(Atom(atom_id="atom-2-0", floor=2, semantic=" 只有场景 ")) == "只有场景"


def test_no_injection_before_any_memory(make_engine):
    engine = make_engine()
    assert asyncio.run(engine.build_injection(_messages())) is None
    assert engine.hide_range() is None


def test_summarize_then_generate_vectors_and_inject(make_engine):
    engine = make_engine()
    messages = _messages()

    async def _run():
        result = await engine.summarize(messages)
        assert result.success and result.new_event_ids == ["evt-1"]
        # new events are embedded right away
        assert engine.sqlite.count_vectors(CHAT, "event") == 1

        counts = await engine.generate_vectors(messages)
        assert counts == {"atoms": 0, "chunks": 8, "events": 1, "cancelled": False}
        return await engine.build_injection(messages)

    injection = asyncio.run(_run())
    assert injection is not None
    assert injection.depth == 2
    assert "位置" in injection.text and "酒馆 (#8)" in injection.text

    status = engine.status()
    assert (status["last_summarized"], status["last_chunk_floor"]) == (7, 7)
    assert status["fingerprint"] == status["engine_fingerprint"] == "hash:blake2b:64"
    assert status["mode"] == "vector"
    assert engine.hide_range() == {"start": 0, "end": 1}


def test_plain_mode_injects_whole_summary(make_engine):
    engine = make_engine(mode=PlainMode())
    messages = _messages()

    async def _run():
        await engine.summarize(messages, target_floor=3)
        return await engine.build_injection(messages)

    injection = asyncio.run(_run())
    assert injection.depth == len(messages) - 3 - 1
    assert "[剧情记忆]" in injection.text
    assert "雨夜酒馆" in injection.text
    assert engine.sqlite.count_vectors(CHAT, "event") == 0


def test_busy_task_is_rejected(make_engine):
    engine = make_engine()
    release = engine.guard.acquire("summary")
    with pytest.raises(TaskBusyError):
        asyncio.run(engine.summarize(_messages()))
    release()
    assert asyncio.run(engine.summarize(_messages())).success


def test_clear_vectors_resets_fingerprint(make_engine):
    engine = make_engine()
    asyncio.run(engine.generate_vectors(_messages()))
    assert engine.sqlite.count_vectors(CHAT, "chunk") == 8

    engine.clear_vectors()
    meta = engine.sqlite.get_meta(CHAT)
    assert (meta.fingerprint, meta.last_chunk_floor) == (None, -1)
    assert engine.sqlite.count_vectors(CHAT, "chunk") == 0
    assert engine.sqlite.count_chunks(CHAT) == 0


def test_generate_vectors_can_be_cancelled(make_engine):
    embedder = _CancellingEmbedder(64)
    engine = make_engine(embedder=embedder)
    embedder.engine = engine

    async def _run():
        await engine.summarize(_messages())
        return await engine.generate_vectors(_messages())

    counts = asyncio.run(_run())
    assert counts["cancelled"] is True
    assert counts["events"] == 0
    assert engine.sqlite.get_meta(CHAT).last_chunk_floor == -1
    assert not engine.guard.is_running("vector")
    assert not engine.cancel.cancelled


def test_generate_vectors_retries_transient_failures(make_engine):
    embedder = _FlakyEmbedder(failures=2)
    engine = make_engine(embedder=embedder)
    counts = asyncio.run(engine.generate_vectors(_messages(4)))
    assert counts["chunks"] == 4
    assert embedder.calls == 3
    assert engine.sqlite.get_meta(CHAT).last_chunk_floor == 3


def test_received_message_syncs_floor_and_auto_summarizes(make_engine):
    chat = _FakeChat()
    engine = make_engine(chat=chat, summary={"auto": True, "interval": 4, "timing": "after_ai"})
    messages = _messages()

    report = asyncio.run(engine.on_message(HostEvent.RECEIVED, 7, messages))
    assert report["event"] == "message_received"
    assert report["incremental_chunks"] == 8
    assert report["sync"] == {"chunks": 0, "atoms": 1}
    assert report["summary"]["new_event_ids"] == ["evt-1"]
    assert chat.kinds == ["anchor", "summary"]
    assert [a.atom_id for a in engine.sqlite.get_atoms(CHAT)] == ["atom-7-0"]
    assert engine.sqlite.get_meta(CHAT).last_chunk_floor == 7

    assert asyncio.run(engine.on_message(HostEvent.SENT, 8, messages)) == {"event": "message_sent", "floor": 8}


def test_delete_rolls_back_summary(make_engine):
    engine = make_engine()
    messages = _messages()
    asyncio.run(engine.summarize(messages))

    report = asyncio.run(engine.on_message(HostEvent.DELETED, 2, messages[:2]))
    assert report["rolled_back"] is True
    assert report["rollback_target"] == -1
    assert report["removed_event_ids"] == ["evt-1"]
    assert engine.store.last_summarized == -1
    assert engine.sqlite.count_vectors(CHAT, "event") == 0


def test_update_events_resyncs_vectors(make_engine):
    engine = make_engine()

    async def _run():
        await engine.summarize(_messages())
        edited = Event(id="evt-1", title="雨夜酒馆", summary="Bob决定独自出发 (#1-8)")
        return await engine.update_events([edited])

    assert asyncio.run(_run()) == {"removed": 0, "revectorized": 1}
    assert engine.store.state.events[0].summary == "Bob决定独自出发 (#1-8)"

    assert asyncio.run(engine.update_events([])) == {"removed": 1, "revectorized": 0}
    assert engine.sqlite.count_vectors(CHAT, "event") == 0


def _summary_reply(event_id: str, title: str, floors: str, facts=()) -> str:
    return json.dumps({
        "events": [{
            "id": event_id,
            "title": title,
            "summary": f"{title} ({floors})",
            "participants": ["Alice"],
            "type": "冲突",
            "weight": "主线",
        }],
        "factUpdates": [{"s": s, "p": p, "o": o} for s, p, o in facts],
    }, ensure_ascii=False)


class _ScriptedChat(_FakeChat):
    """Hands out summary replies in order."""

    def __init__(self, replies) -> None:
        super().__init__()
        self.replies = list(replies)

    async def chat(self, messages, temperature=None, max_tokens=None, json_mode=False):  # noqa: ANN001
        self.calls += 1
        return ChatResponse(content=self.replies.pop(0))


def test_deleting_unsummarized_floor_keeps_checkpointed_fact(make_engine):
    chat = _ScriptedChat([
        _summary_reply("evt-1", "Alice走进酒馆", "#1-11", [("Alice", "位置", "酒馆")]),
        _summary_reply("evt-2", "Alice打听消息", "#12-25"),
        _summary_reply("evt-3", "Carol闯入", "#26-29", [("Carol", "位置", "城门")]),
    ])
    engine = make_engine(chat=chat)
    messages = _messages(31)

    def alice_position():
        return [(f.o, f.since) for f in engine.store.state.facts if f.s == "Alice" and f.p == "位置"]

    asyncio.run(engine.summarize(messages, target_floor=10))
    asyncio.run(engine.summarize(messages, target_floor=24))
    assert engine.store.last_summarized == 24
    assert alice_position() == [("酒馆", 10)]

    # floors 25-30 exist but are not summarized yet
    report = asyncio.run(engine.on_message(HostEvent.DELETED, 26, messages[:26]))
    assert report["rolled_back"] is False
    assert engine.store.last_summarized == 24
    assert alice_position() == [("酒馆", 10)]

    asyncio.run(engine.summarize(messages, target_floor=28))
    assert {f.s for f in engine.store.state.facts} == {"Alice", "Carol"}

    report = asyncio.run(engine.on_message(HostEvent.DELETED, 26, messages[:26]))
    assert report["rolled_back"] is True
    assert report["rollback_target"] == 24
    assert report["removed_event_ids"] == ["evt-3"]
    assert engine.store.last_summarized == 24
    assert alice_position() == [("酒馆", 10)]
    assert {f.s for f in engine.store.state.facts} == {"Alice"}
    assert engine.sqlite.count_vectors(CHAT, "event") == 2


@pytest.mark.parametrize(
    ("timing", "on_received", "on_sent"),
    [("after_ai", True, False), ("before_user", False, True), ("manual", False, False)],
)
def test_auto_summary_follows_timing(make_engine, timing, on_received, on_sent):
    engine = make_engine(mode=PlainMode(), summary={"auto": True, "interval": 4, "timing": timing})
    messages = _messages()

    received = asyncio.run(engine.on_message(HostEvent.RECEIVED, 7, messages))
    sent = asyncio.run(engine.on_message(HostEvent.SENT, 7, messages))

    assert ("summary" in received, "summary" in sent) == (on_received, on_sent)
    expected = 7 if (on_received or on_sent) else -1
    assert engine.store.last_summarized == expected


def test_floor_sync_skipped_when_stored_vectors_use_another_model(make_engine):
    chat = _FakeChat()
    engine = make_engine(chat=chat)
    engine.sqlite.update_meta(CHAT, fingerprint="siliconflow:bge-m3:1024")

    report = asyncio.run(engine.on_message(HostEvent.RECEIVED, 7, _messages()))

    assert report["incremental_chunks"] == 0
    assert report["sync"] == {"chunks": 0, "atoms": 0}
    assert chat.kinds == []
    assert engine.sqlite.get_atoms(CHAT) == []
    assert engine.sqlite.count_vectors(CHAT, "atom") == 0
    assert engine.sqlite.count_vectors(CHAT, "chunk") == 0
