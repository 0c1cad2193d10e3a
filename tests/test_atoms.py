from __future__ import annotations

import asyncio
import json

from storyspine.config import AtomConfig
from storyspine.exceptions import TransientError
from storyspine.extraction import AtomExtractor, atom_quality, sanitize_action_phrase
from storyspine.extraction.atoms import build_round_input, parse_anchors, round_pairs
from storyspine.host import ChatMessage
from storyspine.llm.backends import ChatResponse
from storyspine.tasks import CancelToken
from storyspine.types import Edge

SCENE = "夜色渐深，Alice在酒馆角落把一封密信交给Bob，叮嘱他天亮前送到王城"


class _FakeChat:
    def __init__(self, reply: str | Exception) -> None:
        self.reply = reply
        self.calls = 0

    async def chat(self, messages, temperature=None, max_tokens=None, json_mode=False):  # noqa: ANN001
        self.calls += 1
        if isinstance(self.reply, Exception):
            raise self.reply
        return ChatResponse(content=self.reply)

    @property
    def stats(self) -> dict:
        return {"calls": self.calls}


def _anchor_reply(*scenes: str) -> str:
    # continues the '{"anchors":[' prefill
    anchors = [
        {"scene": s, "edges": [{"s": "Alice", "t": "Bob", "r": "递交密信。"}], "where": "酒馆"}
        for s in scenes
    ]
    return json.dumps(anchors, ensure_ascii=False)[1:] + "}"


def test_sanitize_action_phrase():
    assert sanitize_action_phrase("紧紧拥抱了。") == "紧紧拥抱"
    assert sanitize_action_phrase("突然 递交 密信") == "递交密信"
    assert sanitize_action_phrase("了") == ""
    assert sanitize_action_phrase(None) == ""
    assert sanitize_action_phrase("一二三四五六七八九十甲乙丙") == "一二三四五六七八九十甲乙"


def test_atom_quality():
    edges = [Edge("A", "B", "拥抱")] * 3
    assert atom_quality("字" * 80, edges, "酒馆") == 1.0
    assert atom_quality("字" * 40, [], "") == 0.275
    assert atom_quality("字" * 160, edges[:1], "") == round(0.55 + 0.35 / 3, 3)


def test_parse_anchors_from_prefill_continuation():
    atoms = parse_anchors(_anchor_reply(SCENE), ai_floor=5)
    assert len(atoms) == 1
    atom = atoms[0]
    assert atom.atom_id == "atom-5-0"
    assert atom.floor == 5
    assert atom.semantic == SCENE
    assert [(e.s, e.t, e.r) for e in atom.edges] == [("Alice", "Bob", "递交密信")]
    assert atom.where == "酒馆"
    assert 0 < atom.quality <= 1


def test_parse_anchors_limits_and_rejects():
    atoms = parse_anchors(_anchor_reply(SCENE, "太短了", SCENE + "。", SCENE), ai_floor=3)
    # at most two anchors are read; the short scene is dropped
    assert [a.atom_id for a in atoms] == ["atom-3-0"]

    full = json.dumps({"anchors": []})
    assert parse_anchors(full, 3) == []
    assert parse_anchors("sorry, I can't", 3) is None
    assert parse_anchors("", 3) is None


def test_edges_need_all_three_fields_and_are_capped():
    reply = json.dumps({"anchors": [{
        "scene": SCENE,
        "edges": [
            {"s": "Alice", "t": "", "r": "递交密信"},
            {"s": "Alice", "t": "Bob", "r": "递交密信"},
            {"s": "Bob", "t": "Alice", "r": "点头答应"},
            {"s": "Bob", "t": "Carol", "r": "暗中跟踪"},
            {"s": "Carol", "t": "Bob", "r": "拔剑相向"},
        ],
    }]}, ensure_ascii=False)
    atom = parse_anchors(reply, 1)[0]
    assert [e.r for e in atom.edges] == ["递交密信", "点头答应", "暗中跟踪"]
    assert atom.where == ""


def test_round_input_and_pairs():
    messages = [
        ChatMessage(mes="我把信交给你。", is_user=True, name="Alice"),
        ChatMessage(mes="Bob接过信。", name="Bob"),
        ChatMessage(mes="Bob又说了一句。", name="Bob"),
    ]
    text = build_round_input(messages[0], messages[1])
    assert text.startswith("<round>")
    assert '<user name="Alice">' in text
    assert "<assistant>\nBob接过信。\n</assistant>" in text

    pairs = round_pairs(messages)
    assert [(u is not None, f) for u, _, f in pairs] == [(True, 1), (False, 2)]
    assert [f for _, _, f in round_pairs(messages, floors=[2])] == [2]


def test_extract_round_and_batch():
    async def _run() -> None:
        chat = _FakeChat(_anchor_reply(SCENE))
        extractor = AtomExtractor(chat, AtomConfig(retry_delay=0.0))
        messages = [
            ChatMessage(mes="我推门而入。", is_user=True),
            ChatMessage(mes="Bob抬头。"),
            ChatMessage(mes="我坐下。", is_user=True),
            ChatMessage(mes="Bob递来一杯酒。"),
        ]
        atoms = await extractor.extract_round(messages[0], messages[1], 1)
        assert [a.atom_id for a in atoms] == ["atom-1-0"]

        progress = []
        atoms = await extractor.extract_batch(messages, on_progress=lambda done, total, failed: progress.append((done, total, failed)))
        assert [a.floor for a in atoms] == [1, 3]
        assert progress[-1] == (2, 2, 0)

        assert await extractor.extract_round(None, ChatMessage(mes="  "), 7) == []

    asyncio.run(_run())


def test_extract_round_gives_up_after_retries():
    async def _run() -> None:
        chat = _FakeChat(TransientError("boom"))
        extractor = AtomExtractor(chat, AtomConfig(retries=2, retry_delay=0.0))
        assert await extractor.extract_round(None, ChatMessage(mes="Bob沉默。"), 1) is None
        assert chat.calls == 3

    asyncio.run(_run())


def test_cancelled_batch_extracts_nothing():
    async def _run() -> None:
        chat = _FakeChat(_anchor_reply(SCENE))
        extractor = AtomExtractor(chat, AtomConfig())
        cancel = CancelToken()
        cancel.cancel()
        messages = [ChatMessage(mes="我来了。", is_user=True), ChatMessage(mes="Bob点头。")]
        assert await extractor.extract_batch(messages, cancel=cancel) == []
        assert chat.calls == 0

    asyncio.run(_run())


def test_parse_anchors_prefixes_every_continuation():
    # a bare anchor object is the normal continuation of the prefill
    bare = json.dumps({"scene": SCENE, "edges": [], "where": ""}, ensure_ascii=False) + "]}"
    assert [a.atom_id for a in parse_anchors(bare, ai_floor=3)] == ["atom-3-0"]
    assert [a.atom_id for a in parse_anchors("\n  " + bare, ai_floor=3)] == ["atom-3-0"]

    restated = '{ "anchors" : [' + bare
    assert [a.semantic for a in parse_anchors(restated, ai_floor=4)] == [SCENE]
    assert parse_anchors("]}", ai_floor=4) == []


class _RecordingToken(CancelToken):
    def __init__(self) -> None:
        super().__init__()
        self.delays = []

    async def sleep(self, seconds: float) -> bool:
        self.delays.append(seconds)
        return True


def test_retry_delay_is_fixed():
    async def _run() -> list:
        chat = _FakeChat("not json at all")
        token = _RecordingToken()
        extractor = AtomExtractor(chat, AtomConfig(retries=2, retry_delay=0.5))
        assert await extractor.extract_round(None, ChatMessage(mes="Bob沉默。"), 1, cancel=token) is None
        assert chat.calls == 3
        return token.delays

    assert asyncio.run(_run()) == [0.5, 0.5]
