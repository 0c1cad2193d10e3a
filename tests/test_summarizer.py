from __future__ import annotations

import asyncio
import json

import pytest

from storyspine.config import Config
from storyspine.exceptions import SummaryFailedError, TransientError
from storyspine.host import ChatMessage
from storyspine.llm.backends import ChatResponse
from storyspine.memory.store import MemoryStore
from storyspine.storage.sqlite_store import SQLiteStore
from storyspine.summary import Summarizer
from storyspine.summary.prompt import JSON_PREFILL, build_incremental_slice


class _FakeChat:
    def __init__(self, responses: list[str | Exception]) -> None:
        self._responses = responses
        self.calls = 0
        self.prompts = []

    async def chat(self, messages, temperature=None, max_tokens=None, json_mode=False):  # noqa: ANN001
        payload = self._responses[min(self.calls, len(self._responses) - 1)]
        self.calls += 1
        self.prompts.append(messages)
        if isinstance(payload, Exception):
            raise payload
        return ChatResponse(content=payload)

    @property
    def stats(self) -> dict:
        return {"calls": self.calls}


def _reply(event_id: str = "evt-1", floors: str = "#1-4") -> str:
    return json.dumps({
        "keywords": [{"text": "酒馆", "weight": "核心"}],
        "events": [{
            "id": event_id,
            "title": "酒馆初遇",
            "timeLabel": "第一夜",
            "summary": f"Alice在酒馆遇见Bob，两人约定同行 ({floors})",
            "participants": ["Alice", "Bob"],
            "type": "相遇",
            "weight": "主线",
        }],
        "newCharacters": ["Alice", "Bob"],
        "arcUpdates": [{"name": "Alice", "trajectory": "戒备", "progress": 0.1, "newMoment": "走进酒馆"}],
        "factUpdates": [{"s": "Alice", "p": "位置", "o": "酒馆", "isState": True}],
    }, ensure_ascii=False)


def _messages(n: int = 4) -> list[ChatMessage]:
    out = []
    for i in range(n):
        if i % 2 == 0:
            out.append(ChatMessage(mes=f"我推开酒馆的门（{i}）", is_user=True, name="Alice"))
        else:
            out.append(ChatMessage(mes=f"Bob抬头看了你一眼。<think>内心独白</think>（{i}）", name="Bob"))
    return out


@pytest.fixture
def store(tmp_path):
    sqlite = SQLiteStore(tmp_path / "summary.db")
    yield MemoryStore(sqlite, "chat-1")
    sqlite.close()


def _config(**summary) -> Config:
    cfg = Config()
    cfg.summary.retry_delay = 0.0
    for k, v in summary.items():
        setattr(cfg.summary, k, v)
    return cfg


def test_incremental_slice_labels_and_filters():
    cfg = Config()
    dialogue = build_incremental_slice(_messages(6), 1, 10, max_per_run=3, filter_rules=cfg.filters.rules)
    assert (dialogue.start, dialogue.end, dialogue.count) == (2, 4, 3)
    assert dialogue.range_label == "3-5楼"
    assert "#3 【Alice】" in dialogue.text
    assert "内心独白" not in dialogue.text
    assert build_incremental_slice(_messages(4), 3, 3) is None


def test_run_commits_merged_snapshot(store):
    async def _run() -> None:
        chat = _FakeChat([JSON_PREFILL + _reply()])
        result = await Summarizer(store, chat, _config()).run(_messages(), target_floor=3)

        assert result.success and not result.no_content
        assert result.end_floor == 3
        assert result.new_event_ids == ["evt-1"]
        assert [e.added_at for e in result.events] == [3]
        assert store.last_summarized == 3
        assert [h.end_floor for h in store.snapshot.history] == [3]
        assert [f.o for f in store.facts()] == ["酒馆"]
        assert store.state.arcs[0].moments[0].text == "走进酒馆"

        again = await Summarizer(store, chat, _config()).run(_messages(), target_floor=3)
        assert again.no_content
        assert chat.calls == 1

    asyncio.run(_run())


def test_run_respects_max_per_run(store):
    async def _run() -> None:
        chat = _FakeChat([_reply()])
        result = await Summarizer(store, chat, _config(max_per_run=2)).run(_messages(), target_floor=3)
        assert result.end_floor == 1
        assert store.last_summarized == 1

    asyncio.run(_run())


def test_second_run_sees_existing_ids(store):
    async def _run() -> None:
        chat = _FakeChat([_reply("evt-1", "#1-2"), _reply("evt-2", "#3-4")])
        summarizer = Summarizer(store, chat, _config(max_per_run=2))
        await summarizer.run(_messages(), target_floor=3)
        second = await summarizer.run(_messages(), target_floor=3)

        assert second.end_floor == 3
        assert [e.id for e in store.state.events] == ["evt-1", "evt-2"]
        assert [h.end_floor for h in store.snapshot.history] == [1, 3]
        # the existing record is part of the second prompt
        prompt_text = "\n".join(m.content for m in chat.prompts[1])
        assert "酒馆初遇" in prompt_text

    asyncio.run(_run())


def test_retry_recovers_from_malformed_output(store):
    async def _run() -> None:
        chat = _FakeChat(["抱歉，我无法完成。", TransientError("timeout"), _reply()])
        result = await Summarizer(store, chat, _config(retries=3)).run_with_retry(_messages(), 3)
        assert result.success
        assert chat.calls == 3

    asyncio.run(_run())


def test_exhausted_retries_leave_store_untouched(store):
    async def _run() -> None:
        chat = _FakeChat(["not json"])
        with pytest.raises(SummaryFailedError) as excinfo:
            await Summarizer(store, chat, _config(retries=2)).run_with_retry(_messages(), 3)
        assert excinfo.value.attempts == 2
        assert chat.calls == 2
        assert store.last_summarized == -1
        assert store.snapshot.history == []

    asyncio.run(_run())
