"""Incremental summarization: slice, call the LLM, sanitize, merge, commit."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from storyspine.config import Config
from storyspine.exceptions import MalformedDeltaError, SummaryFailedError, TransientError
from storyspine.host import ChatMessage
from storyspine.llm.backends import ChatBackend
from storyspine.memory.store import MemoryStore, add_checkpoint, merge_new_data, next_event_id
from storyspine.summary.parser import parse_summary_delta
from storyspine.summary.prompt import (
    JSON_PREFILL,
    build_incremental_slice,
    build_summary_messages,
    format_existing_summary,
    format_facts,
)
from storyspine.summary.sanitize import to_story_delta
from storyspine.types import Event, FactUpdate, SummarySnapshot

logger = logging.getLogger(__name__)


@dataclass
class SummaryResult:
    success: bool
    no_content: bool = False
    end_floor: int | None = None
    new_event_ids: list[str] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    fact_updates: list[FactUpdate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "no_content": self.no_content,
            "end_floor": self.end_floor,
            "new_event_ids": list(self.new_event_ids),
            "events": [e.to_dict() for e in self.events],
            "fact_updates": len(self.fact_updates),
        }


def _strip_prefill(content: str) -> str:
    text = (content or "").strip()
    if text.startswith(JSON_PREFILL):
        text = text[len(JSON_PREFILL):].strip()
    return text


class Summarizer:
    """Runs one incremental summary pass against a ``MemoryStore``.

    A run either commits a complete merged snapshot (state, boundary and a new
    checkpoint) or leaves the store untouched.
    """

    def __init__(self, store: MemoryStore, chat: ChatBackend, config: Config | None = None) -> None:
        self.store = store
        self.chat = chat
        self.config = config or Config()

    async def run(self, messages: list[ChatMessage], target_floor: int) -> SummaryResult:
        cfg = self.config
        snapshot = self.store.snapshot
        dialogue = build_incremental_slice(
            messages,
            snapshot.last_summarized,
            target_floor,
            max_per_run=cfg.summary.max_per_run,
            filter_rules=cfg.filters.rules,
            user_label=cfg.prompt.name1 or cfg.prompt.user_label,
            char_label=cfg.prompt.name2 or cfg.prompt.char_label,
        )
        if dialogue is None:
            return SummaryResult(success=True, no_content=True)

        state = snapshot.state
        existing_events = state.events if state else []
        facts_text, predicates = format_facts(self.store.facts())
        next_id = next_event_id(existing_events)
        prompt = build_summary_messages(
            format_existing_summary(state),
            facts_text,
            predicates,
            dialogue,
            next_id,
        )

        resp = await self.chat.chat(prompt)
        delta = to_story_delta(parse_summary_delta(_strip_prefill(resp.content)), [e.id for e in existing_events])

        merged = merge_new_data(state, delta, dialogue.end)
        updated = add_checkpoint(
            SummarySnapshot(last_summarized=dialogue.end, state=merged, history=snapshot.history),
            dialogue.end,
        )
        self.store.commit(updated)
        logger.info(
            "summarized floors %d-%d: %d events, %d fact updates",
            dialogue.start, dialogue.end, len(delta.events), len(delta.fact_updates),
        )
        new_ids = [e.id for e in delta.events]
        return SummaryResult(
            success=True,
            end_floor=dialogue.end,
            new_event_ids=new_ids,
            events=[e for e in merged.events if e.id in new_ids and e.added_at == dialogue.end],
            fact_updates=delta.fact_updates,
        )

    async def run_with_retry(self, messages: list[ChatMessage], target_floor: int) -> SummaryResult:
        attempts = max(1, self.config.summary.retries)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.run(messages, target_floor)
            except (MalformedDeltaError, TransientError) as e:
                last_error = e
                logger.warning("summary attempt %d/%d failed: %s", attempt, attempts, e)
                if attempt < attempts:
                    await asyncio.sleep(self.config.summary.retry_delay)
        raise SummaryFailedError(f"summary failed after {attempts} attempts: {last_error}", attempts=attempts)
