"""Sentence-packed L1 chunking of chat messages."""

from __future__ import annotations

import re
from typing import Any, Iterable

from storyspine.host import ChatMessage
from storyspine.types import Chunk
from storyspine.utils import clean_message_text, estimate_tokens, text_hash

CHUNK_MAX_TOKENS = 200

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[。！？\n])|(?<=[.!?]\s)")


def make_chunk_id(floor: int, idx: int) -> str:
    return f"c-{floor}-{idx}"


def split_sentences(text: str) -> list[str]:
    if not text:
        return []
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]


def message_speaker(message: ChatMessage, user_label: str = "用户", char_label: str = "角色") -> str:
    return message.name or (user_label if message.is_user else char_label)


def chunk_message(
    floor: int,
    message: ChatMessage,
    max_tokens: int = CHUNK_MAX_TOKENS,
    filter_rules: Iterable[Any] = (),
) -> list[Chunk]:
    """Split one message into chunks of at most ``max_tokens`` estimated tokens.

    Sentences are packed greedily. A single sentence over the limit flushes
    the current chunk and is cut into fixed slices of ``max_tokens * 2``
    characters.
    """
    speaker = message_speaker(message)
    is_user = bool(message.is_user)
    text = clean_message_text(message.mes, filter_rules)
    if not text:
        return []

    chunks: list[Chunk] = []

    def emit(chunk_text: str) -> None:
        idx = len(chunks)
        chunks.append(Chunk(
            chunk_id=make_chunk_id(floor, idx),
            floor=floor,
            chunk_idx=idx,
            speaker=speaker,
            is_user=is_user,
            text=chunk_text,
            text_hash=text_hash(chunk_text),
        ))

    if estimate_tokens(text) <= max_tokens:
        emit(text)
        return chunks

    current: list[str] = []
    current_tokens = 0
    for sent in split_sentences(text):
        sent_tokens = estimate_tokens(sent)
        if sent_tokens > max_tokens:
            if current:
                emit("".join(current))
                current, current_tokens = [], 0
            slice_size = max_tokens * 2
            for i in range(0, len(sent), slice_size):
                emit(sent[i:i + slice_size])
            continue
        if current and current_tokens + sent_tokens > max_tokens:
            emit("".join(current))
            current, current_tokens = [], 0
        current.append(sent)
        current_tokens += sent_tokens

    if current:
        emit("".join(current))
    return chunks


def chunk_messages(
    messages: list[ChatMessage],
    start_floor: int = 0,
    end_floor: int | None = None,
    max_tokens: int = CHUNK_MAX_TOKENS,
    filter_rules: Iterable[Any] = (),
) -> list[Chunk]:
    end = len(messages) - 1 if end_floor is None else min(end_floor, len(messages) - 1)
    out: list[Chunk] = []
    for floor in range(max(0, start_floor), end + 1):
        out.extend(chunk_message(floor, messages[floor], max_tokens, filter_rules))
    return out
