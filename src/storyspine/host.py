"""Host chat application interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from storyspine.utils import json_loads


class HostEvent(str, Enum):
    SENT = "message_sent"
    RECEIVED = "message_received"
    DELETED = "message_deleted"
    SWIPED = "message_swiped"
    EDITED = "message_edited"
    CHAT_CHANGED = "chat_changed"


@dataclass
class ChatMessage:
    mes: str
    is_user: bool = False
    name: str = ""

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ChatMessage:
        return cls(
            mes=str(d.get("mes", "") or ""),
            is_user=bool(d.get("is_user", False)),
            name=str(d.get("name", "") or ""),
        )


@runtime_checkable
class ChatHost(Protocol):
    """What the engine needs from the host: a chat identity and its transcript."""

    @property
    def chat_id(self) -> str: ...

    def messages(self) -> list[ChatMessage]: ...


@dataclass
class InMemoryHost:
    chat_id: str
    chat: list[ChatMessage] = field(default_factory=list)

    def messages(self) -> list[ChatMessage]:
        return self.chat


class TranscriptHost:
    """Reads a JSON transcript file: a list of {name, is_user, mes} objects."""

    def __init__(self, path: Path | str, chat_id: str | None = None) -> None:
        self.path = Path(path)
        self._chat_id = chat_id or self.path.stem

    @property
    def chat_id(self) -> str:
        return self._chat_id

    def messages(self) -> list[ChatMessage]:
        data = json_loads(self.path.read_bytes())
        if isinstance(data, dict):
            data = data.get("messages") or data.get("chat") or []
        return [ChatMessage.from_dict(m) for m in data if isinstance(m, dict)]
