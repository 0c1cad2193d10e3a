"""Core data types for the four memory tiers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


EVENT_TYPES = ("相遇", "冲突", "揭示", "抉择", "羁绊", "转变", "收束", "日常")
EVENT_WEIGHTS = ("核心", "主线", "转折", "点睛", "氛围")
# Ordered from worst to best.
TRENDS = ("破裂", "厌恶", "反感", "陌生", "投缘", "亲密", "交融")


class RecallType(str, Enum):
    DIRECT = "DIRECT"
    RELATED = "RELATED"
    CAUSAL = "CAUSAL"


def _opt_int(v: Any) -> int | None:
    if v is None:
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


# --- L0 ---

@dataclass
class Edge:
    s: str
    t: str
    r: str

    def to_dict(self) -> dict[str, Any]:
        return {"s": self.s, "t": self.t, "r": self.r}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Edge:
        return cls(s=str(d.get("s", "")), t=str(d.get("t", "")), r=str(d.get("r", "")))


@dataclass
class Atom:
    """One scene digest extracted from an AI round, plus relation edges."""
    atom_id: str
    floor: int
    semantic: str
    edges: list[Edge] = field(default_factory=list)
    where: str = ""
    quality: float = 0.0
    source: str = "ai"

    def to_dict(self) -> dict[str, Any]:
        return {
            "atom_id": self.atom_id,
            "floor": self.floor,
            "semantic": self.semantic,
            "edges": [e.to_dict() for e in self.edges],
            "where": self.where,
            "quality": self.quality,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Atom:
        return cls(
            atom_id=str(d["atom_id"]),
            floor=int(d["floor"]),
            semantic=str(d.get("semantic", "")),
            edges=[Edge.from_dict(e) for e in d.get("edges") or []],
            where=str(d.get("where", "") or ""),
            quality=float(d.get("quality", 0.0) or 0.0),
            source=str(d.get("source", "ai") or "ai"),
        )


# --- L1 ---

@dataclass
class Chunk:
    chunk_id: str
    floor: int
    chunk_idx: int
    speaker: str
    is_user: bool
    text: str
    text_hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "floor": self.floor,
            "chunk_idx": self.chunk_idx,
            "speaker": self.speaker,
            "is_user": self.is_user,
            "text": self.text,
            "text_hash": self.text_hash,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Chunk:
        return cls(
            chunk_id=str(d["chunk_id"]),
            floor=int(d["floor"]),
            chunk_idx=int(d.get("chunk_idx", 0)),
            speaker=str(d.get("speaker", "")),
            is_user=bool(d.get("is_user", False)),
            text=str(d.get("text", "")),
            text_hash=str(d.get("text_hash", "")),
        )


# --- L2 ---

@dataclass
class Event:
    id: str
    title: str = ""
    time_label: str = ""
    summary: str = ""
    participants: list[str] = field(default_factory=list)
    type: str = "日常"
    weight: str = "氛围"
    caused_by: list[str] = field(default_factory=list)
    added_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "time_label": self.time_label,
            "summary": self.summary,
            "participants": list(self.participants),
            "type": self.type,
            "weight": self.weight,
            "caused_by": list(self.caused_by),
            "added_at": self.added_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Event:
        return cls(
            id=str(d["id"]),
            title=str(d.get("title", "")),
            time_label=str(d.get("time_label", "")),
            summary=str(d.get("summary", "")),
            participants=[str(p) for p in d.get("participants") or []],
            type=str(d.get("type", "日常")),
            weight=str(d.get("weight", "氛围")),
            caused_by=[str(c) for c in d.get("caused_by") or []],
            added_at=_opt_int(d.get("added_at")),
        )

    @property
    def embed_text(self) -> str:
        return f"{self.title} {self.summary}".strip()


# --- L3 ---

@dataclass
class Fact:
    id: str
    s: str
    p: str
    o: str
    since: int
    added_at: int | None = None
    is_state: bool = False
    trend: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "s": self.s,
            "p": self.p,
            "o": self.o,
            "since": self.since,
            "added_at": self.added_at,
            "is_state": self.is_state,
        }
        if self.trend:
            d["trend"] = self.trend
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Fact:
        return cls(
            id=str(d["id"]),
            s=str(d.get("s", "")),
            p=str(d.get("p", "")),
            o=str(d.get("o", "")),
            since=int(d.get("since", 0) or 0),
            added_at=_opt_int(d.get("added_at")),
            is_state=bool(d.get("is_state", False)),
            trend=d.get("trend") or None,
        )

    @property
    def key(self) -> str:
        return f"{self.s}::{self.p}"


@dataclass
class FactUpdate:
    """A sanitized fact delta: either a set or a retraction."""
    s: str
    p: str
    o: str = ""
    is_state: bool = False
    trend: str | None = None
    retracted: bool = False


# --- Story-level state ---

@dataclass
class ArcMoment:
    text: str
    added_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "added_at": self.added_at}


@dataclass
class Arc:
    name: str
    trajectory: str = ""
    progress: float = 0.0
    moments: list[ArcMoment] = field(default_factory=list)
    added_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "trajectory": self.trajectory,
            "progress": self.progress,
            "moments": [m.to_dict() for m in self.moments],
            "added_at": self.added_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Arc:
        moments = []
        for m in d.get("moments") or []:
            if isinstance(m, str):
                moments.append(ArcMoment(text=m))
            else:
                moments.append(ArcMoment(text=str(m.get("text", "")), added_at=_opt_int(m.get("added_at"))))
        return cls(
            name=str(d["name"]),
            trajectory=str(d.get("trajectory", "")),
            progress=float(d.get("progress", 0.0) or 0.0),
            moments=moments,
            added_at=_opt_int(d.get("added_at")),
        )


@dataclass
class Keyword:
    text: str
    weight: str = ""
    added_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "weight": self.weight, "added_at": self.added_at}


@dataclass
class Character:
    name: str
    added_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "added_at": self.added_at}


@dataclass
class StoryState:
    """Everything the summarizer has merged so far for one chat."""
    keywords: list[Keyword] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    characters: list[Character] = field(default_factory=list)
    arcs: list[Arc] = field(default_factory=list)
    facts: list[Fact] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "keywords": [k.to_dict() for k in self.keywords],
            "events": [e.to_dict() for e in self.events],
            "characters": [c.to_dict() for c in self.characters],
            "arcs": [a.to_dict() for a in self.arcs],
            "facts": [f.to_dict() for f in self.facts],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> StoryState:
        d = d or {}
        return cls(
            keywords=[
                Keyword(text=str(k.get("text", "")), weight=str(k.get("weight", "")), added_at=_opt_int(k.get("added_at")))
                for k in d.get("keywords") or []
            ],
            events=[Event.from_dict(e) for e in d.get("events") or []],
            characters=[
                Character(name=str(c.get("name", "")), added_at=_opt_int(c.get("added_at")))
                for c in d.get("characters") or []
            ],
            arcs=[Arc.from_dict(a) for a in d.get("arcs") or []],
            facts=[Fact.from_dict(f) for f in d.get("facts") or []],
        )


@dataclass
class Checkpoint:
    end_floor: int


@dataclass
class SummarySnapshot:
    """Committed summary store for one chat: boundary, state and checkpoints."""
    last_summarized: int = -1
    state: StoryState | None = None
    history: list[Checkpoint] = field(default_factory=list)


@dataclass
class ChatMeta:
    chat_id: str
    fingerprint: str | None = None
    last_chunk_floor: int = -1


@dataclass
class StateVector:
    atom_id: str
    floor: int
    vector: Any
    r_vector: Any = None


@dataclass
class ArcUpdate:
    name: str
    trajectory: str = ""
    progress: float = 0.0
    new_moment: str = ""


@dataclass
class StoryDelta:
    """Sanitized output of one summarization run, ready to merge."""
    keywords: list[Keyword] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    new_characters: list[str] = field(default_factory=list)
    arc_updates: list[ArcUpdate] = field(default_factory=list)
    fact_updates: list[FactUpdate] = field(default_factory=list)
