"""Decoding of LLM summary output.

Decoding is two explicit steps: a lenient text pre-pass that only strips
code fences and trailing commas, then strict schema validation. Anything
that fails either step raises ``MalformedDeltaError`` so the caller can retry.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from storyspine.exceptions import MalformedDeltaError
from storyspine.types import EVENT_TYPES, EVENT_WEIGHTS

_LEADING_FENCE_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"\s*```$")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


class _DeltaModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class KeywordIn(_DeltaModel):
    text: str
    weight: str = ""


class EventIn(_DeltaModel):
    id: str
    title: str = ""
    time_label: str = Field(default="", alias="timeLabel")
    summary: str = ""
    participants: list[str] = Field(default_factory=list)
    type: str = "日常"
    weight: str = "氛围"
    caused_by: list[str] = Field(default_factory=list, alias="causedBy")

    @field_validator("type")
    @classmethod
    def _known_type(cls, v: str) -> str:
        return v if v in EVENT_TYPES else "日常"

    @field_validator("weight")
    @classmethod
    def _known_weight(cls, v: str) -> str:
        return v if v in EVENT_WEIGHTS else "氛围"

    @field_validator("caused_by", mode="before")
    @classmethod
    def _coerce_caused_by(cls, v: Any) -> Any:
        return [] if v is None else v


class ArcUpdateIn(_DeltaModel):
    name: str
    trajectory: str = ""
    progress: float = 0.0
    new_moment: str = Field(default="", alias="newMoment")

    @field_validator("progress")
    @classmethod
    def _clamp_progress(cls, v: float) -> float:
        return max(0.0, min(1.0, v))


class FactUpdateIn(_DeltaModel):
    s: str = ""
    p: str = ""
    o: str = ""
    is_state: bool = Field(default=False, alias="isState")
    trend: str | None = None
    retracted: bool = False

    @field_validator("o", mode="before")
    @classmethod
    def _stringify_object(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class SummaryDelta(_DeltaModel):
    keywords: list[KeywordIn] = Field(default_factory=list)
    events: list[EventIn] = Field(default_factory=list)
    new_characters: list[str] = Field(default_factory=list, alias="newCharacters")
    arc_updates: list[ArcUpdateIn] = Field(default_factory=list, alias="arcUpdates")
    fact_updates: list[FactUpdateIn] = Field(default_factory=list, alias="factUpdates")


def lenient_json_object(raw: str) -> dict[str, Any] | None:
    """Best-effort JSON object extraction: fences, surrounding prose, trailing commas."""
    if not raw:
        return None
    cleaned = _TRAILING_FENCE_RE.sub("", _LEADING_FENCE_RE.sub("", str(raw).strip())).strip()
    try:
        obj = json.loads(cleaned)
        return obj if isinstance(obj, dict) else None
    except json.JSONDecodeError:
        pass
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        return None
    candidate = _TRAILING_COMMA_RE.sub(r"\1", cleaned[start:end + 1])
    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def parse_summary_delta(raw: str) -> SummaryDelta:
    obj = lenient_json_object(raw)
    if obj is None:
        raise MalformedDeltaError("summary output is not a JSON object", raw=raw or "")
    try:
        return SummaryDelta.model_validate(obj)
    except ValidationError as e:
        raise MalformedDeltaError(f"summary output failed validation: {e.error_count()} error(s)", raw=raw) from e
