"""Shared utilities."""

from __future__ import annotations

import hashlib
import json
import math
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Iterable

import numpy as np
import orjson

_CJK_RE = re.compile(r"[\u4e00-\u9fff]")
_ZERO_WIDTH_RE = re.compile(r"[\u200b-\u200d\ufeff]")
_FLOOR_RANGE_RE = re.compile(r"\(#(\d+)(?:-(\d+))?\)")
_TRAILING_RANGE_RE = re.compile(r"\s*\(#\d+(?:-\d+)?\)\s*$")
_TTS_RE = re.compile(r"\[tts:[^\]]*\]", re.IGNORECASE)
_STATE_RE = re.compile(r"<state>[\s\S]*?</state>", re.IGNORECASE)
_RELATION_RE = re.compile(r"^对(.+)的")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_str(dt: datetime) -> str:
    return dt.isoformat()


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def text_hash(text: str) -> str:
    return content_hash((text or "").encode("utf-8"))[:16]


def estimate_tokens(text: str | None) -> int:
    """CJK characters count one each; everything else counts a quarter."""
    if not text:
        return 0
    cjk = len(_CJK_RE.findall(text))
    return math.ceil(cjk + (len(text) - cjk) / 4)


def normalize(s: Any) -> str:
    text = unicodedata.normalize("NFKC", str(s or ""))
    return _ZERO_WIDTH_RE.sub("", text).strip().lower()


def parse_floor_range(summary: str | None) -> tuple[int, int] | None:
    """Zero-based (start, end) from a one-based ``(#a-b)`` marker."""
    if not summary:
        return None
    m = _FLOOR_RANGE_RE.search(summary)
    if not m:
        return None
    a = int(m.group(1))
    b = int(m.group(2)) if m.group(2) else a
    return max(0, a - 1), max(0, b - 1)


def clean_summary(summary: str | None) -> str:
    return _TRAILING_RANGE_RE.sub("", str(summary or "")).strip()


def relation_target(predicate: str | None) -> str | None:
    m = _RELATION_RE.match(str(predicate or ""))
    return m.group(1) if m else None


def is_relation_predicate(predicate: str | None) -> bool:
    return relation_target(predicate) is not None


def filter_text(text: str, rules: Iterable[Any] = ()) -> str:
    """Remove host-configured spans.

    A rule with both markers removes each ``start...end`` block; start-only
    drops everything from the marker on; end-only drops everything up to and
    including the marker.
    """
    out = str(text or "")
    for rule in rules:
        start = getattr(rule, "start", None) if not isinstance(rule, dict) else rule.get("start")
        end = getattr(rule, "end", None) if not isinstance(rule, dict) else rule.get("end")
        start = start or ""
        end = end or ""
        if start and end:
            out = re.sub(re.escape(start) + r"[\s\S]*?" + re.escape(end), "", out)
        elif start:
            idx = out.find(start)
            if idx != -1:
                out = out[:idx]
        elif end:
            idx = out.find(end)
            if idx != -1:
                out = out[idx + len(end):]
    return out.strip()


def clean_message_text(text: str, rules: Iterable[Any] = ()) -> str:
    cleaned = filter_text(text, rules)
    cleaned = _TTS_RE.sub("", cleaned)
    cleaned = _STATE_RE.sub("", cleaned)
    return cleaned.strip()


def cosine(a: Any, b: Any) -> float:
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def parse_json_object(raw: str) -> dict[str, Any]:
    text = (raw or "").strip()
    if not text:
        return {}
    if "```json" in text:
        m = re.search(r"```json\s*(.*?)\s*```", text, flags=re.DOTALL | re.IGNORECASE)
        if m:
            text = m.group(1).strip()
    elif text.startswith("```"):
        m = re.search(r"```\s*(.*?)\s*```", text, flags=re.DOTALL)
        if m:
            text = m.group(1).strip()
    try:
        obj = json.loads(text)
        return obj if isinstance(obj, dict) else {}
    except json.JSONDecodeError:
        pass
    m = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if not m:
        return {}
    try:
        obj = json.loads(m.group(0))
        return obj if isinstance(obj, dict) else {}
    except json.JSONDecodeError:
        return {}
