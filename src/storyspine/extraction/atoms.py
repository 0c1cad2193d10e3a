"""L0 scene-anchor extraction from one user/assistant round."""

from __future__ import annotations

import asyncio
import logging
import re
import unicodedata
from typing import Any, Callable, Iterable

from storyspine.config import AtomConfig
from storyspine.exceptions import OperationCancelled, TransientError
from storyspine.host import ChatMessage
from storyspine.llm.backends import ChatBackend, Message
from storyspine.tasks import CancelToken
from storyspine.types import Atom, Edge
from storyspine.utils import filter_text, parse_json_object

logger = logging.getLogger(__name__)

MAX_ANCHORS_PER_ROUND = 2
MAX_EDGES_PER_ANCHOR = 3
MIN_SCENE_LENGTH = 15
ACTION_MIN_LENGTH = 2
ACTION_MAX_LENGTH = 12

ACTION_STRIP_WORDS = (
    "突然", "非常", "有些", "有点", "轻轻", "悄悄", "缓缓", "立刻",
    "马上", "然后", "并且", "而且", "开始", "继续", "再次", "正在",
)

_ZERO_WIDTH_RE = re.compile(r"[\u200b-\u200d\ufeff]")
_ACTION_PUNCT_RE = re.compile(r"[，。！？、；：,.!?;:\"'“”‘’()（）\[\]{}<>《》]")
_TRAILING_PARTICLE_RE = re.compile(r"(地|得|了|着|过)+$")
_WHITESPACE_RE = re.compile(r"\s+")

JSON_PREFILL = '{"anchors":['
_RESTATED_RE = re.compile(r'\{\s*"anchors"\s*:')

SYSTEM_PROMPT = """你是场景摘要器。从一轮对话中提取1-2个场景锚点，用于语义检索和关系追踪。

输入格式：
<round>
  <user name="用户名">...</user>
  <assistant>...</assistant>
</round>

只输出严格JSON：
{"anchors":[
  {
    "scene": "60-100字完整场景描述",
    "edges": [{"s":"施事方","t":"受事方","r":"互动行为"}],
    "where": "地点"
  }
]}

## scene
- 纯自然语言，像旁白，不要标签或枚举值
- 包含角色名、动作、情感氛围、关键细节
- 60-100字

## edges
- s=施事方 t=受事方 r=互动行为（6-12字的“动作+对象/结果”短语）
- s/t 使用角色正式名称，不用代词
- r 不写人名、不写心理描写或评价词
- 每个锚点 1-3 条

## where
- 场景地点，无明确地点时为空字符串

## 数量
- 最多2个，只有明显场景切换时才输出2个
- 无角色互动时返回 {"anchors":[]}"""


def sanitize_action_phrase(raw: Any) -> str:
    """Normalize an edge label to a short action phrase, or '' when unusable."""
    text = _ZERO_WIDTH_RE.sub("", unicodedata.normalize("NFKC", str(raw or ""))).strip()
    if not text:
        return ""
    text = _WHITESPACE_RE.sub("", _ACTION_PUNCT_RE.sub("", text))
    for word in ACTION_STRIP_WORDS:
        text = text.replace(word, "")
    text = _TRAILING_PARTICLE_RE.sub("", text)
    if len(text) < ACTION_MIN_LENGTH:
        return ""
    return text[:ACTION_MAX_LENGTH]


def atom_quality(scene: str, edges: list[Edge], where: str) -> float:
    scene_score = min(len(scene or "") / 80, 1.0)
    edge_score = min(len(edges) / 3, 1.0)
    where_score = 1.0 if where else 0.0
    return round(0.55 * scene_score + 0.35 * edge_score + 0.10 * where_score, 3)


def sanitize_edges(raw: Any) -> list[Edge]:
    if not isinstance(raw, list):
        return []
    out: list[Edge] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        edge = Edge(
            s=str(item.get("s") or "").strip(),
            t=str(item.get("t") or "").strip(),
            r=sanitize_action_phrase(item.get("r")),
        )
        if edge.s and edge.t and edge.r:
            out.append(edge)
        if len(out) >= MAX_EDGES_PER_ANCHOR:
            break
    return out


def anchor_to_atom(anchor: Any, ai_floor: int, idx: int) -> Atom | None:
    if not isinstance(anchor, dict):
        return None
    scene = str(anchor.get("scene") or "").strip()
    # very short scenes are noise
    if len(scene) < MIN_SCENE_LENGTH:
        return None
    edges = sanitize_edges(anchor.get("edges"))
    where = str(anchor.get("where") or "").strip()
    return Atom(
        atom_id=f"atom-{ai_floor}-{idx}",
        floor=ai_floor,
        semantic=scene,
        edges=edges,
        where=where,
        quality=atom_quality(scene, edges, where),
        source="ai",
    )


def parse_anchors(raw: str, ai_floor: int) -> list[Atom] | None:
    """Atoms from an anchors reply, or None when the reply is unusable."""
    text = (raw or "").strip()
    if not text:
        return None
    # the reply continues the prefill unless the model restated the whole object
    candidate = text if _RESTATED_RE.match(text) else JSON_PREFILL + text
    obj = parse_json_object(candidate)
    anchors = obj.get("anchors")
    if not isinstance(anchors, list):
        return None
    atoms = [anchor_to_atom(a, ai_floor, i) for i, a in enumerate(anchors[:MAX_ANCHORS_PER_ROUND])]
    return [a for a in atoms if a is not None]


def build_round_input(
    user_message: ChatMessage | None,
    ai_message: ChatMessage,
    filter_rules: Iterable[Any] = (),
    user_label: str = "用户",
) -> str:
    parts = []
    if user_message is not None and user_message.mes.strip():
        name = user_message.name or user_label
        parts.append(f'<user name="{name}">\n{filter_text(user_message.mes, filter_rules)}\n</user>')
    parts.append(f"<assistant>\n{filter_text(ai_message.mes, filter_rules)}\n</assistant>")
    return "<round>\n" + "\n".join(parts) + "\n</round>"


def round_pairs(messages: list[ChatMessage], floors: Iterable[int] | None = None) -> list[tuple[ChatMessage | None, ChatMessage, int]]:
    """``(user_message, ai_message, ai_floor)`` for every AI floor."""
    wanted = set(floors) if floors is not None else None
    pairs = []
    for i, msg in enumerate(messages):
        if msg.is_user or (wanted is not None and i not in wanted):
            continue
        prev = messages[i - 1] if i > 0 and messages[i - 1].is_user else None
        pairs.append((prev, msg, i))
    return pairs


class AtomExtractor:
    def __init__(
        self,
        chat: ChatBackend,
        config: AtomConfig | None = None,
        filter_rules: Iterable[Any] = (),
        user_label: str = "用户",
    ) -> None:
        self.chat = chat
        self.config = config or AtomConfig()
        self.filter_rules = list(filter_rules)
        self.user_label = user_label

    async def extract_round(
        self,
        user_message: ChatMessage | None,
        ai_message: ChatMessage,
        ai_floor: int,
        cancel: CancelToken | None = None,
    ) -> list[Atom] | None:
        """Atoms for one AI floor; [] for nothing to extract, None once retries are spent."""
        if not ai_message.mes.strip():
            return []
        prompt = [
            Message(role="system", content=SYSTEM_PROMPT),
            Message(role="user", content=build_round_input(user_message, ai_message, self.filter_rules, self.user_label)),
            Message(role="assistant", content=JSON_PREFILL),
        ]
        attempts = self.config.retries + 1
        for attempt in range(attempts):
            if cancel is not None and cancel.cancelled:
                return None
            try:
                call = self.chat.chat(
                    prompt,
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_tokens,
                )
                resp = await (cancel.run(call) if cancel is not None else call)
            except OperationCancelled:
                return None
            except TransientError as e:
                logger.warning("atom extraction floor %d attempt %d failed: %s", ai_floor, attempt + 1, e)
            else:
                atoms = parse_anchors(resp.content, ai_floor)
                if atoms is not None:
                    return atoms
                logger.warning("atom extraction floor %d attempt %d: unusable reply", ai_floor, attempt + 1)
            if attempt < attempts - 1:
                delay = self.config.retry_delay
                if cancel is not None:
                    if not await cancel.sleep(delay):
                        return None
                else:
                    await asyncio.sleep(delay)
        return None

    async def extract_batch(
        self,
        messages: list[ChatMessage],
        floors: Iterable[int] | None = None,
        cancel: CancelToken | None = None,
        on_progress: Callable[[int, int, int], None] | None = None,
    ) -> list[Atom]:
        """Extract atoms for every AI floor with bounded concurrency.

        Failed floors are counted and skipped; results are ordered by floor.
        """
        pairs = round_pairs(messages, floors)
        if not pairs:
            return []
        sem = asyncio.Semaphore(max(1, self.config.concurrency))
        results: dict[int, list[Atom]] = {}
        counts = {"completed": 0, "failed": 0}

        async def one(user_msg: ChatMessage | None, ai_msg: ChatMessage, floor: int) -> None:
            async with sem:
                if cancel is not None and cancel.cancelled:
                    return
                atoms = await self.extract_round(user_msg, ai_msg, floor, cancel)
            if atoms is None:
                counts["failed"] += 1
            else:
                results[floor] = atoms
            counts["completed"] += 1
            if on_progress is not None:
                on_progress(counts["completed"], len(pairs), counts["failed"])

        await asyncio.gather(*(one(u, a, f) for u, a, f in pairs))
        out = [atom for floor in sorted(results) for atom in results[floor]]
        logger.info("atom extraction: %d atoms from %d rounds, %d failed", len(out), len(pairs), counts["failed"])
        return out
