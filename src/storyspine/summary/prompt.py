"""Prompt construction for incremental summarization."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from storyspine.host import ChatMessage
from storyspine.llm.backends import Message
from storyspine.pipeline.chunker import message_speaker
from storyspine.types import EVENT_TYPES, EVENT_WEIGHTS, TRENDS, Fact, StoryState
from storyspine.utils import filter_text

JSON_PREFILL = "下面重新生成完整JSON。"

EMPTY_SUMMARY_TEXT = "（空白，这是首次总结）"
EMPTY_FACTS_TEXT = "（空白，尚无事实记录）"

SYSTEM_PROMPT = (
    "You are a story summary specialist. You read an ongoing role-play dialogue and "
    "maintain a structured, incremental record of it: events, characters, character "
    "arcs, keywords and a small graph of hard facts. You only ever output NEW "
    "information relative to the existing record."
)

FACT_RULES = (
    "## factUpdates 规则\n"
    "- 只记录硬性事实，s+p 为键，相同键会覆盖旧值\n"
    "- isState: true=核心约束(位置/身份/生死/关系)，false=有容量上限会被清理\n"
    f"- 关系类: p=\"对X的看法\"，trend 必填（{'|'.join(TRENDS)}）\n"
    "- 删除: {s, p, retracted: true}，不需要 o 字段\n"
    "- 复用已有谓词，不要发明同义词\n"
    "- 只输出有变化的条目"
)


def _output_format(next_event_id: int) -> str:
    return (
        "## Output Format\n"
        "```json\n"
        "{\n"
        '  "keywords": [{"text": "全剧情关键词(5-10个)", "weight": "核心|重要|一般"}],\n'
        '  "events": [\n'
        "    {\n"
        f'      "id": "evt-{next_event_id}起始，依次递增",\n'
        '      "title": "地点·事件标题",\n'
        '      "timeLabel": "时间线标签",\n'
        '      "summary": "1-2句话，末尾标注楼层(#X-Y)",\n'
        '      "participants": ["正式人名"],\n'
        f'      "type": "{"|".join(EVENT_TYPES)}",\n'
        f'      "weight": "{"|".join(EVENT_WEIGHTS)}",\n'
        '      "causedBy": ["evt-12"]\n'
        "    }\n"
        "  ],\n"
        '  "newCharacters": ["仅本次首次出现的角色名"],\n'
        '  "arcUpdates": [{"name": "角色名", "trajectory": "当前阶段(15字内)", "progress": 0.5, "newMoment": "新增关键时刻"}],\n'
        '  "factUpdates": [\n'
        '    {"s": "主体", "p": "谓词", "o": "当前值", "isState": true, "trend": "仅关系类填"},\n'
        '    {"s": "主体", "p": "谓词", "retracted": true}\n'
        "  ]\n"
        "}\n"
        "```\n"
        f"- events.id 从 evt-{next_event_id} 开始编号，已有事件绝不重复\n"
        "- causedBy 仅在因果明确时填写，0-2个\n"
        "- keywords 是全局关键词，综合已有+新增\n"
        "- 合法JSON，字符串内部避免英文双引号"
    )


def format_existing_summary(state: StoryState | None) -> str:
    if state is None:
        return EMPTY_SUMMARY_TEXT
    parts: list[str] = []
    if state.events:
        parts.append("【已记录事件】")
        for i, ev in enumerate(state.events, 1):
            parts.append(f"{i}. [{ev.time_label}] {ev.title}：{ev.summary}")
    if state.characters:
        parts.append("\n【主要角色】" + "、".join(c.name for c in state.characters))
    if state.arcs:
        parts.append("【角色弧光】")
        for arc in state.arcs:
            parts.append(f"- {arc.name}：{arc.trajectory}（进度{round(arc.progress * 100)}%）")
    if state.keywords:
        parts.append("\n【关键词】" + "、".join(k.text for k in state.keywords))
    return "\n".join(parts) or EMPTY_SUMMARY_TEXT


def format_facts(facts: Iterable[Fact]) -> tuple[str, list[str]]:
    """Render facts as ``- s | p | o [trend]`` lines plus the distinct predicates."""
    lines = []
    predicates: list[str] = []
    for f in facts:
        trend = f" [{f.trend}]" if f.trend else ""
        lines.append(f"- {f.s} | {f.p} | {f.o}{trend}")
        if f.p not in predicates:
            predicates.append(f.p)
    return ("\n".join(lines) or EMPTY_FACTS_TEXT), predicates


@dataclass
class DialogueSlice:
    start: int
    end: int
    text: str

    @property
    def range_label(self) -> str:
        return f"{self.start + 1}-{self.end + 1}楼"

    @property
    def count(self) -> int:
        return self.end - self.start + 1


def build_incremental_slice(
    messages: list[ChatMessage],
    last_summarized: int,
    target_floor: int,
    max_per_run: int = 100,
    filter_rules: Iterable[Any] = (),
    user_label: str = "用户",
    char_label: str = "角色",
) -> DialogueSlice | None:
    """The next unsummarized window, or None when there is nothing new."""
    start = max(0, last_summarized + 1)
    end = min(target_floor, len(messages) - 1, start + max_per_run - 1)
    if end < start:
        return None
    lines = []
    for floor in range(start, end + 1):
        msg = messages[floor]
        speaker = message_speaker(msg, user_label, char_label)
        lines.append(f"#{floor + 1} 【{speaker}】\n{filter_text(msg.mes, filter_rules)}")
    return DialogueSlice(start=start, end=end, text="\n\n".join(lines))


def build_summary_messages(
    existing_summary: str,
    facts_text: str,
    predicates: list[str],
    dialogue: DialogueSlice,
    next_event_id: int,
) -> list[Message]:
    predicates_hint = ""
    if predicates:
        predicates_hint = "\n\n<已有谓词，请复用>\n" + "、".join(predicates) + "\n</已有谓词，请复用>"
    state_block = (
        f"<已有总结状态>\n{existing_summary}\n</已有总结状态>\n\n"
        f"<当前事实图谱>\n{facts_text}\n</当前事实图谱>{predicates_hint}"
    )
    dialogue_block = f"<新对话内容>（{dialogue.range_label}）\n{dialogue.text}\n</新对话内容>"
    instructions = (
        "## Output Rule\nGenerate a single valid JSON object with INCREMENTAL updates only.\n\n"
        f"{FACT_RULES}\n\n{_output_format(next_event_id)}"
    )
    return [
        Message(role="system", content=SYSTEM_PROMPT),
        Message(role="user", content=state_block),
        Message(role="assistant", content="Existing record loaded. Please provide the new dialogue."),
        Message(role="user", content=dialogue_block),
        Message(role="user", content=instructions),
        Message(role="assistant", content=JSON_PREFILL),
    ]
