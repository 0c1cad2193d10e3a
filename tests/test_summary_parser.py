from __future__ import annotations

import pytest

from storyspine.exceptions import MalformedDeltaError
from storyspine.summary import parse_summary_delta, to_story_delta
from storyspine.summary.parser import EventIn, FactUpdateIn, lenient_json_object
from storyspine.summary.sanitize import sanitize_causality, sanitize_fact_updates


def test_fenced_reply_with_trailing_comma_parses():
    raw = """```json
{
  "events": [{"id": "evt-1", "title": "初遇", "timeLabel": "黄昏", "type": "相遇", "weight": "主线",},],
  "newCharacters": ["Alice"],
}
```"""
    delta = parse_summary_delta(raw)
    assert len(delta.events) == 1
    ev = delta.events[0]
    assert ev.time_label == "黄昏"
    assert ev.type == "相遇"
    assert delta.new_characters == ["Alice"]


def test_surrounding_prose_is_ignored():
    obj = lenient_json_object('好的，结果如下：{"keywords": [{"text": "酒馆"}]} 以上。')
    assert obj == {"keywords": [{"text": "酒馆"}]}


def test_unknown_event_type_and_weight_are_coerced():
    delta = parse_summary_delta('{"events": [{"id": "evt-3", "type": "奇遇", "weight": "超级重要", "causedBy": null}]}')
    ev = delta.events[0]
    assert ev.type == "日常"
    assert ev.weight == "氛围"
    assert ev.caused_by == []


def test_arc_progress_is_clamped_and_numbers_become_strings():
    delta = parse_summary_delta(
        '{"arcUpdates": [{"name": "Alice", "progress": 1.7}],'
        ' "factUpdates": [{"s": "Bob", "p": "年龄", "o": 27, "isState": true}]}'
    )
    assert delta.arc_updates[0].progress == 1.0
    fu = delta.fact_updates[0]
    assert fu.o == "27"
    assert fu.is_state is True


@pytest.mark.parametrize("raw", ["", "no json here", "[1, 2, 3]", '{"events": "not a list"}'])
def test_malformed_reply_raises(raw):
    with pytest.raises(MalformedDeltaError):
        parse_summary_delta(raw)


def test_causality_drops_self_unknown_duplicate_and_caps_at_two():
    events = [
        EventIn(id="evt-3", caused_by=["evt-3", "evt-9", "evt-1", "evt-1", "evt-2", "evt-4"]),
        EventIn(id="evt-4", caused_by=["bogus", " evt-3 "]),
        EventIn(id="not-an-id", caused_by=["evt-1"]),
    ]
    assert sanitize_causality(events, ["evt-1", "evt-2"]) == [["evt-1", "evt-2"], ["evt-3"], []]


def test_fact_update_sanitizing():
    updates = sanitize_fact_updates([
        FactUpdateIn(s="Alice", p="对Bob的看法", o="信任", trend="亲密"),
        FactUpdateIn(s="Alice", p="与Carol的关系", o="宿敌", trend="很好"),
        FactUpdateIn(s="Alice", p="职业", o="盗贼", trend="亲密"),
        FactUpdateIn(s="Alice", p="心情", o=""),
        FactUpdateIn(s="", p="位置", o="酒馆"),
        FactUpdateIn(s="Bob", p="位置", retracted=True),
    ])
    assert [(u.p, u.trend, u.retracted) for u in updates] == [
        ("对Bob的看法", "亲密", False),
        ("与Carol的关系", None, False),
        ("职业", None, False),
        ("位置", None, True),
    ]


def test_to_story_delta_strips_and_filters():
    delta = parse_summary_delta(
        '{"keywords": [{"text": " 酒馆 "}, {"text": "  "}],'
        ' "events": [{"id": " evt-2 ", "title": " 重逢 ", "participants": ["Alice", " ", "Bob "], "causedBy": ["evt-1"]}],'
        ' "newCharacters": [" Carol ", ""],'
        ' "arcUpdates": [{"name": "  "}, {"name": "Bob", "newMoment": " 拔剑 "}]}'
    )
    story = to_story_delta(delta, ["evt-1"])
    assert [k.text for k in story.keywords] == ["酒馆"]
    ev = story.events[0]
    assert (ev.id, ev.title, ev.participants, ev.caused_by) == ("evt-2", "重逢", ["Alice", "Bob"], ["evt-1"])
    assert story.new_characters == ["Carol"]
    assert [(a.name, a.new_moment) for a in story.arc_updates] == [("Bob", "拔剑")]
