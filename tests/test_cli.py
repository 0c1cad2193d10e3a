from __future__ import annotations

import json

from click.testing import CliRunner

from storyspine.cli import main


def test_status_of_empty_chat(tmp_path):
    result = CliRunner().invoke(main, ["--data-dir", str(tmp_path), "status", "tavern"])
    assert result.exit_code == 0, result.output
    assert "StorySpine status: tavern" in result.output
    assert "Last summarized:   -1" in result.output
    assert "Fingerprint:       -" in result.output


def test_inject_without_memory_in_plain_mode(tmp_path):
    transcript = tmp_path / "tavern.json"
    transcript.write_text(json.dumps([
        {"mes": "我推开酒馆的门。", "is_user": True, "name": "Alice"},
        {"mes": "Bob抬头看了你一眼。", "is_user": False, "name": "Bob"},
    ], ensure_ascii=False), encoding="utf-8")

    result = CliRunner().invoke(main, ["--data-dir", str(tmp_path), "--mode", "plain", "inject", str(transcript)])
    assert result.exit_code == 0, result.output
    assert "No memory to inject." in result.output


def test_rollback_of_unsummarized_chat(tmp_path):
    result = CliRunner().invoke(main, ["--data-dir", str(tmp_path), "rollback", "tavern", "3"])
    assert result.exit_code == 0, result.output
    report = json.loads(result.output)
    assert report["rolled_back"] is False
    assert report["kind"] == "deleted"


def test_export_without_vectors_fails_cleanly(tmp_path):
    result = CliRunner().invoke(main, ["--data-dir", str(tmp_path), "export", "tavern"])
    assert result.exit_code != 0
    assert "no vectors to export" in result.output
