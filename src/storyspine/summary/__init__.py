"""Incremental LLM summarization into events, facts and arcs."""

from storyspine.summary.generator import Summarizer, SummaryResult
from storyspine.summary.parser import SummaryDelta, parse_summary_delta
from storyspine.summary.sanitize import to_story_delta

__all__ = ["Summarizer", "SummaryResult", "SummaryDelta", "parse_summary_delta", "to_story_delta"]
