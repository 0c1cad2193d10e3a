"""StorySpine configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator


def _default_data_dir() -> Path:
    return Path(os.environ.get("STORYSPINE_DATA_DIR", Path(__file__).resolve().parents[2] / "data"))


class EmbeddingConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("STORYSPINE_EMBED_PROVIDER", "siliconflow"))
    # Several keys may be given separated by , ; | or newlines; they are used round-robin.
    api_key: str = Field(default_factory=lambda: os.environ.get("STORYSPINE_EMBED_API_KEY", ""))
    base_url: str = "https://api.siliconflow.cn/v1"
    model: str = "BAAI/bge-m3"
    dims: int = 1024
    timeout: float = 30.0
    batch_size: int = 20
    retry_wait_seconds: float = 60.0


class LLMConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("STORYSPINE_LLM_PROVIDER", "openai"))
    api_key: str = Field(default_factory=lambda: os.environ.get("STORYSPINE_LLM_API_KEY", ""))
    base_url: str = Field(
        default_factory=lambda: os.environ.get("STORYSPINE_LLM_BASE_URL", "https://api.openai.com/v1")
    )
    model: str = Field(default_factory=lambda: os.environ.get("STORYSPINE_LLM_MODEL", "gpt-4.1-mini"))
    timeout: float = 120.0
    temperature: float = 0.3
    max_tokens: int = 4096


class SummaryConfig(BaseModel):
    auto: bool = False
    interval: int = 20
    # which host event may start an auto summary; "manual" disables it
    timing: Literal["manual", "after_ai", "before_user"] = "before_user"
    max_per_run: int = 100
    retries: int = 3
    retry_delay: float = 1.0
    keep_visible: int = 6

    @field_validator("keep_visible")
    @classmethod
    def _clamp_keep_visible(cls, v: int) -> int:
        return max(0, min(50, int(v)))


class AtomConfig(BaseModel):
    enabled: bool = True
    retries: int = 2
    retry_delay: float = 0.5
    concurrency: int = 10
    temperature: float = 0.2
    max_tokens: int = 1000


class RecallConfig(BaseModel):
    anchor_min_similarity: float = 0.58
    event_candidate_max: int = 100
    event_select_max: int = 50
    event_min_similarity: float = 0.60
    event_mmr_lambda: float = 0.72
    event_entity_bypass_sim: float = 0.70
    # Events at or above this similarity count as DIRECT even without a focus match.
    direct_threshold: float = 1.01
    l0_floor_max: int = 20
    residual_bypass_similarity: float = 0.75
    causal_max_depth: int = 10
    causal_inject_max: int = 30
    last_messages_k: int = 3
    chunk_max_tokens: int = 200


class BudgetConfig(BaseModel):
    shared: int = 10_000
    constraints: int = 2_000
    arcs: int = 1_500
    events: int = 5_000
    related: int = 500
    distant_evidence: int = 2_000
    recent_evidence: int = 2_000
    top_n_star: int = 5
    l0_joined_max_length: int = 120


class PromptConfig(BaseModel):
    wrapper_head: str = ""
    wrapper_tail: str = ""
    user_label: str = "用户"
    char_label: str = "角色"
    # Display names of the user persona and the main character, when known.
    name1: str = ""
    name2: str = ""


class FilterRule(BaseModel):
    start: str = ""
    end: str = ""


class FilterConfig(BaseModel):
    rules: list[FilterRule] = Field(default_factory=lambda: [
        FilterRule(start="<think>", end="</think>"),
        FilterRule(start="<thinking>", end="</thinking>"),
        FilterRule(start="```", end="```"),
    ])


class APIConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8430
    bearer_token: str = Field(default_factory=lambda: os.environ.get("STORYSPINE_API_TOKEN", ""))


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    mode: str = Field(default_factory=lambda: os.environ.get("STORYSPINE_MODE", "vector"))  # vector | plain
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    atoms: AtomConfig = Field(default_factory=AtomConfig)
    recall: RecallConfig = Field(default_factory=RecallConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    prompt: PromptConfig = Field(default_factory=PromptConfig)
    filters: FilterConfig = Field(default_factory=FilterConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db" / "storyspine.db"

    @property
    def export_dir(self) -> Path:
        return self.data_dir / "exports"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.db_path.parent, self.export_dir]:
            d.mkdir(parents=True, exist_ok=True)
