from storyspine.retrieval.query import QueryBundle, QuerySegment, build_query_bundle, refine_query_bundle
from storyspine.retrieval.recall import (
    AnchorHit,
    EventHit,
    EvidenceAtom,
    L1Pair,
    RecallEngine,
    RecallResult,
    ScoredChunk,
    mmr_select,
    trace_causation,
)

__all__ = [
    "AnchorHit",
    "EventHit",
    "EvidenceAtom",
    "L1Pair",
    "QueryBundle",
    "QuerySegment",
    "RecallEngine",
    "RecallResult",
    "ScoredChunk",
    "build_query_bundle",
    "mmr_select",
    "refine_query_bundle",
    "trace_causation",
]
