"""Budgeted prompt assembly."""

from storyspine.assembler.prompt import AssembleResult, PromptAssembler, should_keep_evidence_l0
from storyspine.assembler.render import Budget, EvidenceGroup

__all__ = ["AssembleResult", "Budget", "EvidenceGroup", "PromptAssembler", "should_keep_evidence_l0"]
