from storyspine.extraction.atoms import AtomExtractor, atom_quality, sanitize_action_phrase

__all__ = ["AtomExtractor", "atom_quality", "sanitize_action_phrase"]
