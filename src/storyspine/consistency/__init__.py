from storyspine.consistency.manager import ConsistencyManager, ConsistencyReport

__all__ = ["ConsistencyManager", "ConsistencyReport"]
