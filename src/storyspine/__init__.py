"""StorySpine: tiered narrative memory for long-running chats."""

__version__ = "0.1.0"

from storyspine.config import Config
from storyspine.engine import MemoryEngine, PlainMode, VectorMode
from storyspine.host import ChatMessage, HostEvent

__all__ = [
    "__version__",
    "Config",
    "MemoryEngine",
    "PlainMode",
    "VectorMode",
    "ChatMessage",
    "HostEvent",
]
