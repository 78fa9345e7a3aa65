"""Memory system: core profile, extended memory and context assembly."""

from .manager import MemoryManager
from .context_manager import MemoryContext, MemoryContextManager

__all__ = [
    "MemoryManager",
    "MemoryContext",
    "MemoryContextManager",
]
