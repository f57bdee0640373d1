"""
Stores for memories, knowledge and cached results.

All three share one ConnectionPool and one ResilientExecutor; see
agentmem.adapter.MemoryAdapter for the wiring.
"""

from .cache import ResultCache
from .knowledge import KnowledgeStore
from .memories import MemoryStore

__all__ = ["KnowledgeStore", "MemoryStore", "ResultCache"]
