"""Domain types of the memory store: entities and vector helpers."""

from .entities import (
    CacheEntry,
    KnowledgeContent,
    KnowledgeItem,
    KnowledgeMetadata,
    Memory,
    MemoryContent,
)
from .vectors import (
    VECTOR_PRECISION,
    clean_vector,
    format_vector,
    parse_vector,
    validate_dimension,
    validate_number,
)

__all__ = [
    "CacheEntry",
    "KnowledgeContent",
    "KnowledgeItem",
    "KnowledgeMetadata",
    "Memory",
    "MemoryContent",
    "VECTOR_PRECISION",
    "clean_vector",
    "format_vector",
    "parse_vector",
    "validate_dimension",
    "validate_number",
]
