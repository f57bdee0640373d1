"""agentmem - resilient vector-augmented memory store on PostgreSQL + pgvector.

Classes:
    MemoryAdapter: Entry point wiring pool, schema bootstrap and stores
    MemoryStore: Chat-turn memories with advisory deduplication
    KnowledgeStore: Documents and chunks with hybrid vector + keyword search
    ResultCache: (key, agent) cache used to memoize searches
    ConnectionPool: asyncpg pool with scoped acquisition and reconnect
    SchemaBootstrapper: Transactional startup DDL

Resilience:
    ResilientExecutor: Retry with backoff inside a circuit breaker
    CircuitBreaker: Stop calling a persistently failing store
    RetryPolicy: Capped exponential backoff with jitter

Exceptions:
    MemoryStoreError: Base exception for all store errors
    ConfigurationError, ValidationError, DimensionMismatchError,
    StoreError, ConnectionPoolError, TransactionError, IntegrityError,
    CircuitOpenError, SchemaError
"""
from .adapter import MemoryAdapter
from .config import (
    CircuitBreakerConfig,
    EmbeddingConfig,
    EmbeddingProvider,
    PoolConfig,
    RetryConfig,
    StoreConfig,
)
from .database import ConnectionPool, convert_db_exception
from .domain import (
    CacheEntry,
    KnowledgeContent,
    KnowledgeItem,
    KnowledgeMetadata,
    Memory,
    MemoryContent,
)
from .exceptions import (
    CircuitOpenError,
    ConfigurationError,
    ConnectionPoolError,
    DimensionMismatchError,
    IntegrityError,
    MemoryStoreError,
    SchemaError,
    StoreError,
    TransactionError,
    ValidationError,
)
from .memory import KnowledgeStore, MemoryStore, ResultCache
from .resilience import CircuitBreaker, CircuitState, ResilientExecutor, RetryPolicy
from .schema import SchemaBootstrapper

__version__ = "0.1.0"

__all__ = [
    # Entry point
    "MemoryAdapter",
    # Config
    "CircuitBreakerConfig",
    "EmbeddingConfig",
    "EmbeddingProvider",
    "PoolConfig",
    "RetryConfig",
    "StoreConfig",
    # Infrastructure
    "ConnectionPool",
    "convert_db_exception",
    "SchemaBootstrapper",
    # Resilience
    "CircuitBreaker",
    "CircuitState",
    "ResilientExecutor",
    "RetryPolicy",
    # Stores
    "KnowledgeStore",
    "MemoryStore",
    "ResultCache",
    # Entities
    "CacheEntry",
    "KnowledgeContent",
    "KnowledgeItem",
    "KnowledgeMetadata",
    "Memory",
    "MemoryContent",
    # Exceptions
    "CircuitOpenError",
    "ConfigurationError",
    "ConnectionPoolError",
    "DimensionMismatchError",
    "IntegrityError",
    "MemoryStoreError",
    "SchemaError",
    "StoreError",
    "TransactionError",
    "ValidationError",
]
