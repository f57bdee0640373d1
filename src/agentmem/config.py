#!/usr/bin/env python3
"""Configuration for the agentmem memory store.

All settings have defaults except the database DSN. Values are read from
environment variables (a local .env file is honoured via python-dotenv).

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required by PoolConfig.from_env)
    DB_POOL_MAX: Maximum pooled connections (default: 20)
    DB_POOL_MIN: Minimum pooled connections (default: 1)
    DB_IDLE_TIMEOUT_SECONDS: Idle connection lifetime (default: 30)
    DB_CONNECT_TIMEOUT_SECONDS: Connect/acquire timeout (default: 5)

    CIRCUIT_FAILURE_THRESHOLD: Failures before the breaker opens (default: 5)
    CIRCUIT_RESET_TIMEOUT_SECONDS: Cooldown before a trial call (default: 60)
    CIRCUIT_HALF_OPEN_MAX_ATTEMPTS: Trial calls admitted when half-open (default: 3)

    DB_MAX_RETRIES: Attempts per operation (default: 3)
    DB_RETRY_BASE_DELAY_SECONDS: First backoff delay (default: 1)
    DB_RETRY_MAX_DELAY_SECONDS: Backoff ceiling (default: 10)
    DB_RETRY_JITTER_SECONDS: Upper bound of added random jitter (default: 1)

    EMBEDDING_PROVIDER: openai | ollama | gaianet | heurist | bge (default: bge)
    EMBEDDING_DIMENSIONS: Override the provider's default dimension

Author: agentmem Team
"""
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be an integer, got {raw!r}",
            details={"variable": name},
        )


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be a number, got {raw!r}",
            details={"variable": name},
        )


# ============================================
# Embedding Provider
# ============================================

class EmbeddingProvider(str, Enum):
    """Embedding providers the schema knows how to size vectors for."""

    OPENAI = "openai"
    OLLAMA = "ollama"
    GAIANET = "gaianet"
    HEURIST = "heurist"
    BGE = "bge"

    @property
    def default_dimensions(self) -> int:
        return _DEFAULT_DIMENSIONS[self]

    @property
    def session_flag(self) -> str:
        """Name of the session setting that marks this provider active."""
        return f"app.use_{self.value}_embedding"


_DEFAULT_DIMENSIONS = {
    EmbeddingProvider.OPENAI: 1536,
    EmbeddingProvider.OLLAMA: 1024,
    EmbeddingProvider.GAIANET: 768,
    EmbeddingProvider.HEURIST: 1024,
    EmbeddingProvider.BGE: 384,
}


@dataclass(frozen=True)
class EmbeddingConfig:
    """Active embedding provider and the vector dimension it produces."""

    provider: EmbeddingProvider = EmbeddingProvider.BGE
    dimensions: Optional[int] = None

    def __post_init__(self):
        if self.dimensions is None:
            object.__setattr__(self, "dimensions", self.provider.default_dimensions)
        if self.dimensions <= 0:
            raise ConfigurationError(
                f"Embedding dimensions must be positive, got {self.dimensions}"
            )

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        raw_provider = os.getenv("EMBEDDING_PROVIDER", EmbeddingProvider.BGE.value)
        try:
            provider = EmbeddingProvider(raw_provider.strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown EMBEDDING_PROVIDER {raw_provider!r}",
                details={"allowed": [p.value for p in EmbeddingProvider]},
            )
        return cls(
            provider=provider,
            dimensions=_env_int("EMBEDDING_DIMENSIONS", 0) or None,
        )


# ============================================
# Pool / Breaker / Retry
# ============================================

@dataclass(frozen=True)
class PoolConfig:
    """Connection pool sizing and timeouts."""

    dsn: str
    max_size: int = 20
    min_size: int = 1
    idle_timeout: float = 30.0
    connect_timeout: float = 5.0
    command_timeout: float = 60.0

    def __post_init__(self):
        if not self.dsn:
            raise ConfigurationError("Database DSN is required", missing_keys=["DATABASE_URL"])
        if self.min_size > self.max_size:
            raise ConfigurationError(
                f"DB_POOL_MIN ({self.min_size}) exceeds DB_POOL_MAX ({self.max_size})"
            )

    @classmethod
    def from_env(cls) -> "PoolConfig":
        dsn = os.getenv("DATABASE_URL")
        if not dsn:
            raise ConfigurationError(
                "DATABASE_URL environment variable is required",
                missing_keys=["DATABASE_URL"],
            )
        return cls(
            dsn=dsn,
            max_size=_env_int("DB_POOL_MAX", 20),
            min_size=_env_int("DB_POOL_MIN", 1),
            idle_timeout=_env_float("DB_IDLE_TIMEOUT_SECONDS", 30.0),
            connect_timeout=_env_float("DB_CONNECT_TIMEOUT_SECONDS", 5.0),
        )

    def __repr__(self):
        # Never echo credentials embedded in the DSN
        return (
            f"PoolConfig(max={self.max_size}, min={self.min_size}, "
            f"idle={self.idle_timeout}s, connect={self.connect_timeout}s)"
        )


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_max_attempts: int = 3

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=_env_int("CIRCUIT_FAILURE_THRESHOLD", 5),
            reset_timeout=_env_float("CIRCUIT_RESET_TIMEOUT_SECONDS", 60.0),
            half_open_max_attempts=_env_int("CIRCUIT_HALF_OPEN_MAX_ATTEMPTS", 3),
        )


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter_max: float = 1.0

    def __post_init__(self):
        if self.max_retries < 1:
            raise ConfigurationError("DB_MAX_RETRIES must be at least 1")

    @classmethod
    def from_env(cls) -> "RetryConfig":
        return cls(
            max_retries=_env_int("DB_MAX_RETRIES", 3),
            base_delay=_env_float("DB_RETRY_BASE_DELAY_SECONDS", 1.0),
            max_delay=_env_float("DB_RETRY_MAX_DELAY_SECONDS", 10.0),
            jitter_max=_env_float("DB_RETRY_JITTER_SECONDS", 1.0),
        )


# ============================================
# Top-level Settings
# ============================================

@dataclass(frozen=True)
class StoreConfig:
    """Everything the memory adapter needs to start."""

    pool: PoolConfig
    circuit: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "StoreConfig":
        """Load configuration from the environment.

        Args:
            dotenv: Also read a .env file from the working directory
        """
        if dotenv:
            load_dotenv()

        config = cls(
            pool=PoolConfig.from_env(),
            circuit=CircuitBreakerConfig.from_env(),
            retry=RetryConfig.from_env(),
            embedding=EmbeddingConfig.from_env(),
        )
        logger.debug(f"Loaded store configuration: {config}")
        return config


__all__ = [
    "EmbeddingProvider",
    "EmbeddingConfig",
    "PoolConfig",
    "CircuitBreakerConfig",
    "RetryConfig",
    "StoreConfig",
]
