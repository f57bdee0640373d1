"""
Domain entities for the memory store.

These are plain dataclasses with no infrastructure dependencies beyond the
vector helpers. Rows coming back from asyncpg are turned into entities with
explicit ``from_row`` constructors, which parse the JSON content columns
and the pgvector text columns.

Content dictionaries use the camelCase keys stored in the JSONB columns
(``inReplyTo``, ``isChunk`` ...), because the search SQL reads them.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from ..exceptions import ValidationError
from .vectors import clean_vector, parse_vector

UUIDLike = Union[uuid.UUID, str]


def to_uuid(value: Optional[UUIDLike], field_name: str) -> Optional[uuid.UUID]:
    """Normalize a UUID or UUID string, rejecting malformed values."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"{field_name} must be a UUID, got {value!r}", field=field_name)


def _load_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value) if value else {}
    return dict(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# Memories
# ============================================


@dataclass
class MemoryContent:
    """Structured content of one chat turn.

    Keys this class does not model are kept in ``extra`` and written back
    unchanged.
    """

    text: str = ""
    action: Optional[str] = None
    source: Optional[str] = None
    url: Optional[str] = None
    in_reply_to: Optional[str] = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = {
        "text": "text",
        "action": "action",
        "source": "source",
        "url": "url",
        "inReplyTo": "in_reply_to",
        "attachments": "attachments",
    }

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        for key, attr in self._KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MemoryContent:
        kwargs = {attr: data[key] for key, attr in cls._KEYS.items() if key in data}
        if kwargs.get("attachments") is None:
            kwargs["attachments"] = []
        extra = {k: v for k, v in data.items() if k not in cls._KEYS}
        return cls(extra=extra, **kwargs)


@dataclass
class Memory:
    """A durable record of one chat turn.

    Attributes:
        type: Namespace the memory belongs to (e.g. "messages", "facts")
        room_id: Room the turn happened in
        content: Structured content
        user_id: Author of the turn
        agent_id: Agent that owns the memory
        embedding: Optional vector; its length must match the configured dimension
        unique: Advisory dedup flag. None lets the store compute it on insert;
            True/False overrides the computation
        id: Memory identifier (generated when omitted)
        created_at: Creation timestamp (set by the store when omitted)
        similarity: Score attached by similarity searches
    """

    type: str
    room_id: UUIDLike
    content: MemoryContent
    user_id: Optional[UUIDLike] = None
    agent_id: Optional[UUIDLike] = None
    embedding: Optional[list[float]] = None
    unique: Optional[bool] = None
    id: Optional[UUIDLike] = None
    created_at: Optional[datetime] = None
    similarity: Optional[float] = None

    def __post_init__(self):
        if not self.type:
            raise ValidationError("type is required", field="type")
        if not self.room_id:
            raise ValidationError("roomId is required", field="room_id")
        if isinstance(self.content, Mapping):
            self.content = MemoryContent.from_dict(self.content)
        self.room_id = to_uuid(self.room_id, "room_id")
        self.user_id = to_uuid(self.user_id, "user_id")
        self.agent_id = to_uuid(self.agent_id, "agent_id")
        self.id = to_uuid(self.id, "id") or uuid.uuid4()

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Memory:
        keys = row.keys()
        return cls(
            id=row["id"],
            type=row["type"],
            room_id=row["roomId"],
            user_id=row["userId"],
            agent_id=row["agentId"],
            content=MemoryContent.from_dict(_load_json(row["content"])),
            embedding=parse_vector(row["embedding"]) if "embedding" in keys else None,
            unique=row["unique"],
            created_at=row["createdAt"],
            similarity=float(row["similarity"]) if "similarity" in keys and row["similarity"] is not None else None,
        )


# ============================================
# Knowledge
# ============================================


@dataclass
class KnowledgeMetadata:
    """Ingestion metadata of a knowledge item."""

    is_main: bool = False
    is_chunk: bool = False
    original_id: Optional[UUIDLike] = None
    chunk_index: Optional[int] = None
    is_shared: bool = False
    source: Optional[str] = None
    type: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = {
        "isMain": "is_main",
        "isChunk": "is_chunk",
        "originalId": "original_id",
        "chunkIndex": "chunk_index",
        "isShared": "is_shared",
        "source": "source",
        "type": "type",
    }

    def __post_init__(self):
        self.original_id = to_uuid(self.original_id, "original_id")

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        for key, attr in self._KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            data[key] = str(value) if isinstance(value, uuid.UUID) else value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> KnowledgeMetadata:
        data = data or {}
        kwargs = {attr: data[key] for key, attr in cls._KEYS.items() if key in data}
        for flag in ("is_main", "is_chunk", "is_shared"):
            kwargs[flag] = bool(kwargs.get(flag) or False)
        extra = {k: v for k, v in data.items() if k not in cls._KEYS}
        return cls(extra=extra, **kwargs)


@dataclass
class KnowledgeContent:
    text: str
    metadata: KnowledgeMetadata = field(default_factory=KnowledgeMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "metadata": self.metadata.to_dict()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KnowledgeContent:
        return cls(
            text=data.get("text") or "",
            metadata=KnowledgeMetadata.from_dict(data.get("metadata")),
        )


@dataclass
class KnowledgeItem:
    """A document or document chunk used for retrieval.

    A shared item belongs to no agent: ``agent_id`` is cleared when
    ``content.metadata.is_shared`` is set. A private item must name its agent.
    """

    id: UUIDLike
    content: KnowledgeContent
    agent_id: Optional[UUIDLike] = None
    embedding: Optional[list[float]] = None
    created_at: Optional[datetime] = None
    similarity: Optional[float] = None

    def __post_init__(self):
        if isinstance(self.content, Mapping):
            self.content = KnowledgeContent.from_dict(self.content)
        self.id = to_uuid(self.id, "id")
        if self.id is None:
            raise ValidationError("id is required", field="id")
        if self.content.metadata.is_shared:
            self.agent_id = None
        else:
            self.agent_id = to_uuid(self.agent_id, "agent_id")
            if self.agent_id is None:
                raise ValidationError(
                    "agentId is required for knowledge that is not shared",
                    field="agent_id",
                )

    @property
    def is_shared(self) -> bool:
        return self.content.metadata.is_shared

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> KnowledgeItem:
        keys = row.keys()
        content = KnowledgeContent.from_dict(_load_json(row["content"]))
        # Row columns are authoritative over the JSON copy
        if "isShared" in keys and row["isShared"] is not None:
            content.metadata.is_shared = bool(row["isShared"])
        return cls(
            id=row["id"],
            agent_id=row["agentId"],
            content=content,
            embedding=parse_vector(row["embedding"]) if "embedding" in keys else None,
            created_at=row["createdAt"],
            similarity=float(row["similarity"]) if "similarity" in keys and row["similarity"] is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation, used for the search result cache."""
        return {
            "id": str(self.id),
            "agentId": str(self.agent_id) if self.agent_id else None,
            "content": self.content.to_dict(),
            "embedding": clean_vector(self.embedding) if self.embedding is not None else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "similarity": self.similarity,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KnowledgeItem:
        created_at = data.get("createdAt")
        return cls(
            id=data["id"],
            agent_id=data.get("agentId"),
            content=KnowledgeContent.from_dict(data["content"]),
            embedding=data.get("embedding"),
            created_at=datetime.fromisoformat(created_at) if created_at else None,
            similarity=data.get("similarity"),
        )


# ============================================
# Cache
# ============================================


@dataclass(frozen=True)
class CacheEntry:
    """One cached value, keyed by (key, agent_id)."""

    key: str
    agent_id: str
    value: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> CacheEntry:
        return cls(
            key=row["key"],
            agent_id=row["agentId"],
            value=row["value"],
            created_at=row["createdAt"],
        )
