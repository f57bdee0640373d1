"""
Memory store: durable chat-turn records with similarity search.

Every operation validates its arguments before touching the database and
runs its queries through the shared ResilientExecutor. Creation carries
an advisory near-duplicate check: a memory whose embedding is almost
identical (similarity >= 0.95) to one already stored in the same room and
type is written with ``unique = false``. The check never blocks the insert.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID

from ..database import ConnectionPool
from ..domain.entities import Memory, UUIDLike, to_uuid
from ..domain.vectors import format_vector, parse_vector, validate_dimension, validate_number
from ..exceptions import ValidationError
from ..resilience import ResilientExecutor

logger = logging.getLogger(__name__)

# Similarity at or above which a new memory is considered a near-duplicate
DUPLICATE_THRESHOLD = 0.95

MEMORY_COLUMNS = """
    id, type, "createdAt", content, embedding::text AS embedding,
    "userId", "agentId", "roomId", "unique"
"""


def _require_type(memory_type: Optional[str]) -> str:
    if not memory_type:
        raise ValidationError("type is required", field="type")
    return memory_type


def _require_room(room_id: Optional[UUIDLike]) -> UUID:
    if not room_id:
        raise ValidationError("roomId is required", field="room_id")
    return to_uuid(room_id, "room_id")


def _validate_count(count: Optional[int], field_name: str = "count") -> Optional[int]:
    if count is None:
        return None
    if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
        raise ValidationError(f"{field_name} must be a positive integer", field=field_name)
    return count


class MemoryStore:
    """Memory CRUD with advisory deduplication.

    Usage:
        store = MemoryStore(pool, executor, dimensions=384)

        stored = await store.create(Memory(
            type="messages",
            room_id=room_id,
            content=MemoryContent(text="hello"),
            embedding=embedding,
        ))
        recent = await store.get_range(room_id, "messages", count=20)
    """

    def __init__(
        self,
        pool: ConnectionPool,
        executor: ResilientExecutor,
        dimensions: int,
    ):
        """Initialize the memory store.

        Args:
            pool: Connection pool
            executor: Circuit breaker and retry wrapper
            dimensions: Embedding dimension every stored vector must have
        """
        self.pool = pool
        self.executor = executor
        self.dimensions = dimensions

    async def _fetch(self, context: str, query: str, *args) -> list[Any]:
        async def run():
            async with self.pool.connection() as conn:
                return await conn.fetch(query, *args)

        return await self.executor.execute(run, context)

    # ----------------------------------------
    # Writes
    # ----------------------------------------

    async def create(self, memory: Memory) -> Memory:
        """Store a memory.

        When ``memory.unique`` is None and the memory has an embedding, the
        store looks for a near-duplicate in the same room and type and sets
        ``unique`` accordingly. An explicit True/False is stored as given.

        Returns:
            The stored memory, with ``unique`` and ``created_at`` filled in

        Raises:
            DimensionMismatchError: If the embedding has the wrong length
        """
        if memory.embedding is not None:
            validate_dimension(memory.embedding, self.dimensions)

        unique = memory.unique
        if unique is None:
            unique = True
            if memory.embedding is not None:
                similar = await self.search_by_embedding(
                    memory.embedding,
                    memory.type,
                    match_threshold=DUPLICATE_THRESHOLD,
                    count=1,
                    room_id=memory.room_id,
                )
                unique = not similar
                if similar:
                    logger.debug(
                        f"Memory {memory.id} is a near-duplicate of {similar[0].id} "
                        f"(similarity={similar[0].similarity})"
                    )

        vector = format_vector(memory.embedding) if memory.embedding is not None else None

        async def insert():
            async with self.pool.transaction() as conn:
                return await conn.fetchval(
                    """
                    INSERT INTO memories (
                        id, type, content, embedding, "userId", "roomId", "agentId", "unique", "createdAt"
                    ) VALUES ($1, $2, $3, $4::vector, $5, $6, $7, $8, COALESCE($9, CURRENT_TIMESTAMP))
                    RETURNING "createdAt"
                    """,
                    memory.id,
                    memory.type,
                    json.dumps(memory.content.to_dict()),
                    vector,
                    memory.user_id,
                    memory.room_id,
                    memory.agent_id,
                    unique,
                    memory.created_at,
                )

        created_at = await self.executor.execute(insert, "create_memory")
        logger.debug(f"Stored memory {memory.id} in {memory.type} (unique={unique})")

        return replace(
            memory,
            unique=unique,
            created_at=created_at or memory.created_at,
            embedding=parse_vector(vector) if vector is not None else None,
        )

    async def remove(self, memory_id: UUIDLike, memory_type: str) -> None:
        """Delete one memory."""
        memory_id = to_uuid(memory_id, "id")
        if memory_id is None:
            raise ValidationError("id is required", field="id")
        _require_type(memory_type)

        async def delete():
            async with self.pool.transaction() as conn:
                await conn.execute(
                    "DELETE FROM memories WHERE type = $1 AND id = $2",
                    memory_type,
                    memory_id,
                )

        await self.executor.execute(delete, "remove_memory")

    async def remove_all_in_room(self, room_id: UUIDLike, memory_type: str) -> None:
        """Delete every memory of ``memory_type`` in a room."""
        room_id = _require_room(room_id)
        _require_type(memory_type)

        async def delete():
            async with self.pool.transaction() as conn:
                await conn.execute(
                    'DELETE FROM memories WHERE type = $1 AND "roomId" = $2',
                    memory_type,
                    room_id,
                )

        await self.executor.execute(delete, "remove_all_memories")

    # ----------------------------------------
    # Reads
    # ----------------------------------------

    async def get_by_id(self, memory_id: UUIDLike) -> Optional[Memory]:
        memory_id = to_uuid(memory_id, "id")
        if memory_id is None:
            raise ValidationError("id is required", field="id")

        rows = await self._fetch(
            "get_memory_by_id",
            f"SELECT {MEMORY_COLUMNS} FROM memories WHERE id = $1",
            memory_id,
        )
        return Memory.from_row(rows[0]) if rows else None

    async def get_by_room_ids(
        self,
        room_ids: Sequence[UUIDLike],
        memory_type: str,
        agent_id: Optional[UUIDLike] = None,
    ) -> list[Memory]:
        """Memories of ``memory_type`` in any of ``room_ids``, newest first."""
        _require_type(memory_type)
        if not room_ids:
            return []

        rooms = [to_uuid(room_id, "room_ids") for room_id in room_ids]
        query = f"""
            SELECT {MEMORY_COLUMNS} FROM memories
            WHERE type = $1 AND "roomId" = ANY($2::uuid[])
        """
        args: list[Any] = [memory_type, rooms]

        if agent_id is not None:
            args.append(to_uuid(agent_id, "agent_id"))
            query += f' AND "agentId" = ${len(args)}'

        query += ' ORDER BY "createdAt" DESC'

        rows = await self._fetch("get_memories_by_room_ids", query, *args)
        return [Memory.from_row(row) for row in rows]

    async def get_range(
        self,
        room_id: UUIDLike,
        memory_type: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        count: Optional[int] = None,
        unique: bool = False,
        agent_id: Optional[UUIDLike] = None,
    ) -> list[Memory]:
        """Memories of a room, newest first.

        Args:
            room_id: Room to read
            memory_type: Memory namespace
            start: Inclusive lower bound on creation time
            end: Inclusive upper bound on creation time
            count: Maximum number of memories returned
            unique: Only return memories flagged unique
            agent_id: Only return memories owned by this agent
        """
        room_id = _require_room(room_id)
        _require_type(memory_type)
        count = _validate_count(count)

        query = f'SELECT {MEMORY_COLUMNS} FROM memories WHERE type = $1 AND "roomId" = $2'
        args: list[Any] = [memory_type, room_id]

        if start is not None:
            args.append(start)
            query += f' AND "createdAt" >= ${len(args)}'
        if end is not None:
            args.append(end)
            query += f' AND "createdAt" <= ${len(args)}'
        if unique:
            query += ' AND "unique" = true'
        if agent_id is not None:
            args.append(to_uuid(agent_id, "agent_id"))
            query += f' AND "agentId" = ${len(args)}'

        query += ' ORDER BY "createdAt" DESC'

        if count is not None:
            args.append(count)
            query += f" LIMIT ${len(args)}"

        rows = await self._fetch("get_memories", query, *args)
        return [Memory.from_row(row) for row in rows]

    async def count(self, room_id: UUIDLike, memory_type: str, unique: bool = True) -> int:
        room_id = _require_room(room_id)
        _require_type(memory_type)

        query = 'SELECT COUNT(*) FROM memories WHERE type = $1 AND "roomId" = $2'
        if unique:
            query += ' AND "unique" = true'

        async def run():
            async with self.pool.connection() as conn:
                return await conn.fetchval(query, memory_type, room_id)

        return int(await self.executor.execute(run, "count_memories") or 0)

    # ----------------------------------------
    # Search
    # ----------------------------------------

    async def search_by_embedding(
        self,
        embedding: Sequence[float],
        memory_type: str,
        match_threshold: Optional[float] = None,
        count: Optional[int] = None,
        agent_id: Optional[UUIDLike] = None,
        room_id: Optional[UUIDLike] = None,
        unique: bool = False,
    ) -> list[Memory]:
        """Memories closest to ``embedding``, nearest first.

        Similarity is ``1 - cosine distance``; ``match_threshold`` is a lower
        bound on it.

        Raises:
            DimensionMismatchError: If the query vector has the wrong length
        """
        _require_type(memory_type)
        validate_dimension(embedding, self.dimensions)
        count = _validate_count(count)
        if match_threshold is not None:
            match_threshold = validate_number(match_threshold, "match_threshold")

        vector = format_vector(embedding)
        query = f"""
            SELECT {MEMORY_COLUMNS},
                   1 - (embedding <=> $1::vector) AS similarity
            FROM memories
            WHERE type = $2 AND embedding IS NOT NULL
        """
        args: list[Any] = [vector, memory_type]

        if unique:
            query += ' AND "unique" = true'
        if agent_id is not None:
            args.append(to_uuid(agent_id, "agent_id"))
            query += f' AND "agentId" = ${len(args)}'
        if room_id is not None:
            args.append(to_uuid(room_id, "room_id"))
            query += f' AND "roomId" = ${len(args)}'
        if match_threshold is not None:
            args.append(match_threshold)
            query += f" AND 1 - (embedding <=> $1::vector) >= ${len(args)}"

        query += " ORDER BY embedding <=> $1::vector"

        if count is not None:
            args.append(count)
            query += f" LIMIT ${len(args)}"

        rows = await self._fetch("search_memories_by_embedding", query, *args)
        logger.debug(f"Embedding search in {memory_type} returned {len(rows)} memories")
        return [Memory.from_row(row) for row in rows]

    async def search_by_text(
        self,
        memory_type: str,
        query_input: str,
        field_name: str,
        field_sub_name: str,
        match_count: int,
        threshold: int,
    ) -> list[tuple[list[float], int]]:
        """Embeddings of memories whose ``content->field->>sub`` text is close
        to ``query_input`` by Levenshtein distance.

        Lets callers reuse an embedding already computed for (almost) the
        same text instead of asking the model again.

        Returns:
            ``(embedding, levenshtein_score)`` pairs, closest first
        """
        _require_type(memory_type)
        if not query_input:
            raise ValidationError("query_input is required", field="query_input")
        if not field_name:
            raise ValidationError("field_name is required", field="field_name")
        if not field_sub_name:
            raise ValidationError("field_sub_name is required", field="field_sub_name")
        if match_count is None:
            raise ValidationError("match_count is required", field="match_count")
        _validate_count(match_count, "match_count")
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
            raise ValidationError("threshold must be a non-negative integer", field="threshold")

        rows = await self._fetch(
            "search_memories_by_text",
            """
            WITH content_text AS (
                SELECT
                    embedding,
                    COALESCE(content->$2->>$3, '') AS content_text
                FROM memories
                WHERE type = $4
                  AND embedding IS NOT NULL
                  AND content->$2->>$3 IS NOT NULL
            )
            SELECT
                embedding::text AS embedding,
                levenshtein($1, content_text) AS levenshtein_score
            FROM content_text
            WHERE levenshtein($1, content_text) <= $6
            ORDER BY levenshtein_score
            LIMIT $5
            """,
            query_input,
            field_name,
            field_sub_name,
            memory_type,
            match_count,
            threshold,
        )

        return [
            (parse_vector(row["embedding"]), int(row["levenshtein_score"]))
            for row in rows
            if row["embedding"] is not None
        ]


__all__ = ["MemoryStore", "DUPLICATE_THRESHOLD"]
