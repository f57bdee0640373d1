"""
Knowledge store: ingested documents and chunks with hybrid retrieval.

Search fuses two signals per visible item (the caller's own items plus
shared ones):

    vector_score  = 1 - cosine distance to the query embedding
    keyword_score = (3.0 if search_text occurs in the text else 1.0)
                    * (1.5 if chunk, 1.2 if main item, else 1.0)
    combined      = vector_score * keyword_score

An item is kept when its vector score passes the threshold, or when it is
a keyword hit with at least baseline semantic relevance (vector score of
0.3 or more). Results are ordered by the combined score, which is also
reported as the item's similarity. Search results are memoized in the
result cache, keyed by agent and search text. Writes drop the memoized
searches they can affect: the owning agent's for a private item, every
agent's for a shared one.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Iterable, Optional, Sequence
from uuid import UUID

from ..database import ConnectionPool
from ..domain.entities import KnowledgeItem, UUIDLike, to_uuid
from ..domain.vectors import format_vector, validate_dimension, validate_number
from ..exceptions import ValidationError
from ..resilience import ResilientExecutor
from .cache import ResultCache

logger = logging.getLogger(__name__)

# Minimum vector score for an item admitted by a keyword hit alone
KEYWORD_RESCUE_FLOOR = 0.3

# Key prefix of memoized searches
SEARCH_CACHE_PREFIX = "knowledge_search:"

KEYWORD_HIT_BOOST = 3.0
CHUNK_BOOST = 1.5
MAIN_BOOST = 1.2

KNOWLEDGE_COLUMNS = """
    id, "agentId", content, embedding::text AS embedding, "createdAt",
    "isMain", "originalId", "chunkIndex", "isShared"
"""


# ============================================
# Ranking
# ============================================


def keyword_score(item: KnowledgeItem, search_text: Optional[str]) -> float:
    """Keyword relevance multiplier of ``item`` for ``search_text``.

    An empty or missing search text is never a hit.
    """
    score = 1.0
    if search_text and search_text.lower() in (item.content.text or "").lower():
        score = KEYWORD_HIT_BOOST

    metadata = item.content.metadata
    if metadata.is_chunk:
        score *= CHUNK_BOOST
    elif metadata.is_main:
        score *= MAIN_BOOST
    return score


def passes_threshold(vector_score: float, kw_score: float, match_threshold: float) -> bool:
    """Inclusion rule of the hybrid search."""
    if vector_score >= match_threshold:
        return True
    return kw_score > 1.0 and vector_score >= KEYWORD_RESCUE_FLOOR


def rank_results(
    scored: Iterable[tuple[KnowledgeItem, float]],
    search_text: Optional[str],
    match_threshold: float,
    match_count: int,
) -> list[KnowledgeItem]:
    """Apply the hybrid scoring to ``(item, vector_score)`` pairs.

    Returns:
        At most ``match_count`` items, best first, each with ``similarity``
        set to its combined score
    """
    ranked = []
    for item, vector_score in scored:
        kw_score = keyword_score(item, search_text)
        if not passes_threshold(vector_score, kw_score, match_threshold):
            continue
        item.similarity = vector_score * kw_score
        ranked.append(item)

    ranked.sort(key=lambda item: item.similarity, reverse=True)
    return ranked[:match_count]


def search_cache_key(agent_id: UUIDLike, search_text: Optional[str]) -> str:
    """Cache key of a knowledge search: agent plus a digest of the text."""
    digest = hashlib.sha256((search_text or "").encode("utf-8")).hexdigest()
    return f"{SEARCH_CACHE_PREFIX}{agent_id}:{digest}"


# ============================================
# Store
# ============================================


class KnowledgeStore:
    """Knowledge CRUD and hybrid search.

    Usage:
        store = KnowledgeStore(pool, executor, cache, dimensions=384)

        await store.create(KnowledgeItem(
            id=uuid4(),
            agent_id=agent_id,
            content=KnowledgeContent(text="Postgres supports MVCC"),
            embedding=embedding,
        ))
        results = await store.search(agent_id, query_embedding, 0.5, 5, "mvcc")
    """

    def __init__(
        self,
        pool: ConnectionPool,
        executor: ResilientExecutor,
        cache: ResultCache,
        dimensions: int,
    ):
        """Initialize the knowledge store.

        Args:
            pool: Connection pool
            executor: Circuit breaker and retry wrapper
            cache: Result cache used to memoize searches
            dimensions: Embedding dimension every stored vector must have
        """
        self.pool = pool
        self.executor = executor
        self.cache = cache
        self.dimensions = dimensions

    # ----------------------------------------
    # Search
    # ----------------------------------------

    async def search(
        self,
        agent_id: UUIDLike,
        embedding: Sequence[float],
        match_threshold: float,
        match_count: int,
        search_text: Optional[str] = None,
    ) -> list[KnowledgeItem]:
        """Hybrid vector and keyword search over the agent's visible knowledge.

        Args:
            agent_id: Caller; sees its own items and shared ones
            embedding: Query vector
            match_threshold: Minimum vector score for a plain vector match
            match_count: Maximum number of results
            search_text: Text whose occurrence boosts an item

        Returns:
            Items ordered by combined score, best first

        Raises:
            ValidationError: On a missing agent, a non-numeric match_threshold,
                a non-positive match_count or a non-sequence embedding
            DimensionMismatchError: If the query vector has the wrong length
        """
        agent_id = to_uuid(agent_id, "agent_id")
        if agent_id is None:
            raise ValidationError("agent_id is required", field="agent_id")
        if isinstance(match_count, bool) or not isinstance(match_count, int) or match_count <= 0:
            raise ValidationError("match_count must be a positive integer", field="match_count")
        match_threshold = validate_number(match_threshold, "match_threshold")
        validate_dimension(embedding, self.dimensions)

        cache_key = search_cache_key(agent_id, search_text)
        cached = await self.cache.get(cache_key, str(agent_id))
        if cached is not None:
            try:
                return [KnowledgeItem.from_dict(data) for data in json.loads(cached)]
            except (ValueError, KeyError, TypeError, ValidationError) as e:
                logger.warning(f"Discarding unreadable cached search {cache_key}: {e}")

        vector = format_vector(embedding)

        async def fetch():
            async with self.pool.connection() as conn:
                return await conn.fetch(
                    f"""
                    SELECT * FROM (
                        SELECT {KNOWLEDGE_COLUMNS},
                               1 - (embedding <=> $1::vector) AS vector_score
                        FROM knowledge
                        WHERE ("agentId" = $2 OR "isShared" = true)
                          AND embedding IS NOT NULL
                    ) scored
                    WHERE vector_score >= LEAST($3::float8, $4::float8)
                    """,
                    vector,
                    agent_id,
                    match_threshold,
                    KEYWORD_RESCUE_FLOOR,
                )

        rows = await self.executor.execute(fetch, "search_knowledge")
        results = rank_results(
            ((KnowledgeItem.from_row(row), float(row["vector_score"])) for row in rows),
            search_text,
            match_threshold,
            match_count,
        )
        logger.debug(
            f"Knowledge search for agent {agent_id} scored {len(rows)} items, "
            f"returning {len(results)}"
        )

        payload = json.dumps([item.to_dict() for item in results])
        if not await self.cache.set(cache_key, str(agent_id), payload):
            logger.warning(f"Knowledge search results for {cache_key} were not cached")

        return results

    # ----------------------------------------
    # Writes
    # ----------------------------------------

    async def _invalidate_searches(self, agent_id: Optional[UUID]) -> None:
        """Drop memoized searches of ``agent_id``, or of every agent if None."""
        prefix = SEARCH_CACHE_PREFIX if agent_id is None else f"{SEARCH_CACHE_PREFIX}{agent_id}:"
        agent = None if agent_id is None else str(agent_id)
        if not await self.cache.delete_prefix(prefix, agent):
            logger.warning(f"Cached knowledge searches under {prefix} may be stale")

    async def create(self, item: KnowledgeItem) -> bool:
        """Insert a knowledge item; an existing id is left untouched.

        Returns:
            True if a new row was written
        """
        if item.embedding is not None:
            validate_dimension(item.embedding, self.dimensions)

        metadata = item.content.metadata
        vector = format_vector(item.embedding) if item.embedding is not None else None

        async def insert():
            async with self.pool.transaction() as conn:
                return await conn.execute(
                    """
                    INSERT INTO knowledge (
                        id, "agentId", content, embedding, "createdAt",
                        "isMain", "originalId", "chunkIndex", "isShared"
                    ) VALUES ($1, $2, $3, $4::vector, COALESCE($5, CURRENT_TIMESTAMP), $6, $7, $8, $9)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    item.id,
                    None if metadata.is_shared else item.agent_id,
                    json.dumps(item.content.to_dict()),
                    vector,
                    item.created_at,
                    metadata.is_main,
                    metadata.original_id,
                    metadata.chunk_index,
                    metadata.is_shared,
                )

        status = await self.executor.execute(insert, "create_knowledge")
        inserted = status == "INSERT 0 1"
        if inserted:
            logger.debug(f"Stored knowledge {item.id} (shared={metadata.is_shared})")
            await self._invalidate_searches(None if metadata.is_shared else item.agent_id)
        else:
            logger.debug(f"Knowledge {item.id} already exists, skipped")
        return inserted

    async def remove_by_id(self, item_id: UUIDLike) -> None:
        item_id = to_uuid(item_id, "id")
        if item_id is None:
            raise ValidationError("id is required", field="id")

        async def delete():
            async with self.pool.transaction() as conn:
                return await conn.fetchrow(
                    'DELETE FROM knowledge WHERE id = $1 RETURNING "agentId"',
                    item_id,
                )

        row = await self.executor.execute(delete, "remove_knowledge")
        if row is not None:
            # Shared items are stored without an agent
            await self._invalidate_searches(row["agentId"])

    async def remove_all_for_agent(self, agent_id: UUIDLike, include_shared: bool = False) -> None:
        """Delete an agent's knowledge, and every shared item if ``include_shared``."""
        agent_id = to_uuid(agent_id, "agent_id")
        if agent_id is None:
            raise ValidationError("agent_id is required", field="agent_id")

        if include_shared:
            query = 'DELETE FROM knowledge WHERE ("agentId" = $1 OR "isShared" = true)'
        else:
            query = 'DELETE FROM knowledge WHERE "agentId" = $1'

        async def delete():
            async with self.pool.transaction() as conn:
                await conn.execute(query, agent_id)

        await self.executor.execute(delete, "clear_knowledge")
        await self._invalidate_searches(None if include_shared else agent_id)
        logger.info(f"Cleared knowledge for agent {agent_id} (include_shared={include_shared})")

    # ----------------------------------------
    # Reads
    # ----------------------------------------

    async def get(
        self,
        agent_id: UUIDLike,
        item_id: Optional[UUIDLike] = None,
        limit: Optional[int] = None,
    ) -> list[KnowledgeItem]:
        """Knowledge visible to ``agent_id``, optionally a single item."""
        agent_id = to_uuid(agent_id, "agent_id")
        if agent_id is None:
            raise ValidationError("agent_id is required", field="agent_id")
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0):
            raise ValidationError("limit must be a positive integer", field="limit")

        query = f'SELECT {KNOWLEDGE_COLUMNS} FROM knowledge WHERE ("agentId" = $1 OR "isShared" = true)'
        args: list[Any] = [agent_id]

        if item_id is not None:
            args.append(to_uuid(item_id, "id"))
            query += f" AND id = ${len(args)}"

        query += ' ORDER BY "createdAt" DESC'

        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"

        async def fetch():
            async with self.pool.connection() as conn:
                return await conn.fetch(query, *args)

        rows = await self.executor.execute(fetch, "get_knowledge")
        return [KnowledgeItem.from_row(row) for row in rows]


__all__ = [
    "KnowledgeStore",
    "keyword_score",
    "passes_threshold",
    "rank_results",
    "search_cache_key",
    "KEYWORD_RESCUE_FLOOR",
]
