#!/usr/bin/env python3
"""Tests for transactional schema bootstrap."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentmem.config import EmbeddingConfig, EmbeddingProvider, PoolConfig
from agentmem.exceptions import SchemaError
from agentmem.schema import SchemaBootstrapper


# ============================================
# Helpers
# ============================================

class AsyncContextManager:
    """Helper class to create async context managers for mocking."""

    def __init__(self, return_value, on_exit=None):
        self.return_value = return_value
        self.on_exit = on_exit

    async def __aenter__(self):
        return self.return_value

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.on_exit:
            self.on_exit(exc_type)
        return False


def make_pool(table_exists=True, vector_installed=True):
    """Fake ConnectionPool whose transaction records how it ended."""
    conn = AsyncMock()
    conn.execute = AsyncMock()
    conn.fetchval = AsyncMock(side_effect=[table_exists, vector_installed])

    outcome = {}

    def on_exit(exc_type):
        outcome["rolled_back"] = exc_type is not None

    pool = MagicMock()
    pool.config = PoolConfig(dsn="postgresql://db/mem", connect_timeout=5.0)
    pool.transaction = MagicMock(side_effect=lambda: AsyncContextManager(conn, on_exit))
    pool._conn = conn
    pool._outcome = outcome
    return pool


# ============================================
# Tests
# ============================================

class TestEnsureSchema:

    @pytest.mark.asyncio
    async def test_noop_when_schema_present(self):
        pool = make_pool(table_exists=True, vector_installed=True)
        bootstrapper = SchemaBootstrapper(pool, EmbeddingConfig())

        assert await bootstrapper.ensure_schema() is False

        executed = [c.args[0] for c in pool._conn.execute.call_args_list]
        assert not any("CREATE TABLE" in sql for sql in executed)
        assert pool._outcome["rolled_back"] is False

    @pytest.mark.asyncio
    async def test_sets_exactly_one_provider_flag(self):
        pool = make_pool()
        bootstrapper = SchemaBootstrapper(pool, EmbeddingConfig(provider=EmbeddingProvider.OLLAMA))

        await bootstrapper.ensure_schema()

        flags = {
            c.args[1]: c.args[2]
            for c in pool._conn.execute.call_args_list
            if c.args[0] == "SELECT set_config($1, $2, true)"
        }
        assert set(flags) == {p.session_flag for p in EmbeddingProvider}
        assert [name for name, value in flags.items() if value == "true"] == ["app.use_ollama_embedding"]

        dimension_calls = [
            c for c in pool._conn.execute.call_args_list
            if "app.embedding_dimension" in c.args[0]
        ]
        assert dimension_calls[0].args[1] == "1024"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("table_exists,vector_installed", [
        (False, True),
        (True, False),
        (False, False),
    ])
    async def test_applies_schema_when_anything_missing(self, table_exists, vector_installed):
        pool = make_pool(table_exists, vector_installed)
        bootstrapper = SchemaBootstrapper(pool, EmbeddingConfig())

        assert await bootstrapper.ensure_schema() is True

        ddl_call = pool._conn.execute.call_args_list[-1]
        assert "CREATE EXTENSION IF NOT EXISTS vector" in ddl_call.args[0]
        assert ddl_call.kwargs["timeout"] == 5.0

    @pytest.mark.asyncio
    async def test_ddl_failure_rolls_back_and_raises_schema_error(self):
        pool = make_pool(table_exists=False)
        bootstrapper = SchemaBootstrapper(pool, EmbeddingConfig())

        async def execute(sql, *args, **kwargs):
            if "CREATE TABLE" in sql:
                raise RuntimeError("permission denied for schema public")

        pool._conn.execute = AsyncMock(side_effect=execute)

        with pytest.raises(SchemaError, match="permission denied"):
            await bootstrapper.ensure_schema()

        assert pool._outcome["rolled_back"] is True

    @pytest.mark.asyncio
    async def test_unreadable_schema_file(self, tmp_path):
        pool = make_pool(table_exists=False)
        bootstrapper = SchemaBootstrapper(
            pool,
            EmbeddingConfig(),
            schema_path=tmp_path / "missing.sql",
        )

        with pytest.raises(SchemaError, match="Unable to read schema file"):
            await bootstrapper.ensure_schema()

        assert pool._outcome["rolled_back"] is True

    @pytest.mark.asyncio
    async def test_custom_schema_path(self, tmp_path):
        schema_file = tmp_path / "schema.sql"
        schema_file.write_text("CREATE TABLE IF NOT EXISTS rooms (id UUID PRIMARY KEY);")
        pool = make_pool(table_exists=False)

        await SchemaBootstrapper(pool, EmbeddingConfig(), schema_path=schema_file).ensure_schema()

        assert pool._conn.execute.call_args_list[-1].args[0].startswith("CREATE TABLE IF NOT EXISTS rooms")


class TestPackagedSchema:

    def test_packaged_schema_is_idempotent_ddl(self):
        sql = SchemaBootstrapper(MagicMock(), EmbeddingConfig()).load_schema()

        assert "CREATE EXTENSION IF NOT EXISTS vector" in sql
        assert "CREATE EXTENSION IF NOT EXISTS fuzzystrmatch" in sql
        for table in ("rooms", "memories", "knowledge", "cache"):
            assert f"CREATE TABLE IF NOT EXISTS {table}" in sql
        assert "vector_cosine_ops" in sql
