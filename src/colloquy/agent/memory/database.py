"""Database utilities for the Postgres-backed stores.

This module provides:
    - Connection pool creation and graceful shutdown
    - The schema used by PostgresConversationStore and PgVectorIndex
    - A transaction context manager that maps driver errors to StorageError

Example:
    pool = await create_pool(settings.database_url)
    await ensure_schema(pool, embedding_dimension=1536)

    async with storage_transaction(pool) as conn:
        await conn.execute("INSERT INTO ...")
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from ..domain.errors import StorageError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS colloquy_conversations (
    id UUID PRIMARY KEY,
    agent_id TEXT NOT NULL,
    title TEXT,
    summary TEXT,
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_colloquy_conversations_agent
    ON colloquy_conversations (agent_id, updated_at DESC);

CREATE TABLE IF NOT EXISTS colloquy_messages (
    id UUID PRIMARY KEY,
    conversation_id UUID NOT NULL REFERENCES colloquy_conversations(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    tool_calls JSONB,
    tool_call_id TEXT,
    name TEXT,
    model_used TEXT,
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL,
    UNIQUE (conversation_id, position)
);

CREATE TABLE IF NOT EXISTS colloquy_memory (
    id UUID PRIMARY KEY,
    message_id UUID NOT NULL UNIQUE,
    conversation_id UUID NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    embedding vector({dimension}) NOT NULL,
    embedding_model TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_colloquy_memory_conversation
    ON colloquy_memory (conversation_id);
"""


# ============================================
# Connection Pool Helpers
# ============================================


async def create_pool(
    database_url: str,
    min_size: int = 2,
    max_size: int = 10,
    command_timeout: float = 60.0,
    **kwargs: Any,
) -> asyncpg.Pool:
    """Create a database connection pool.

    Args:
        database_url: PostgreSQL connection string
        min_size: Minimum pool connections
        max_size: Maximum pool connections
        command_timeout: Default query timeout in seconds
        **kwargs: Additional asyncpg.create_pool arguments

    Raises:
        StorageError: If pool creation fails
    """
    try:
        pool = await asyncpg.create_pool(
            database_url,
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
            **kwargs,
        )
    except (asyncpg.PostgresError, OSError) as e:
        raise StorageError(f"Failed to create database pool: {e}", original_error=e) from e

    logger.info(f"Database pool created (min={min_size}, max={max_size})")
    return pool


async def close_pool(pool: asyncpg.Pool, timeout: float = 10.0) -> None:
    """Close database pool gracefully.

    Args:
        pool: asyncpg pool to close
        timeout: Maximum time to wait for connections to close
    """
    if pool is None:
        return

    try:
        await asyncio.wait_for(pool.close(), timeout=timeout)
        logger.info("Database pool closed")
    except asyncio.TimeoutError:
        logger.warning(f"Pool close timed out after {timeout}s, terminating")
        pool.terminate()


async def ensure_schema(pool: asyncpg.Pool, embedding_dimension: int = 1536) -> None:
    """Create tables and indexes if they do not exist."""
    async with storage_transaction(pool) as conn:
        await conn.execute(SCHEMA_SQL.format(dimension=int(embedding_dimension)))
    logger.info(f"Database schema ready (embedding dimension {embedding_dimension})")


# ============================================
# Transactions
# ============================================


@asynccontextmanager
async def storage_transaction(pool: asyncpg.Pool) -> AsyncIterator[asyncpg.Connection]:
    """Acquire a connection and run the block in a transaction.

    Driver errors are re-raised as StorageError; the transaction is
    rolled back automatically on any exception.
    """
    try:
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield conn
    except asyncpg.PostgresError as e:
        raise StorageError(f"Database operation failed: {e}", original_error=e) from e
    except (OSError, asyncpg.InterfaceError) as e:
        raise StorageError(f"Database unavailable: {e}", original_error=e) from e
