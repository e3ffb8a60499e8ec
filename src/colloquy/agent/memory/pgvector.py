"""
pgvector-backed long-term memory index.

Similarity is cosine similarity computed by Postgres as
1 - (embedding <=> query).
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

import asyncpg

from ..domain.entities import MemoryRecord, MessageRole
from ..domain.errors import StorageError, VectorIndexUnavailableError
from ..domain.ports import IVectorIndex
from .database import storage_transaction

logger = logging.getLogger(__name__)


def to_vector_literal(embedding) -> str:
    """Format an embedding as a pgvector text literal ('[0.1,0.2,...]')."""
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


def parse_vector_literal(value) -> tuple[float, ...]:
    if isinstance(value, str):
        value = value.strip("[]")
        return tuple(float(x) for x in value.split(",")) if value else ()
    return tuple(float(x) for x in value)


class PgVectorIndex(IVectorIndex):
    """Vector index over the colloquy_memory table.

    Usage:
        index = PgVectorIndex(db_pool, embedding_model="text-embedding-3-small")
        await index.add(record)
        matches = await index.query(embedding, top_k=5, min_similarity=0.7)
    """

    def __init__(self, db_pool: asyncpg.Pool, embedding_model: Optional[str] = None):
        """Initialize the index.

        Args:
            db_pool: Async database connection pool
            embedding_model: Only records made by this model are queried
                (mixing embedding spaces gives meaningless similarities)
        """
        self.db = db_pool
        self.embedding_model = embedding_model

    async def add(self, record: MemoryRecord) -> None:
        async with storage_transaction(self.db) as conn:
            await conn.execute(
                """
                INSERT INTO colloquy_memory (
                    id, message_id, conversation_id, role, content,
                    embedding, embedding_model, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6::vector, $7, $8)
                ON CONFLICT (message_id) DO NOTHING
                """,
                record.id,
                record.message_id,
                record.conversation_id,
                record.role.value,
                record.content,
                to_vector_literal(record.embedding),
                record.embedding_model,
                record.created_at,
            )
        logger.debug(f"Indexed message {record.message_id}")

    async def query(
        self,
        embedding: list[float],
        top_k: int,
        min_similarity: float = 0.0,
    ) -> list[tuple[MemoryRecord, float]]:
        if top_k <= 0:
            return []

        params = [to_vector_literal(embedding), min_similarity, top_k]
        model_filter = ""
        if self.embedding_model:
            model_filter = "AND embedding_model = $4"
            params.append(self.embedding_model)

        try:
            async with storage_transaction(self.db) as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT id, message_id, conversation_id, role, content,
                           embedding::text AS embedding, embedding_model, created_at,
                           1 - (embedding <=> $1::vector) AS similarity
                    FROM colloquy_memory
                    WHERE 1 - (embedding <=> $1::vector) >= $2
                      {model_filter}
                    ORDER BY embedding <=> $1::vector
                    LIMIT $3
                    """,
                    *params,
                )
        except StorageError as e:
            raise VectorIndexUnavailableError(
                f"Vector index query failed: {e}", original_error=e
            ) from e

        return [
            (
                MemoryRecord(
                    id=row["id"],
                    message_id=row["message_id"],
                    conversation_id=row["conversation_id"],
                    role=MessageRole(row["role"]),
                    content=row["content"],
                    created_at=row["created_at"],
                    embedding=parse_vector_literal(row["embedding"]),
                    embedding_model=row["embedding_model"],
                ),
                float(row["similarity"]),
            )
            for row in rows
        ]

    async def delete_conversation(self, conversation_id: UUID) -> int:
        async with storage_transaction(self.db) as conn:
            result = await conn.execute(
                "DELETE FROM colloquy_memory WHERE conversation_id = $1",
                conversation_id,
            )
        # Extract count from result like "DELETE 5"
        return int(result.split()[-1]) if result else 0
