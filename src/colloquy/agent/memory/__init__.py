"""Memory storage for the agent.

Provides:
- Conversation stores (in-memory, PostgreSQL)
- Vector indexes for long-term memory (in-memory, pgvector)
- Background indexing worker with retries
- Conversation summarization
"""

from .conversation import PostgresConversationStore
from .database import close_pool, create_pool, ensure_schema
from .in_memory import InMemoryConversationStore, InMemoryVectorIndex, cosine_similarity
from .indexing_worker import IndexingJob, IndexingWorker, JobStatus
from .long_term import ConversationSummarizer
from .pgvector import PgVectorIndex

__all__ = [
    "ConversationSummarizer",
    "InMemoryConversationStore",
    "InMemoryVectorIndex",
    "IndexingJob",
    "IndexingWorker",
    "JobStatus",
    "PgVectorIndex",
    "PostgresConversationStore",
    "close_pool",
    "cosine_similarity",
    "create_pool",
    "ensure_schema",
]
