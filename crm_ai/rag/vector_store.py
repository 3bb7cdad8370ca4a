"""
Vector Stores
=============

Two interchangeable backends with the same async interface:

- PgVectorStore: PostgreSQL + pgvector, filters compiled to a SQL WHERE clause
  on the JSONB metadata, cosine distance via the <=> operator
- InMemoryVectorStore: process-local, filters evaluated before scoring

Interface:
    await store.upsert(collection, doc_id, embedding, text, metadata)
    await store.query(collection, embedding, limit, filters) -> [VectorMatch]
    await store.delete(collection, doc_id)
    await store.stats()

Schema (pgvector):
    CREATE TABLE ai_vectors (
        collection TEXT NOT NULL,
        doc_id TEXT NOT NULL,
        content TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}',
        embedding vector(1536) NOT NULL,
        updated_at TIMESTAMP NOT NULL DEFAULT now(),
        PRIMARY KEY (collection, doc_id)
    );
"""

import asyncio
import json
import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from psycopg2.extras import RealDictCursor

from ..data.db import Database
from .models import Collection, RetrievalFilters, VectorMatch

logger = logging.getLogger(__name__)


def cosine_similarity(a: List[float], b: List[float]) -> float:
    """Cosine similarity of two vectors (0.0 when either is all zeros)."""
    if len(a) != len(b):
        raise ValueError(f"Dimension mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorStore:
    """Process-local vector store."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now
        self._collections: Dict[str, Dict[str, Tuple[List[float], str, Dict[str, Any]]]] = {
            c.value: {} for c in Collection
        }

    async def upsert(
        self,
        collection: str,
        doc_id: str,
        embedding: List[float],
        text: str,
        metadata: Dict[str, Any],
    ) -> None:
        self._collections.setdefault(Collection(collection).value, {})[doc_id] = (
            list(embedding), text, dict(metadata),
        )

    async def delete(self, collection: str, doc_id: str) -> bool:
        return self._collections.get(Collection(collection).value, {}).pop(doc_id, None) is not None

    async def query(
        self,
        collection: str,
        embedding: List[float],
        limit: int,
        filters: Optional[RetrievalFilters] = None,
    ) -> List[VectorMatch]:
        """Filter first, then rank the survivors by cosine similarity."""
        filters = filters or RetrievalFilters(recency_days=None)
        now = self._clock()

        matches = []
        for doc_id, (vector, text, metadata) in self._collections.get(Collection(collection).value, {}).items():
            if doc_id in filters.exclude_ids or not filters.matches(metadata, now):
                continue
            matches.append(VectorMatch(
                doc_id=doc_id,
                cosine=cosine_similarity(embedding, vector),
                metadata=metadata,
                text=text,
            ))

        matches.sort(key=lambda m: (-m.cosine, m.doc_id))
        return matches[:limit]

    async def stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "collections": {name: len(docs) for name, docs in self._collections.items()},
        }

    async def close(self) -> None:
        return None


class PgVectorStore:
    """
    PostgreSQL + pgvector store.

    Blocking psycopg2 calls run in a worker thread.
    """

    TABLE = "ai_vectors"

    def __init__(
        self,
        db: Database,
        dimensions: int = 1536,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.dimensions = dimensions
        self._clock = clock or datetime.now

    async def ensure_schema(self) -> None:
        await asyncio.to_thread(self._ensure_schema_sync)

    def _ensure_schema_sync(self) -> None:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS {self.TABLE} (
                        collection TEXT NOT NULL,
                        doc_id TEXT NOT NULL,
                        content TEXT NOT NULL,
                        metadata JSONB NOT NULL DEFAULT '{{}}',
                        embedding vector({self.dimensions}) NOT NULL,
                        updated_at TIMESTAMP NOT NULL DEFAULT now(),
                        PRIMARY KEY (collection, doc_id)
                    )
                """)
        logger.info(f"Vector table {self.TABLE} ready ({self.dimensions} dims)")

    async def upsert(
        self,
        collection: str,
        doc_id: str,
        embedding: List[float],
        text: str,
        metadata: Dict[str, Any],
    ) -> None:
        await asyncio.to_thread(
            self._upsert_sync, Collection(collection).value, doc_id, embedding, text, metadata,
        )

    def _upsert_sync(self, collection, doc_id, embedding, text, metadata) -> None:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    INSERT INTO {self.TABLE} (collection, doc_id, content, metadata, embedding, updated_at)
                    VALUES (%s, %s, %s, %s::jsonb, %s::vector, now())
                    ON CONFLICT (collection, doc_id) DO UPDATE SET
                        content = EXCLUDED.content,
                        metadata = EXCLUDED.metadata,
                        embedding = EXCLUDED.embedding,
                        updated_at = now()
                """, (collection, doc_id, text, json.dumps(metadata, default=str), list(embedding)))

    async def delete(self, collection: str, doc_id: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, Collection(collection).value, doc_id)

    def _delete_sync(self, collection: str, doc_id: str) -> bool:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self.TABLE} WHERE collection = %s AND doc_id = %s",
                    (collection, doc_id),
                )
                return cur.rowcount > 0

    def build_where(
        self,
        collection: str,
        filters: Optional[RetrievalFilters],
    ) -> Tuple[str, List[Any]]:
        """Compile filters into a WHERE clause and its parameters."""
        clauses = ["collection = %s"]
        params: List[Any] = [collection]

        if filters is None:
            return " AND ".join(clauses), params

        for key, expected in sorted(filters.equals.items()):
            if isinstance(expected, str):
                clauses.append("lower(metadata->>%s) = lower(%s)")
            else:
                clauses.append("metadata->>%s = %s")
                expected = str(expected)
            params.extend([key, expected])

        if filters.value_range is not None:
            clauses.append("(metadata->>'value')::numeric BETWEEN %s AND %s")
            params.extend(filters.value_range)

        cutoff = filters.cutoff(self._clock())
        if cutoff is not None:
            clauses.append("(metadata->>'timestamp')::timestamp >= %s")
            params.append(cutoff)

        if filters.exclude_ids:
            clauses.append("doc_id <> ALL(%s)")
            params.append(list(filters.exclude_ids))

        return " AND ".join(clauses), params

    async def query(
        self,
        collection: str,
        embedding: List[float],
        limit: int,
        filters: Optional[RetrievalFilters] = None,
    ) -> List[VectorMatch]:
        where, params = self.build_where(Collection(collection).value, filters)
        return await asyncio.to_thread(self._query_sync, where, params, list(embedding), limit)

    def _query_sync(self, where: str, params: List[Any], embedding: List[float], limit: int) -> List[VectorMatch]:
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT doc_id, content, metadata,
                           1 - (embedding <=> %s::vector) AS similarity
                    FROM {self.TABLE}
                    WHERE {where}
                    ORDER BY embedding <=> %s::vector, doc_id
                    LIMIT %s
                """, [embedding, *params, embedding, limit])
                rows = cur.fetchall()

        return [
            VectorMatch(
                doc_id=row["doc_id"],
                cosine=float(row["similarity"]),
                metadata=row["metadata"] or {},
                text=row["content"],
            )
            for row in rows
        ]

    async def stats(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._stats_sync)

    def _stats_sync(self) -> Dict[str, Any]:
        try:
            with self.db.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT collection, count(*) FROM {self.TABLE} GROUP BY collection")
                    counts = dict(cur.fetchall())
            return {"backend": "pgvector", "collections": counts}
        except Exception as e:
            logger.warning(f"Vector store stats failed: {e}")
            return {"backend": "pgvector", "error": str(e)}

    async def close(self) -> None:
        self.db.close()
