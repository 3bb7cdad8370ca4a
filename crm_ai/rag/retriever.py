"""
Vector Retrieval Service
========================

2-stage retrieval:
1. Store query: metadata filters (recency, outcome, industry, category,
   value band) applied inside the store, k * candidate_multiplier candidates
   ranked by cosine similarity
2. Re-rank: blend cosine with a per-collection feature relevance, truncate to k

    similarity = vector_weight * cosine + (1 - vector_weight) * feature_relevance

Feature relevance profiles:
    deals:        0.4 industry + 0.3 deal size proximity + 0.3 objection type overlap
    objections:   0.5 category + 0.3 industry + 0.2 severity
    interactions: 0.6 industry + 0.4 interaction type

An empty result is a normal outcome, not an error.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from ..config import RetrievalConfig, TimeoutConfig
from ..models import RagContextItem
from ..upstream import call_with_timeout
from .embedder import RAGEmbedder
from .indexing import summarize_match
from .models import Collection, QueryFeatures, RetrievalFilters, VectorMatch

logger = logging.getLogger(__name__)


def _same(a: Optional[str], b: Optional[str]) -> float:
    if not a or not b:
        return 0.0
    return 1.0 if str(a).strip().lower() == str(b).strip().lower() else 0.0


def deal_size_proximity(query_value: Optional[float], candidate_value: Any) -> float:
    """1 - |log2(candidate / query)|, clipped to [0, 1]. Same size = 1, 2x apart = 0."""
    try:
        q = float(query_value or 0)
        v = float(candidate_value or 0)
    except (TypeError, ValueError):
        return 0.0
    if q <= 0 or v <= 0:
        return 0.0
    return max(0.0, min(1.0, 1.0 - abs(math.log2(v / q))))


def jaccard(a, b) -> float:
    """Set overlap. Two empty sets count as a full match."""
    set_a = {str(x).lower() for x in a or []}
    set_b = {str(x).lower() for x in b or []}
    if not set_a and not set_b:
        return 1.0
    return len(set_a & set_b) / len(set_a | set_b)


class VectorRetriever:
    """
    Retrieves historical CRM records relevant to a feature request.

    Args:
        embedder: Embedding provider
        store: InMemoryVectorStore or PgVectorStore
        config: Retrieval weights, k, recency and candidate multiplier
        timeouts: Per-call timeouts (vector query)
    """

    def __init__(
        self,
        embedder: RAGEmbedder,
        store,
        config: Optional[RetrievalConfig] = None,
        timeouts: Optional[TimeoutConfig] = None,
    ):
        self.embedder = embedder
        self.store = store
        self.config = config or RetrievalConfig()
        self.timeouts = timeouts or TimeoutConfig()

    async def retrieve(
        self,
        collection: Collection,
        query: QueryFeatures,
        k: Optional[int] = None,
        filters: Optional[RetrievalFilters] = None,
    ) -> List[RagContextItem]:
        """
        Retrieve up to k context items, ordered by blended similarity.

        Raises:
            UpstreamServiceError: embedding or vector store failure / timeout
        """
        k = k or self.config.default_k
        collection = Collection(collection)

        if not query.text.strip():
            return []

        query_vector = await self.embedder.embed_query(query.text)

        candidates: List[VectorMatch] = await call_with_timeout(
            "vector_store",
            lambda: self.store.query(
                collection.value,
                query_vector,
                k * self.config.candidate_multiplier,
                filters,
            ),
            timeout=self.timeouts.vector_query,
            max_retries=self.timeouts.max_retries,
        )

        items = [self._score(collection, query, match) for match in candidates]
        items.sort(key=lambda item: (-item.similarity_score, item.source_id))
        items = items[:k]

        top = items[0].similarity_score if items else 0.0
        logger.info(f"Retrieved {len(items)}/{len(candidates)} {collection.value} items (top={top:.3f})")
        return items

    def _score(self, collection: Collection, query: QueryFeatures, match: VectorMatch) -> RagContextItem:
        cosine = max(0.0, min(1.0, match.cosine))
        relevance = self.feature_relevance(collection, query, match.metadata)
        w = self.config.vector_weight
        similarity = max(0.0, min(1.0, w * cosine + (1 - w) * relevance))

        return RagContextItem(
            source_id=match.doc_id,
            similarity_score=similarity,
            metadata=dict(match.metadata),
            summary=summarize_match(collection, match.metadata, match.text),
            vector_score=cosine,
            feature_score=relevance,
        )

    def feature_relevance(self, collection: Collection, query: QueryFeatures, metadata: Dict[str, Any]) -> float:
        """Weighted structural match between the query and one candidate."""
        if collection == Collection.DEALS:
            return (
                self.config.industry_weight * _same(query.industry, metadata.get("industry"))
                + self.config.deal_size_weight * deal_size_proximity(query.value, metadata.get("value"))
                + self.config.objection_type_weight * jaccard(query.objection_types, metadata.get("objectionTypes"))
            )

        if collection == Collection.OBJECTIONS:
            return (
                0.5 * _same(query.category, metadata.get("category"))
                + 0.3 * _same(query.industry, metadata.get("industry"))
                + 0.2 * _same(query.severity, metadata.get("severity"))
            )

        return (
            0.6 * _same(query.industry, metadata.get("industry"))
            + 0.4 * _same(query.interaction_type, metadata.get("type"))
        )

    async def upsert(self, collection: Collection, doc_id: str, text: str, metadata: Dict[str, Any]) -> None:
        """Embed and store one record (used by indexing)."""
        vector = await self.embedder.embed_query(text)
        await call_with_timeout(
            "vector_store",
            lambda: self.store.upsert(Collection(collection).value, doc_id, vector, text, metadata),
            timeout=self.timeouts.vector_query,
            max_retries=self.timeouts.max_retries,
        )

    async def delete(self, collection: Collection, doc_id: str) -> bool:
        return await call_with_timeout(
            "vector_store",
            lambda: self.store.delete(Collection(collection).value, doc_id),
            timeout=self.timeouts.vector_query,
            max_retries=self.timeouts.max_retries,
        )

    async def stats(self) -> Dict[str, Any]:
        stats = await self.store.stats()
        stats["embedding_requests"] = self.embedder.total_requests
        stats["embedding_tokens"] = self.embedder.total_tokens
        return stats
