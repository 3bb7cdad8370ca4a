"""
RAG Embedder
============

Generates embeddings using OpenAI text-embedding-3-small.
1536 dimensions, optimized for cost/latency.

Each call runs under the embedding timeout (default 5s) with at most one
retry on timeout; failures surface as UpstreamServiceError("embedding").
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..upstream import call_with_timeout

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    """Result of embedding generation."""
    embedding: List[float]
    token_count: int
    model: str


class RAGEmbedder:
    """
    Async embedding provider.

    Cost: ~$0.00002 per 1K tokens
    Dimensions: 1536
    Max tokens: 8191
    """

    MODEL = "text-embedding-3-small"
    DIMENSIONS = 1536

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = MODEL,
        dimensions: int = DIMENSIONS,
        timeout: float = 5.0,
        max_retries: int = 1,
        client=None,
    ):
        self.api_key = api_key
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout
        self.max_retries = max_retries
        self._client = client
        self._total_tokens = 0
        self._total_requests = 0

        if client is None and not api_key:
            logger.warning("OpenAI API key not set - embeddings will fail")

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for a single text.

        Raises:
            ValueError: empty text
            UpstreamServiceError: provider error or timeout
        """
        if not text.strip():
            raise ValueError("Cannot embed empty text")

        response = await call_with_timeout(
            "embedding",
            lambda: self.client.embeddings.create(
                model=self.model,
                input=text,
                dimensions=self.dimensions,
            ),
            timeout=self.timeout,
            max_retries=self.max_retries,
        )

        embedding = list(response.data[0].embedding)
        token_count = response.usage.total_tokens

        self._total_tokens += token_count
        self._total_requests += 1

        logger.debug(f"Embedded {token_count} tokens")

        return EmbeddingResult(embedding=embedding, token_count=token_count, model=self.model)

    async def embed_query(self, query: str) -> List[float]:
        """Embed a search query and return just the vector."""
        result = await self.embed(query)
        return result.embedding

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def total_requests(self) -> int:
        return self._total_requests

    @property
    def estimated_cost(self) -> float:
        """Estimated cost in USD."""
        return (self._total_tokens / 1000) * 0.00002
