"""
CRM AI RAG Module
=================

Retrieval of historical CRM records for prompt context.

3 collections:
- deals: closed deals (won and lost)
- objections: resolved objections and how they were handled
- interactions: calls, emails and meetings
"""

from .embedder import RAGEmbedder
from .indexing import RAGIndexer
from .models import Collection, QueryFeatures, RetrievalFilters
from .retriever import VectorRetriever
from .vector_store import InMemoryVectorStore, PgVectorStore

__all__ = [
    "RAGEmbedder",
    "RAGIndexer",
    "Collection",
    "QueryFeatures",
    "RetrievalFilters",
    "VectorRetriever",
    "InMemoryVectorStore",
    "PgVectorStore",
]
