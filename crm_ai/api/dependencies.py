"""
Service Wiring
==============

Builds the process-scoped services from Settings at startup and tears them
down at shutdown. Request handlers get the Orchestrator and the caller's
user id through FastAPI dependencies.

Backends are selected by configuration:
    CACHE_BACKEND       memory | redis
    RATE_LIMIT_BACKEND  memory | redis
    VECTOR_BACKEND      memory | pgvector
    AUDIT_BACKEND       memory | postgres
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from fastapi import Header, Request

from ..ai.confidence import ConfidenceScorer
from ..ai.llm_client import get_llm_client
from ..ai.moderation import ModerationFilter
from ..ai.prompt_assembler import PromptAssembler
from ..cache.redis_cache import RedisCache
from ..cache.response_cache import ResponseCache
from ..config import Settings
from ..data.crm_client import CRMClient
from ..data.db import Database
from ..errors import ValidationError
from ..orchestrator.audit import AuditLog, MemoryAuditStore, PostgresAuditStore
from ..orchestrator.pipeline import Orchestrator
from ..orchestrator.rate_limiter import MemoryCounterStore, RateLimiter, RedisCounterStore
from ..orchestrator.scheduler import MaintenanceScheduler
from ..rag.embedder import RAGEmbedder
from ..rag.indexing import RAGIndexer
from ..rag.retriever import VectorRetriever
from ..rag.vector_store import InMemoryVectorStore, PgVectorStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything built at startup."""
    orchestrator: Orchestrator
    scheduler: Optional[MaintenanceScheduler] = None
    database: Optional[Database] = None
    closeables: List[Any] = field(default_factory=list)


def _openai_client(settings: Settings):
    if not settings.openai.api_key:
        return None
    from openai import AsyncOpenAI
    return AsyncOpenAI(api_key=settings.openai.api_key, max_retries=0)


async def build_services(settings: Settings) -> ServiceContainer:
    """
    Construct stores, providers and the Orchestrator.

    Raises:
        ValueError: no generation provider configured
    """
    openai_client = _openai_client(settings)

    database = None
    if settings.retrieval.backend == "pgvector" or settings.database.audit_backend == "postgres":
        database = Database(settings.database)

    # Response cache
    cache_backend = RedisCache(
        redis_url=settings.cache.redis_url if settings.cache.backend == "redis" else None,
        prefix=settings.cache.prefix,
    )
    await cache_backend.connect()
    cache = ResponseCache(cache_backend, default_ttl=settings.cache.ttl_seconds)

    # Rate limiter
    if settings.rate_limit.backend == "redis":
        if not settings.cache.redis_url:
            raise ValueError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
        counter_store = RedisCounterStore(settings.cache.redis_url, prefix=settings.cache.prefix)
    else:
        counter_store = MemoryCounterStore()
    rate_limiter = RateLimiter(counter_store, limit=settings.rate_limit.requests_per_day)

    # Retrieval
    if settings.retrieval.backend == "pgvector":
        vector_store = PgVectorStore(database, dimensions=settings.openai.embedding_dimensions)
        await vector_store.ensure_schema()
    else:
        vector_store = InMemoryVectorStore()
    embedder = RAGEmbedder(
        api_key=settings.openai.api_key,
        model=settings.openai.embedding_model,
        dimensions=settings.openai.embedding_dimensions,
        timeout=settings.timeouts.embedding,
        max_retries=settings.timeouts.max_retries,
        client=openai_client,
    )
    retriever = VectorRetriever(embedder, vector_store, settings.retrieval, settings.timeouts)

    # Audit
    if settings.database.audit_backend == "postgres":
        audit_store = PostgresAuditStore(database)
        await audit_store.ensure_schema()
    else:
        audit_store = MemoryAuditStore()
    audit = AuditLog(audit_store)

    moderation = ModerationFilter(
        openai_client=openai_client if settings.moderation.remote_enabled else None,
        model=settings.openai.moderation_model,
        timeout=settings.timeouts.moderation,
        max_retries=settings.timeouts.max_retries,
        block_severity=settings.moderation.block_severity,
        remote_enabled=settings.moderation.remote_enabled,
        max_input_chars=settings.moderation.max_input_chars,
    )

    crm = CRMClient(settings.crm.base_url, settings.crm.api_token, settings.crm.timeout)

    orchestrator = Orchestrator(
        crm=crm,
        rate_limiter=rate_limiter,
        moderation=moderation,
        cache=cache,
        retriever=retriever,
        llm=get_llm_client(settings, openai_client=openai_client),
        assembler=PromptAssembler(settings.prompt),
        scorer=ConfidenceScorer(settings.confidence),
        audit=audit,
        indexer=RAGIndexer(retriever),
        retrieval_config=settings.retrieval,
        cache_ttl=settings.cache.ttl_seconds,
    )

    scheduler = MaintenanceScheduler(cache, rate_limiter, settings.cache.sweep_interval_seconds)

    logger.info(
        f"Services ready: cache={cache_backend.backend} rate_limit={settings.rate_limit.backend} "
        f"vectors={settings.retrieval.backend} audit={settings.database.audit_backend}"
    )
    return ServiceContainer(
        orchestrator=orchestrator,
        scheduler=scheduler,
        database=database,
        closeables=[crm, cache, rate_limiter, vector_store, audit],
    )


async def shutdown_services(services: ServiceContainer) -> None:
    """Stop the scheduler, flush background work and close every store."""
    if services.scheduler is not None:
        services.scheduler.stop()
    await services.orchestrator.drain()
    for resource in services.closeables:
        try:
            await resource.close()
        except Exception as e:
            logger.warning(f"Error closing {type(resource).__name__}: {e}")
    if services.database is not None:
        services.database.close()


# =============================================================================
# REQUEST DEPENDENCIES
# =============================================================================

def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.services.orchestrator


def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Caller identity, set by the CRM gateway after authentication."""
    if not x_user_id or not x_user_id.strip():
        raise ValidationError("X-User-Id header is required")
    return x_user_id.strip()
