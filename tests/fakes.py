"""
Test doubles and sample CRM data shared by the test modules.

Nothing here talks to the network: embeddings are bag-of-words hashes,
generation returns scripted JSON, stores are in memory.
"""

import asyncio
import hashlib
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Callable, Optional

from crm_ai.ai.confidence import ConfidenceScorer
from crm_ai.ai.llm_client import LLMClient, LLMProvider, LLMResponse
from crm_ai.ai.moderation import ModerationFilter
from crm_ai.ai.prompt_assembler import PromptAssembler
from crm_ai.cache.redis_cache import RedisCache
from crm_ai.cache.response_cache import ResponseCache
from crm_ai.config import RetrievalConfig, TimeoutConfig
from crm_ai.data.crm_client import InMemoryCRMClient
from crm_ai.orchestrator.audit import AuditLog, MemoryAuditStore
from crm_ai.orchestrator.pipeline import Orchestrator
from crm_ai.orchestrator.rate_limiter import MemoryCounterStore, RateLimiter
from crm_ai.rag.embedder import RAGEmbedder
from crm_ai.rag.indexing import RAGIndexer
from crm_ai.rag.retriever import VectorRetriever
from crm_ai.rag.vector_store import InMemoryVectorStore

NOW = datetime(2026, 3, 10, 12, 0, 0)
DIMENSIONS = 32


class FakeClock:
    """Mutable clock usable both as a datetime source and a time.time() source."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


# =============================================================================
# PROVIDERS
# =============================================================================

def text_vector(text: str, dims: int = DIMENSIONS):
    """Deterministic bag-of-words embedding."""
    vector = [0.0] * dims
    for token in re.findall(r"\w+", text.lower()):
        bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % dims
        vector[bucket] += 1.0
    return vector


class FakeEmbeddingsAPI:
    """Stands in for AsyncOpenAI().embeddings."""

    def __init__(self, error: Optional[Exception] = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.calls = 0

    async def create(self, model, input, dimensions=None):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(
            data=[SimpleNamespace(embedding=text_vector(input, dimensions or DIMENSIONS))],
            usage=SimpleNamespace(total_tokens=len(input.split())),
        )


class FakeOpenAI:
    def __init__(self, embedding_error: Optional[Exception] = None):
        self.embeddings = FakeEmbeddingsAPI(error=embedding_error)


def _prompt_value(prompt: str, label: str) -> str:
    match = re.search(rf"^- {re.escape(label)}: (.*)$", prompt, re.MULTILINE)
    return match.group(1).strip() if match else "Unknown"


def default_responder(prompt: str) -> str:
    """JSON answer that reflects the entity in the prompt."""
    industry = _prompt_value(prompt, "Industry")
    stage = _prompt_value(prompt, "Stage")
    company = _prompt_value(prompt, "Company")

    if "Handle this customer objection" in prompt:
        return json.dumps({
            "response": f"Based on similar objections in {industry}, focus on the value delivered.",
            "approach": "logical",
            "followUp": "What budget range did you have in mind?",
            "tips": ["Quantify ROI", "Offer a phased rollout"],
        })
    if "create a personalized persona" in prompt:
        return json.dumps({
            "communicationStyle": "direct",
            "decisionMaking": "data-driven",
            "motivations": [f"Growth at {company}"],
            "concerns": ["Implementation time"],
            "engagementLevel": "medium",
            "preferredApproach": "Share case studies before the next call",
            "keyInsights": ["Responds well to concise emails"],
        })
    if "Analyze this closed deal" in prompt:
        return json.dumps({
            "outcome": "won",
            "primaryFactors": [f"Strong fit for {industry}"],
            "timeline": "Closed within the typical cycle",
            "objectionHandling": "Price concerns addressed with an ROI model",
            "engagementLevel": "high",
            "keyLessons": ["Lead with ROI"],
            "recommendations": ["Reuse the ROI template"],
        })
    return json.dumps([
        {
            "action": f"Schedule an ROI review with {company} ({industry}) to move past the {stage} stage",
            "reasoning": f"Similar deals in {industry} historically closed 40% faster after an ROI review",
            "priority": "high",
            "timeline": "within 1 week",
        },
        {
            "action": f"Prepare a {industry} case study for the decision maker",
            "reasoning": "Based on similar deals, proof points shorten evaluation",
            "priority": "medium",
            "timeline": "within 2 weeks",
        },
    ])


class FakeLLM(LLMClient):
    """Scripted generation client. ``calls`` counts complete() invocations."""

    def __init__(
        self,
        responder: Callable[[str], str] = default_responder,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        timeout: float = 2.0,
    ):
        super().__init__(model="fake-model", timeout=timeout, max_retries=0)
        self.responder = responder
        self.delay = delay
        self.error = error
        self.prompts = []

    async def _generate(self, prompt, system, max_tokens, temperature) -> LLMResponse:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return LLMResponse(
            content=self.responder(prompt),
            model=self.model,
            provider=LLMProvider.OPENAI,
            tokens_input=len(prompt.split()),
            tokens_output=50,
            cost_usd=0.0,
        )


# =============================================================================
# SAMPLE CRM DATA
# =============================================================================

DEALS = [
    {
        "id": "deal-a", "title": "Acme platform rollout", "value": 50000, "stage": "proposal",
        "industry": "SaaS", "company": "Acme Cloud", "contact": "c-1",
        "notes": "Champion is the VP of Sales", "createdAt": "2026-02-01T09:00:00",
    },
    {
        "id": "deal-b", "title": "Bolt Works pilot", "value": 12000, "stage": "lead",
        "industry": "Manufacturing", "company": "Bolt Works", "contact": "c-2",
        "notes": "Inbound from trade show", "createdAt": "2026-03-01T09:00:00",
    },
    {
        "id": "deal-won", "title": "Nimbus expansion", "value": 45000, "stage": "closed_won",
        "industry": "SaaS", "company": "Nimbus Apps", "contact": "c-1",
        "closeReason": "Strong ROI case", "createdAt": "2025-11-01T09:00:00",
        "actualCloseDate": "2026-01-15T09:00:00",
    },
    {
        "id": "deal-lost", "title": "Forge retrofit", "value": 15000, "stage": "closed_lost",
        "industry": "Manufacturing", "company": "Forge Metals", "contact": "c-2",
        "closeReason": "Went with a competitor", "createdAt": "2025-10-01T09:00:00",
        "actualCloseDate": "2025-12-20T09:00:00",
    },
]

CONTACTS = [
    {
        "id": "c-1", "firstName": "Jane", "lastName": "Doe", "company": "Acme Cloud",
        "industry": "SaaS", "jobTitle": "VP Sales", "department": "Sales", "status": "customer",
        "leadSource": "referral", "preferences": {"preferredContactMethod": "email"},
    },
    {
        "id": "c-2", "firstName": "Raj", "lastName": "Patel", "company": "Bolt Works",
        "industry": "Manufacturing", "jobTitle": "Plant Manager", "status": "prospect",
    },
]

OBJECTIONS = [
    {
        "id": "obj-1", "text": "The price is too high for our budget", "category": "price",
        "severity": "high", "dealId": "deal-a", "isResolved": False,
    },
    {
        "id": "obj-2", "text": "Your price is above what we pay today", "category": "price",
        "severity": "medium", "dealId": "deal-won", "isResolved": True,
        "resolution": "Shared an ROI model showing payback in 6 months",
    },
]

INTERACTIONS = [
    {
        "id": "int-1", "type": "call", "notes": "Discussed pricing tiers", "outcome": "positive",
        "date": "2026-02-20T10:00:00", "contactId": "c-1", "dealId": "deal-a",
    },
    {
        "id": "int-2", "type": "meeting", "notes": "Demo for the sales team", "outcome": "positive",
        "date": "2026-01-05T15:00:00", "contactId": "c-1", "dealId": "deal-won",
    },
    {
        "id": "int-3", "type": "email", "notes": "Sent the product datasheet", "outcome": "neutral",
        "date": "2026-03-02T08:00:00", "contactId": "c-2", "dealId": "deal-b",
    },
]


def make_crm() -> InMemoryCRMClient:
    return InMemoryCRMClient(
        deals=[dict(d) for d in DEALS],
        contacts=[dict(c) for c in CONTACTS],
        objections=[dict(o) for o in OBJECTIONS],
        interactions=[dict(i) for i in INTERACTIONS],
    )


# =============================================================================
# HARNESS
# =============================================================================

@dataclass
class Harness:
    orchestrator: Orchestrator
    llm: FakeLLM
    openai: FakeOpenAI
    crm: InMemoryCRMClient
    cache: ResponseCache
    rate_limiter: RateLimiter
    audit: AuditLog
    audit_store: MemoryAuditStore
    retriever: VectorRetriever
    indexer: RAGIndexer
    clock: FakeClock


def build_harness(
    llm: Optional[FakeLLM] = None,
    limit: int = 500,
    ttl: int = 900,
    counter_store=None,
    embedding_error: Optional[Exception] = None,
    clock: Optional[FakeClock] = None,
) -> Harness:
    clock = clock or FakeClock()
    llm = llm or FakeLLM()
    openai = FakeOpenAI(embedding_error=embedding_error)
    crm = make_crm()

    cache = ResponseCache(RedisCache(clock=clock.time), default_ttl=ttl)
    rate_limiter = RateLimiter(counter_store or MemoryCounterStore(), limit=limit, clock=clock)
    audit_store = MemoryAuditStore()
    audit = AuditLog(audit_store, clock=clock)

    timeouts = TimeoutConfig(embedding=1.0, vector_query=1.0, generation=2.0, moderation=1.0, max_retries=0)
    embedder = RAGEmbedder(model="fake-embedding", dimensions=DIMENSIONS, timeout=1.0, max_retries=0, client=openai)
    retriever = VectorRetriever(embedder, InMemoryVectorStore(clock=clock), RetrievalConfig(), timeouts)
    indexer = RAGIndexer(retriever, clock=clock)

    orchestrator = Orchestrator(
        crm=crm,
        rate_limiter=rate_limiter,
        moderation=ModerationFilter(remote_enabled=False),
        cache=cache,
        retriever=retriever,
        llm=llm,
        assembler=PromptAssembler(),
        scorer=ConfidenceScorer(),
        audit=audit,
        indexer=indexer,
        retrieval_config=RetrievalConfig(),
        cache_ttl=ttl,
        clock=clock,
    )
    return Harness(
        orchestrator=orchestrator,
        llm=llm,
        openai=openai,
        crm=crm,
        cache=cache,
        rate_limiter=rate_limiter,
        audit=audit,
        audit_store=audit_store,
        retriever=retriever,
        indexer=indexer,
        clock=clock,
    )


async def seed_history(harness: Harness) -> None:
    """Index the closed deals, resolved objections and interactions."""
    for deal in DEALS:
        await harness.indexer.on_entity_changed("deal", deal["id"], deal)
    for objection in OBJECTIONS:
        await harness.indexer.on_entity_changed("objection", objection["id"], {**objection, "industry": "SaaS"})
    industries = {c["id"]: c["industry"] for c in CONTACTS}
    for interaction in INTERACTIONS:
        record = {**interaction, "industry": industries[interaction["contactId"]]}
        await harness.indexer.on_entity_changed("interaction", interaction["id"], record)
    harness.openai.embeddings.calls = 0
