"""
AI Request Orchestrator
=======================

Turns a feature request into a moderated, retrieval-augmented,
confidence-scored response.

State machine:
    RECEIVED -> VALIDATED -> ADMITTED -> INPUT_FILTERED -> CACHE_CHECKED
    -> CONTEXT_RETRIEVED -> GENERATED -> SCORED -> OUTPUT_FILTERED -> CACHED
    -> LOGGED -> RETURNED
    terminal: REJECTED | FAILED

Rules:
- Validation and eligibility run before admission: a malformed or ineligible
  request costs no quota and makes no external call
- Rate limiter storage failure fails closed (raised, no fallback)
- Upstream failures (embedding, vector store, generation, moderation) return
  a generic labelled fallback: confidence 20, not cached, meta.fallback = true
- Exactly one audit record per request, including rejected, failed and
  cancelled ones
- Cached payloads never contain output that failed moderation

Usage:
    orchestrator = Orchestrator(crm=..., rate_limiter=..., ...)
    result = await orchestrator.handle(FeatureRequest(Feature.DEAL_COACH, "user-1", "deal-42"))
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import uuid4

from ..ai.confidence import ConfidenceScorer
from ..ai.features import FeatureHandler, FeatureRequest, FeatureSubject, get_handler
from ..ai.moderation import ModerationContext, ModerationFilter
from ..ai.prompt_assembler import PromptAssembler
from ..cache.response_cache import ResponseCache, build_cache_key
from ..config import RetrievalConfig
from ..errors import (
    AIServiceError,
    ContentRejected,
    RateLimitExceeded,
    RateLimiterUnavailable,
    UpstreamServiceError,
    ValidationError,
)
from ..models import AiRequestRecord, Feature, FeedbackRecord
from .audit import AuditLog
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

FALLBACK_NOTICE = "AI service temporarily unavailable; showing generic guidance"
ENTITY_TYPES = ("deal", "contact", "objection", "interaction")


class RequestState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    ADMITTED = "admitted"
    INPUT_FILTERED = "input_filtered"
    CACHE_CHECKED = "cache_checked"
    CONTEXT_RETRIEVED = "context_retrieved"
    GENERATED = "generated"
    SCORED = "scored"
    OUTPUT_FILTERED = "output_filtered"
    CACHED = "cached"
    LOGGED = "logged"
    RETURNED = "returned"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class FeatureResult:
    """Response of a feature request."""
    request_id: str
    feature: Feature
    data: Dict[str, Any]
    cache_hit: bool
    confidence: int
    fallback: bool = False
    latency_ms: int = 0
    remaining_requests: Optional[int] = None

    @property
    def meta(self) -> Dict[str, Any]:
        return {
            "cacheHit": self.cache_hit,
            "confidence": self.confidence,
            "requestId": self.request_id,
            "fallback": self.fallback,
        }


@dataclass
class _Trace:
    """Per-request bookkeeping for logging and the audit record."""
    request: FeatureRequest
    started: float = field(default_factory=time.monotonic)
    state: RequestState = RequestState.RECEIVED
    states: List[RequestState] = field(default_factory=lambda: [RequestState.RECEIVED])
    entity_id: Optional[str] = None
    cache_hit: bool = False
    confidence: Optional[int] = None
    fallback: bool = False
    error_code: Optional[str] = None
    dependency: Optional[str] = None
    audited: bool = False

    @property
    def latency_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class Orchestrator:
    """
    Runs feature requests through the pipeline.

    All collaborators are process-scoped and injected (built at startup).
    """

    def __init__(
        self,
        *,
        crm,
        rate_limiter: RateLimiter,
        moderation: ModerationFilter,
        cache: ResponseCache,
        retriever,
        llm,
        assembler: PromptAssembler,
        scorer: ConfidenceScorer,
        audit: AuditLog,
        indexer=None,
        retrieval_config: Optional[RetrievalConfig] = None,
        cache_ttl: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.crm = crm
        self.rate_limiter = rate_limiter
        self.moderation = moderation
        self.cache = cache
        self.retriever = retriever
        self.llm = llm
        self.assembler = assembler
        self.scorer = scorer
        self.audit = audit
        self.indexer = indexer
        self.retrieval_config = retrieval_config or RetrievalConfig()
        self.cache_ttl = cache_ttl
        self._clock = clock or datetime.now
        self._background: Set[asyncio.Task] = set()

    # =========================================================================
    # REQUEST HANDLING
    # =========================================================================

    async def handle(self, request: FeatureRequest) -> FeatureResult:
        """
        Run one feature request.

        Raises:
            ValidationError, NotEligible, EntityNotFound, RateLimitExceeded,
            ContentRejected: request rejected
            RateLimiterUnavailable: quota storage down (fail closed)
        """
        trace = _Trace(request=request, entity_id=request.entity_id)
        handler: Optional[FeatureHandler] = None
        subject: Optional[FeatureSubject] = None
        remaining: Optional[int] = None

        try:
            handler = get_handler(request.feature)
            handler.validate(request)
            subject = await handler.load(request, self.crm)
            handler.check_eligibility(subject)
            trace.entity_id = subject.cache_entity_id
            self._advance(trace, RequestState.VALIDATED)

            allowed, remaining = await self.rate_limiter.admit(request.user_id)
            if not allowed:
                raise RateLimitExceeded(request.user_id, self.rate_limiter.limit)
            self._advance(trace, RequestState.ADMITTED)

            await self._filter_input(handler, subject)
            self._advance(trace, RequestState.INPUT_FILTERED)

            key = build_cache_key(handler.feature, subject.cache_entity_id, handler.cache_fields(subject))
            self._advance(trace, RequestState.CACHE_CHECKED)

            payload, cache_hit = await self.cache.get_or_compute(
                key,
                self.cache_ttl,
                lambda: self._compute(handler, subject, trace),
            )
            if not cache_hit:
                self._advance(trace, RequestState.CACHED)

            trace.cache_hit = cache_hit
            trace.confidence = payload["confidence"]
            result = FeatureResult(
                request_id=request.request_id,
                feature=handler.feature,
                data=payload["data"],
                cache_hit=cache_hit,
                confidence=payload["confidence"],
                remaining_requests=remaining,
            )

        except asyncio.CancelledError:
            trace.error_code = "CANCELLED"
            self._audit_in_background(trace, "cancelled")
            raise

        except RateLimiterUnavailable as e:
            e.request_id = request.request_id
            await self._fail(trace, e, "failed")
            raise

        except UpstreamServiceError as e:
            if handler is None or subject is None or trace.state == RequestState.RECEIVED:
                # CRM data layer unavailable before the request was admitted
                e.request_id = request.request_id
                await self._fail(trace, e, "failed")
                raise
            result = await self._fallback(handler, subject, trace, e, remaining)

        except AIServiceError as e:
            e.request_id = request.request_id
            await self._fail(trace, e, "rejected", state=RequestState.REJECTED)
            raise

        except Exception as e:
            logger.exception(f"Unexpected error in {request.feature} request {request.request_id}")
            await self._fail(trace, e, "failed")
            raise

        await self._write_audit(trace, "failed" if result.fallback else "completed")
        self._advance(trace, RequestState.LOGGED)
        result.latency_ms = trace.latency_ms
        self._advance(trace, RequestState.RETURNED)

        logger.info(
            f"AI request {request.request_id} {handler.feature.value} done "
            f"(cache_hit={result.cache_hit}, confidence={result.confidence}, fallback={result.fallback})",
            extra={
                "request_id": request.request_id,
                "user_id": request.user_id,
                "feature": handler.feature.value,
                "entity_id": trace.entity_id,
                "latency_ms": result.latency_ms,
                "cache_hit": result.cache_hit,
                "confidence": result.confidence,
            },
        )
        return result

    async def _filter_input(self, handler: FeatureHandler, subject: FeatureSubject) -> None:
        text = handler.moderation_text(subject)
        if not text:
            return
        verdict = await self.moderation.check(text, ModerationContext(handler.feature, "input"))
        if not verdict.is_allowed:
            raise ContentRejected(
                verdict.reason_code,
                verdict.severity.value,
                list(verdict.matched_categories),
                direction="input",
            )

    async def _compute(self, handler: FeatureHandler, subject: FeatureSubject, trace: _Trace) -> Dict[str, Any]:
        """Cache-miss path: retrieve, generate, score, moderate output. Returns the cacheable payload."""
        now = self._clock()

        items = await self.retriever.retrieve(
            handler.collection,
            handler.query_features(subject),
            handler.k,
            handler.filters(subject, self.retrieval_config),
        )
        self._advance(trace, RequestState.CONTEXT_RETRIEVED)

        prompt = self.assembler.build(handler.prompt_fields(subject, now), items, handler.template)
        response = await self.llm.complete(
            prompt.user,
            system=prompt.system,
            max_tokens=prompt.max_tokens,
            temperature=prompt.temperature,
        )
        self._advance(trace, RequestState.GENERATED)

        ratio, samples = await self._feedback_ratio(handler.feature)
        confidence = self.scorer.score(response.content, items, handler.feature, ratio, samples)
        self._advance(trace, RequestState.SCORED)

        verdict = await self.moderation.check(response.content, ModerationContext(handler.feature, "output"))
        if not verdict.is_allowed:
            raise ContentRejected(
                verdict.reason_code,
                verdict.severity.value,
                list(verdict.matched_categories),
                direction="output",
            )
        self._advance(trace, RequestState.OUTPUT_FILTERED)

        return {
            "data": {
                handler.result_key: handler.parse(response.content),
                "confidence": confidence,
                "ragContext": [handler.rag_summary(item) for item in items],
                "timestamp": now.isoformat(),
            },
            "confidence": confidence,
        }

    async def _feedback_ratio(self, feature: Feature):
        try:
            return await self.audit.feedback_ratio(feature.value)
        except Exception as e:
            logger.warning(f"Feedback ratio unavailable for {feature.value}: {e}")
            return None, 0

    async def _fallback(
        self,
        handler: FeatureHandler,
        subject: FeatureSubject,
        trace: _Trace,
        error: UpstreamServiceError,
        remaining: Optional[int] = None,
    ) -> FeatureResult:
        self._advance(trace, RequestState.FAILED)
        trace.fallback = True
        trace.error_code = error.code
        trace.dependency = error.dependency
        confidence = self.scorer.fallback_score()
        trace.confidence = confidence

        logger.warning(
            f"Upstream failure in {handler.feature.value} ({error.dependency}): {error.message} - serving fallback",
            extra={
                "request_id": trace.request.request_id,
                "feature": handler.feature.value,
                "dependency": error.dependency,
            },
        )

        return FeatureResult(
            request_id=trace.request.request_id,
            feature=handler.feature,
            data={
                handler.result_key: handler.fallback(subject),
                "confidence": confidence,
                "ragContext": [],
                "timestamp": self._clock().isoformat(),
                "fallback": True,
                "notice": FALLBACK_NOTICE,
            },
            cache_hit=False,
            confidence=confidence,
            fallback=True,
            remaining_requests=remaining,
        )

    async def _fail(self, trace: _Trace, error: Exception, status: str, state: RequestState = RequestState.FAILED) -> None:
        self._advance(trace, state)
        trace.error_code = getattr(error, "code", type(error).__name__)
        trace.dependency = getattr(error, "dependency", None)
        log = logger.info if status == "rejected" else logger.error
        log(
            f"AI request {trace.request.request_id} {status}: {trace.error_code} {error}",
            extra={
                "request_id": trace.request.request_id,
                "user_id": trace.request.user_id,
                "feature": str(getattr(trace.request.feature, "value", trace.request.feature)),
                "dependency": trace.dependency,
            },
        )
        await self._write_audit(trace, status)

    def _advance(self, trace: _Trace, state: RequestState) -> None:
        trace.state = state
        trace.states.append(state)
        logger.debug(
            f"Request {trace.request.request_id} -> {state.value}",
            extra={"request_id": trace.request.request_id, "state": state.value},
        )

    # =========================================================================
    # AUDIT
    # =========================================================================

    def _record(self, trace: _Trace, status: str) -> AiRequestRecord:
        feature = trace.request.feature
        return AiRequestRecord(
            request_id=trace.request.request_id,
            user_id=trace.request.user_id,
            feature=feature.value if isinstance(feature, Feature) else str(feature),
            entity_id=trace.entity_id,
            cache_hit=trace.cache_hit,
            confidence=trace.confidence,
            latency_ms=trace.latency_ms,
            status=status,
            timestamp=self._clock(),
            error_code=trace.error_code,
            fallback=trace.fallback,
            dependency=trace.dependency,
        )

    async def _write_audit(self, trace: _Trace, status: str) -> None:
        if trace.audited:
            return
        trace.audited = True
        record = self._record(trace, status)
        try:
            await self.audit.append(record)
        except Exception:
            logger.exception(f"Audit write failed for request {record.request_id}")

    def _audit_in_background(self, trace: _Trace, status: str) -> None:
        if trace.audited:
            return
        task = asyncio.ensure_future(self._write_audit(trace, status))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # =========================================================================
    # FEEDBACK / ANALYTICS / INVALIDATION
    # =========================================================================

    async def submit_feedback(
        self,
        user_id: str,
        request_id: str,
        feedback: str,
        feature: Optional[str] = None,
        rating: Optional[int] = None,
        comments: Optional[str] = None,
    ) -> FeedbackRecord:
        """
        Record thumbs up/down on a previous response.

        A user rates each of their own requests once; rating it again replaces
        the earlier entry.

        Raises:
            ValidationError: bad feedback value / rating, or unknown request id
        """
        if feedback not in ("positive", "negative"):
            raise ValidationError("feedback must be 'positive' or 'negative'")
        if rating is not None and not 1 <= rating <= 5:
            raise ValidationError("rating must be between 1 and 5")

        record = await self.audit.find(request_id)
        # Another user's request id is reported as unknown
        if record is None or record.user_id != user_id:
            raise ValidationError(f"Unknown request id: {request_id}", {"requestId": request_id})
        if feature and feature != record.feature:
            raise ValidationError(
                "feature does not match the original request",
                {"feature": feature, "expected": record.feature},
            )

        entry = FeedbackRecord(
            feedback_id=uuid4().hex,
            request_id=request_id,
            user_id=user_id,
            feature=record.feature,
            feedback=feedback,
            rating=rating,
            comments=comments,
            timestamp=self._clock(),
        )
        await self.audit.add_feedback(entry)
        return entry

    async def analytics(self, user_id: str, period: str = "7d") -> Dict[str, Any]:
        used, remaining = await self.rate_limiter.peek(user_id)
        return await self.audit.analytics(user_id, period, remaining_quota=remaining, used_today=used)

    async def on_entity_changed(
        self,
        entity_type: str,
        entity_id: str,
        record: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Invalidate cached responses for a changed entity and refresh its vector.

        A record of None means the entity was deleted.
        """
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(f"Unknown entity type: {entity_type}", {"allowed": list(ENTITY_TYPES)})
        if not (entity_id or "").strip():
            raise ValidationError("entity id is required")

        affected = {entity_id}
        if record:
            # Interactions and objections feed the responses of their deal and contact
            for ref_key in ("dealId", "contactId", "deal", "contact"):
                ref = record.get(ref_key)
                if isinstance(ref, dict):
                    ref = ref.get("id") or ref.get("_id")
                if ref:
                    affected.add(str(ref))

        invalidated = 0
        for affected_id in sorted(affected):
            invalidated += await self.cache.invalidate_entity(affected_id)

        index_status = "skipped"
        if self.indexer is not None:
            try:
                index_status = await self.indexer.on_entity_changed(entity_type, entity_id, record)
            except UpstreamServiceError as e:
                logger.error(f"Re-indexing {entity_type} {entity_id} failed: {e.message}",
                             extra={"dependency": e.dependency})
                index_status = "failed"

        logger.info(f"{entity_type} {entity_id} changed: {invalidated} cache entries invalidated, index {index_status}")
        return {
            "entityType": entity_type,
            "entityId": entity_id,
            "invalidated": invalidated,
            "index": index_status,
        }

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def health(self) -> Dict[str, Any]:
        return {
            "cache": await self.cache.stats(),
            "vectorStore": await self.retriever.stats(),
            "rateLimit": {"limit": self.rate_limiter.limit, "dayKey": self.rate_limiter.day_key()},
            "moderation": {
                "remoteEnabled": self.moderation.remote_enabled,
                "blockSeverity": self.moderation.block_severity.value,
            },
            "generation": {"model": getattr(self.llm, "model", None), "calls": getattr(self.llm, "calls", None)},
        }

    async def drain(self) -> None:
        """Wait for background audit writes."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
