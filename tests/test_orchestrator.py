"""
End-to-end tests for the AI request orchestrator.

Everything runs in memory: scripted generation, hash embeddings, in-memory
cache, counters, vectors and audit log.

Scenarios tested:
- Happy path per feature, audit record per request
- Cache hit / expiry, singleflight under concurrent requests
- Rate limiting (deny, next-day reset, fail closed)
- Input / output moderation
- Upstream failure fallback (never cached)
- Cancellation
- Entity change invalidation, feedback, analytics

Usage:
    pytest tests/test_orchestrator.py -v
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from crm_ai.ai.features import FeatureRequest
from crm_ai.errors import (
    ContentRejected,
    EntityNotFound,
    NotEligible,
    RateLimiterUnavailable,
    RateLimitExceeded,
    ValidationError,
)
from crm_ai.models import Feature
from crm_ai.orchestrator.pipeline import FALLBACK_NOTICE
from tests.fakes import DEALS, FakeLLM, build_harness, seed_history


def coach(entity_id="deal-a", user_id="u1"):
    return FeatureRequest(Feature.DEAL_COACH, user_id, entity_id=entity_id)


def objection(text, entity_id=None, user_id="u1", **params):
    return FeatureRequest(
        Feature.OBJECTION_HANDLER, user_id, entity_id=entity_id, params={"objection_text": text, **params},
    )


def records(harness):
    return list(harness.audit_store._records)


class TestHappyPath:

    def test_deal_coach(self):
        h = build_harness()

        async def run():
            await seed_history(h)
            return await h.orchestrator.handle(coach())

        result = asyncio.run(run())

        assert result.feature == Feature.DEAL_COACH
        assert result.cache_hit is False
        assert result.fallback is False
        assert 10 <= result.confidence <= 95
        assert result.remaining_requests == 499
        suggestions = result.data["suggestions"]
        assert "Acme Cloud" in suggestions[0]["action"]
        assert [c["id"] for c in result.data["ragContext"]] == ["deal-won"]
        assert result.data["confidence"] == result.confidence
        assert result.meta == {
            "cacheHit": False,
            "confidence": result.confidence,
            "requestId": result.request_id,
            "fallback": False,
        }
        assert h.llm.calls == 1

    def test_audit_record_written(self):
        h = build_harness()
        result = asyncio.run(h.orchestrator.handle(coach()))

        [record] = records(h)
        assert record.request_id == result.request_id
        assert record.status == "completed"
        assert record.feature == "deal_coach"
        assert record.entity_id == "deal-a"
        assert record.cache_hit is False
        assert record.confidence == result.confidence
        assert record.fallback is False

    def test_prompt_reflects_the_deal(self):
        h = build_harness()
        asyncio.run(h.orchestrator.handle(coach()))

        [prompt] = h.llm.prompts
        assert "- Company: Acme Cloud" in prompt
        assert "- Stage: proposal" in prompt
        assert "price: The price is too high for our budget" in prompt

    def test_confidence_without_context(self):
        h = build_harness()
        result = asyncio.run(h.orchestrator.handle(coach()))

        # base 50 + evidence 10 + length 5
        assert result.confidence == 65

    def test_win_loss_on_closed_deal(self):
        h = build_harness()

        async def run():
            await seed_history(h)
            return await h.orchestrator.handle(FeatureRequest(Feature.WIN_LOSS_EXPLAINER, "u1", entity_id="deal-won"))

        result = asyncio.run(run())

        assert result.data["analysis"]["outcome"] == "won"
        # The explained deal is never its own context
        assert "deal-won" not in [c["id"] for c in result.data["ragContext"]]

    def test_persona(self):
        h = build_harness()

        async def run():
            await seed_history(h)
            return await h.orchestrator.handle(FeatureRequest(Feature.PERSONA_BUILDER, "u1", entity_id="c-1"))

        result = asyncio.run(run())

        assert result.data["persona"]["motivations"] == ["Growth at Acme Cloud"]
        assert sorted(c["id"] for c in result.data["ragContext"]) == ["int-1", "int-2"]

    def test_objection_without_deal(self):
        h = build_harness()

        async def run():
            await seed_history(h)
            return await h.orchestrator.handle(objection("Your price is too high for us", category="price"))

        result = asyncio.run(run())

        assert result.data["response"]["approach"] == "logical"
        assert [c["id"] for c in result.data["ragContext"]] == ["obj-2"]
        [record] = records(h)
        assert record.entity_id.startswith("text-")


class TestCaching:

    def test_repeat_request_is_a_cache_hit(self):
        h = build_harness()

        async def run():
            first = await h.orchestrator.handle(coach())
            second = await h.orchestrator.handle(coach())
            return first, second

        first, second = asyncio.run(run())

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert second.data == first.data
        assert second.confidence == first.confidence
        assert h.llm.calls == 1
        assert [r.cache_hit for r in records(h)] == [False, True]

    def test_expired_entry_recomputed(self):
        h = build_harness(ttl=900)

        async def run():
            await h.orchestrator.handle(coach())
            h.clock.advance(seconds=901)
            return await h.orchestrator.handle(coach())

        result = asyncio.run(run())

        assert result.cache_hit is False
        assert h.llm.calls == 2

    def test_concurrent_requests_share_one_generation(self):
        h = build_harness(llm=FakeLLM(delay=0.05))

        async def run():
            return await asyncio.gather(*(h.orchestrator.handle(coach()) for _ in range(5)))

        results = asyncio.run(run())

        assert h.llm.calls == 1
        assert sum(1 for r in results if not r.cache_hit) == 1
        assert len({r.request_id for r in results}) == 5
        assert all(r.data == results[0].data for r in results)
        assert len(records(h)) == 5

    def test_distinct_deals_never_share_a_response(self):
        h = build_harness()

        async def run():
            a = await h.orchestrator.handle(coach("deal-a"))
            b = await h.orchestrator.handle(coach("deal-b"))
            return a, b, await h.cache.stats()

        a, b, stats = asyncio.run(run())

        assert b.cache_hit is False
        assert "Acme Cloud" in a.data["suggestions"][0]["action"]
        assert "Bolt Works" in b.data["suggestions"][0]["action"]
        assert stats["memory_keys"] == 2
        assert h.llm.calls == 2


class TestRateLimiting:

    def test_limit_exceeded(self):
        h = build_harness(limit=3)

        async def run():
            for _ in range(3):
                await h.orchestrator.handle(coach())
            with pytest.raises(RateLimitExceeded) as exc_info:
                await h.orchestrator.handle(coach())
            return exc_info.value

        error = asyncio.run(run())

        assert error.http_status == 429
        assert error.details == {"limit": 3, "remaining": 0}
        last = records(h)[-1]
        assert last.status == "rejected"
        assert last.error_code == "RATE_LIMIT_EXCEEDED"

    def test_admitted_again_next_day(self):
        h = build_harness(limit=1)

        async def run():
            await h.orchestrator.handle(coach())
            with pytest.raises(RateLimitExceeded):
                await h.orchestrator.handle(coach())
            h.clock.advance(days=1)
            return await h.orchestrator.handle(coach())

        result = asyncio.run(run())
        assert result.remaining_requests == 0

    def test_limits_are_per_user(self):
        h = build_harness(limit=1)

        async def run():
            await h.orchestrator.handle(coach(user_id="u1"))
            return await h.orchestrator.handle(coach(user_id="u2"))

        result = asyncio.run(run())
        assert result.cache_hit is True

    def test_limiter_failure_denies_request(self):
        store = MagicMock()
        store.increment_if_below = AsyncMock(side_effect=ConnectionError("redis down"))
        h = build_harness(counter_store=store)

        with pytest.raises(RateLimiterUnavailable):
            asyncio.run(h.orchestrator.handle(coach()))

        assert h.llm.calls == 0
        [record] = records(h)
        assert record.status == "failed"
        assert record.error_code == "RATE_LIMITER_UNAVAILABLE"

    def test_rejected_before_admission_costs_no_quota(self):
        h = build_harness()

        async def run():
            with pytest.raises(ValidationError):
                await h.orchestrator.handle(FeatureRequest(Feature.DEAL_COACH, "u1", entity_id=""))
            with pytest.raises(EntityNotFound):
                await h.orchestrator.handle(coach("deal-missing"))
            with pytest.raises(NotEligible):
                await h.orchestrator.handle(FeatureRequest(Feature.WIN_LOSS_EXPLAINER, "u1", entity_id="deal-a"))
            return await h.rate_limiter.peek("u1")

        used, remaining = asyncio.run(run())

        assert used == 0
        assert remaining == 500
        assert h.llm.calls == 0
        assert h.openai.embeddings.calls == 0
        assert [r.status for r in records(h)] == ["rejected", "rejected", "rejected"]
        assert [r.error_code for r in records(h)] == ["VALIDATION_ERROR", "ENTITY_NOT_FOUND", "NOT_ELIGIBLE"]


class TestModeration:

    def test_threatening_objection_rejected(self):
        h = build_harness()

        with pytest.raises(ContentRejected) as exc_info:
            asyncio.run(h.orchestrator.handle(objection("I want to kill everyone in your company")))

        error = exc_info.value
        assert error.direction == "input"
        assert "threat" in error.categories
        assert error.severity == "critical"
        assert h.llm.calls == 0
        assert h.openai.embeddings.calls == 0
        [record] = records(h)
        assert record.status == "rejected"
        assert record.error_code == "CONTENT_REJECTED"
        assert error.request_id == record.request_id

    def test_negative_but_professional_objection_allowed(self):
        h = build_harness()
        result = asyncio.run(h.orchestrator.handle(
            objection("This is disappointing, honestly a waste of time at this price"),
        ))
        assert result.fallback is False

    def test_off_topic_objection_rejected(self):
        h = build_harness()

        with pytest.raises(ContentRejected) as exc_info:
            asyncio.run(h.orchestrator.handle(
                objection("The weather has been lovely and my cat enjoys sleeping in the sun."),
            ))

        assert exc_info.value.reason_code == "off_topic"

    def test_disallowed_output_rejected_and_not_cached(self):
        h = build_harness(llm=FakeLLM(responder=lambda prompt: "I will kill everyone in your company"))

        async def run():
            for _ in range(2):
                with pytest.raises(ContentRejected) as exc_info:
                    await h.orchestrator.handle(coach())
                assert exc_info.value.direction == "output"
            return await h.cache.stats()

        stats = asyncio.run(run())

        assert h.llm.calls == 2
        assert stats["memory_keys"] == 0
        assert [r.status for r in records(h)] == ["rejected", "rejected"]


class TestUpstreamFailures:

    def test_generation_failure_serves_fallback(self):
        h = build_harness(llm=FakeLLM(error=RuntimeError("provider down")))

        result = asyncio.run(h.orchestrator.handle(coach()))

        assert result.fallback is True
        assert result.confidence == 20
        assert result.cache_hit is False
        assert result.data["fallback"] is True
        assert result.data["notice"] == FALLBACK_NOTICE
        assert result.data["ragContext"] == []
        assert len(result.data["suggestions"]) == 2
        assert result.meta["fallback"] is True
        assert result.remaining_requests == 499
        [record] = records(h)
        assert record.status == "failed"
        assert record.fallback is True
        assert record.dependency == "generation"
        assert record.confidence == 20

    def test_fallback_is_never_cached(self):
        h = build_harness(llm=FakeLLM(error=RuntimeError("provider down")))

        async def run():
            await h.orchestrator.handle(coach())
            h.llm.error = None
            return await h.orchestrator.handle(coach())

        result = asyncio.run(run())

        assert result.fallback is False
        assert result.cache_hit is False
        assert h.llm.calls == 2

    def test_generation_timeout(self):
        h = build_harness(llm=FakeLLM(delay=0.5, timeout=0.05))

        result = asyncio.run(h.orchestrator.handle(coach()))

        assert result.fallback is True
        assert records(h)[0].dependency == "generation"

    def test_embedding_failure_serves_fallback(self):
        h = build_harness(embedding_error=RuntimeError("quota exceeded"))

        result = asyncio.run(h.orchestrator.handle(FeatureRequest(Feature.PERSONA_BUILDER, "u1", entity_id="c-1")))

        assert result.fallback is True
        assert result.data["persona"]["engagementLevel"] == "low"
        assert h.llm.calls == 0
        assert records(h)[0].dependency == "embedding"

    def test_concurrent_waiters_all_get_fallback(self):
        h = build_harness(llm=FakeLLM(delay=0.05, error=RuntimeError("provider down")))

        async def run():
            return await asyncio.gather(*(h.orchestrator.handle(coach()) for _ in range(3)))

        results = asyncio.run(run())

        assert all(r.fallback for r in results)
        assert h.llm.calls == 1


class TestCancellation:

    def test_cancelled_request_is_audited(self):
        h = build_harness(llm=FakeLLM(delay=0.2))

        async def run():
            task = asyncio.ensure_future(h.orchestrator.handle(coach()))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await h.orchestrator.drain()
            cancelled = records(h)

            # The shared computation keeps running and fills the cache
            await asyncio.sleep(0.3)
            follow_up = await h.orchestrator.handle(coach())
            return cancelled, follow_up

        cancelled, follow_up = asyncio.run(run())

        [record] = cancelled
        assert record.status == "cancelled"
        assert record.error_code == "CANCELLED"
        assert follow_up.cache_hit is True
        assert h.llm.calls == 1


class TestEntityChanges:

    def test_deal_change_invalidates_cached_responses(self):
        h = build_harness()
        changed = {**DEALS[0], "stage": "negotiation"}

        async def run():
            await h.orchestrator.handle(coach())
            outcome = await h.orchestrator.on_entity_changed("deal", "deal-a", changed)
            again = await h.orchestrator.handle(coach())
            return outcome, again

        outcome, again = asyncio.run(run())

        assert outcome == {"entityType": "deal", "entityId": "deal-a", "invalidated": 1, "index": "skipped"}
        assert again.cache_hit is False
        assert h.llm.calls == 2

    def test_interaction_change_invalidates_deal_and_contact(self):
        h = build_harness()
        interaction = {"type": "call", "notes": "Follow-up", "dealId": "deal-a", "contactId": "c-1",
                       "date": "2026-03-09T10:00:00", "industry": "SaaS"}

        async def run():
            await h.orchestrator.handle(coach("deal-a"))
            await h.orchestrator.handle(FeatureRequest(Feature.PERSONA_BUILDER, "u1", entity_id="c-1"))
            await h.orchestrator.handle(coach("deal-b"))
            return await h.orchestrator.on_entity_changed("interaction", "int-9", interaction)

        outcome = asyncio.run(run())

        assert outcome["invalidated"] == 2
        assert outcome["index"] == "indexed"

    def test_closed_deal_reindexed(self):
        h = build_harness()
        outcome = asyncio.run(h.orchestrator.on_entity_changed("deal", "deal-won", dict(DEALS[2])))
        assert outcome["index"] == "indexed"

    def test_index_failure_reported(self):
        h = build_harness(embedding_error=RuntimeError("quota exceeded"))
        outcome = asyncio.run(h.orchestrator.on_entity_changed("deal", "deal-won", dict(DEALS[2])))
        assert outcome["index"] == "failed"

    def test_unknown_entity_type(self):
        h = build_harness()
        with pytest.raises(ValidationError):
            asyncio.run(h.orchestrator.on_entity_changed("invoice", "inv-1"))


class TestFeedbackAndAnalytics:

    def test_feedback_recorded(self):
        h = build_harness()

        async def run():
            result = await h.orchestrator.handle(coach())
            return await h.orchestrator.submit_feedback("u1", result.request_id, "positive", feature="deal_coach", rating=5)

        entry = asyncio.run(run())

        assert entry.feature == "deal_coach"
        assert entry.rating == 5
        assert entry.is_positive

    @pytest.mark.parametrize("kwargs", [
        {"feedback": "meh"},
        {"feedback": "positive", "rating": 6},
        {"feedback": "positive", "feature": "persona_builder"},
    ])
    def test_invalid_feedback(self, kwargs):
        h = build_harness()

        async def run():
            result = await h.orchestrator.handle(coach())
            await h.orchestrator.submit_feedback("u1", result.request_id, **kwargs)

        with pytest.raises(ValidationError):
            asyncio.run(run())

    def test_feedback_for_unknown_request(self):
        h = build_harness()
        with pytest.raises(ValidationError):
            asyncio.run(h.orchestrator.submit_feedback("u1", "no-such-request", "negative"))

    def test_feedback_on_another_users_request_rejected(self):
        h = build_harness()

        async def run():
            result = await h.orchestrator.handle(coach(user_id="u1"))
            await h.orchestrator.submit_feedback("u2", result.request_id, "negative")

        with pytest.raises(ValidationError):
            asyncio.run(run())

        assert h.audit_store._feedback == []

    def test_repeat_feedback_replaces_earlier_entry(self):
        h = build_harness()

        async def run():
            result = await h.orchestrator.handle(coach())
            for _ in range(5):
                await h.orchestrator.submit_feedback("u1", result.request_id, "negative")
            await h.orchestrator.submit_feedback("u1", result.request_id, "positive", rating=4)
            return await h.audit.feedback_ratio("deal_coach")

        ratio, samples = asyncio.run(run())

        assert samples == 1
        assert ratio == 1.0
        [entry] = h.audit_store._feedback
        assert entry.feedback == "positive"
        assert entry.rating == 4

    def test_negative_feedback_lowers_later_confidence(self):
        h = build_harness()

        async def run():
            first = await h.orchestrator.handle(coach("deal-a"))
            rated = [first] + [await h.orchestrator.handle(coach("deal-a")) for _ in range(4)]
            for result in rated:
                await h.orchestrator.submit_feedback("u1", result.request_id, "negative")
            second = await h.orchestrator.handle(coach("deal-b"))
            return first, second

        first, second = asyncio.run(run())

        assert first.confidence == 65
        assert second.confidence == 52

    def test_analytics(self):
        h = build_harness()

        async def run():
            await h.orchestrator.handle(coach())
            await h.orchestrator.handle(coach())
            return await h.orchestrator.analytics("u1", "7d")

        stats = asyncio.run(run())

        assert stats["totalRequests"] == 2
        assert stats["todaysUsage"] == 2
        assert stats["remainingRequests"] == 498
        assert stats["cacheHitRate"] == 0.5
        assert stats["featureUsage"] == {"deal_coach": 2}

    def test_health(self):
        h = build_harness()
        health = asyncio.run(h.orchestrator.health())

        assert health["rateLimit"]["limit"] == 500
        assert health["moderation"]["remoteEnabled"] is False
        assert health["cache"]["backend"] == "memory"
        assert health["vectorStore"]["backend"] == "memory"
        assert health["generation"]["model"] == "fake-model"
