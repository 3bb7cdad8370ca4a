"""
Tests for the moderation filter.

Philosophy under test: threats, phishing and heavy profanity are blocked,
ordinary negative business language passes.

Usage:
    pytest tests/test_moderation.py -v
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from crm_ai.ai.moderation import ModerationContext, ModerationFilter
from crm_ai.errors import UpstreamServiceError
from crm_ai.models import Feature, Severity

OBJECTION_INPUT = ModerationContext(Feature.OBJECTION_HANDLER, "input")
COACH_OUTPUT = ModerationContext(Feature.DEAL_COACH, "output")


def check(moderation, text, context=OBJECTION_INPUT):
    return asyncio.run(moderation.check(text, context))


class TestLocalPolicy:
    """Disallowed content is blocked with severity >= high."""

    def setup_method(self):
        self.moderation = ModerationFilter(remote_enabled=False)

    def test_threat_against_company_blocked(self):
        verdict = check(self.moderation, "I want to kill everyone in your company")

        assert verdict.is_allowed is False
        assert verdict.severity >= Severity.HIGH
        assert "threat" in verdict.matched_categories
        assert verdict.reason_code == "inappropriate_content"

    @pytest.mark.parametrize("text", [
        "I know where you live, so watch your back",
        "Someone should shoot your ceo",
        "I'm going to hurt you if this contract falls through",
        "We will bomb the office if the contract is cancelled",
    ])
    def test_threats_and_violence_blocked(self, text):
        verdict = check(self.moderation, text)

        assert verdict.is_allowed is False
        assert verdict.severity == Severity.CRITICAL

    @pytest.mark.parametrize("text", [
        "Please send me your password and credit card number to confirm the order",
        "Just verify your bank account number by email before we sign",
    ])
    def test_credential_phishing_blocked(self, text):
        verdict = check(self.moderation, text)

        assert verdict.is_allowed is False
        assert verdict.severity >= Severity.HIGH
        assert "phishing" in verdict.matched_categories

    def test_heavy_profanity_blocked(self):
        verdict = check(self.moderation, "This fucking price is bullshit")

        assert verdict.is_allowed is False
        assert verdict.severity >= Severity.HIGH
        assert "profanity" in verdict.matched_categories

    @pytest.mark.parametrize("text", [
        "This is disappointing, honestly a waste of time so far.",
        "Your pricing is way too expensive for our budget this quarter.",
        "We had a terrible experience with your support team last year.",
        "I'm not sure we need this, our current vendor works fine.",
        "This price will hurt your company in our evaluation.",
        "Honestly the demo sucks compared to your competitor.",
        "Our security team must verify the password policy before any vendor gets access.",
        "We cannot share credit card details with a new vendor until procurement signs off.",
        "Honestly the migration effort would kill the team this quarter.",
        "I'll get you the budget numbers next week.",
        "I'll shoot you an email with the revised pricing tomorrow.",
        "Please verify your password policy meets our compliance requirements first.",
    ])
    def test_negative_business_sentiment_allowed(self, text):
        verdict = check(self.moderation, text)

        assert verdict.is_allowed is True, verdict

    @pytest.mark.parametrize("text", [
        "Shoot the team a short recap email after the demo",
        "Ask them to share with us their security review, then send the contract",
        "If the timeline slips, the delay will kill the deal, so lock the date this week",
    ])
    def test_ordinary_coaching_output_allowed(self, text):
        verdict = check(self.moderation, text, COACH_OUTPUT)

        assert verdict.is_allowed is True, verdict

    def test_mild_profanity_recorded_not_blocked(self):
        verdict = check(self.moderation, "Damn, the contract terms are tough this year")

        assert verdict.is_allowed is True
        assert verdict.severity == Severity.LOW
        assert "mild_profanity" in verdict.matched_categories


class TestSpam:
    """One marker is low severity, two or more is medium (blocked)."""

    def setup_method(self):
        self.moderation = ModerationFilter(remote_enabled=False)

    def test_single_marker_allowed(self):
        verdict = check(self.moderation, "Our pricing details are at www.example.com for the team")

        assert verdict.is_allowed is True
        assert "spam" in verdict.matched_categories

    def test_multiple_markers_blocked(self):
        verdict = check(self.moderation, "Click here for the best price!!! http://spam.example.com")

        assert verdict.is_allowed is False
        assert verdict.reason_code == "spam_content"
        assert verdict.matched_categories == ("spam",)
        assert verdict.severity == Severity.MEDIUM

    def test_spam_indicators(self):
        indicators = ModerationFilter.spam_indicators("WHY IS THIS PRICE SO HIGH FOR OUR TEAM??? EMAIL SALES@EXAMPLE.COM")

        assert "excessive_capitalization" in indicators
        assert "excessive_punctuation" in indicators
        assert "email_address" in indicators


class TestBasicAndBusinessLayers:

    def setup_method(self):
        self.moderation = ModerationFilter(remote_enabled=False, max_input_chars=2000)

    def test_empty_text(self):
        verdict = check(self.moderation, "   ")
        assert verdict.reason_code == "empty_content"

    def test_input_too_long(self):
        verdict = check(self.moderation, "price " * 500)
        assert verdict.reason_code == "content_too_long"

    def test_long_output_is_not_length_checked(self):
        verdict = check(self.moderation, "Follow up on the proposal. " * 100, COACH_OUTPUT)
        assert verdict.is_allowed is True

    def test_markup_injection(self):
        verdict = check(self.moderation, "<script>alert('x')</script> price")

        assert verdict.is_allowed is False
        assert verdict.reason_code == "malicious_markup"
        assert verdict.severity == Severity.HIGH

    def test_personal_attack(self):
        verdict = check(self.moderation, "You are idiots and the price is a joke")

        assert verdict.is_allowed is False
        assert verdict.reason_code == "business_context"
        assert verdict.matched_categories == ("personal_attack",)

    def test_off_topic_objection(self):
        verdict = check(self.moderation, "The weather has been lovely and my cat enjoys sleeping in the sun.")

        assert verdict.is_allowed is False
        assert verdict.reason_code == "off_topic"

    def test_off_topic_only_applies_to_objection_input(self):
        text = "The weather has been lovely and my cat enjoys sleeping in the sun."
        verdict = check(self.moderation, text, ModerationContext(Feature.DEAL_COACH, "input"))

        assert verdict.is_allowed is True


class TestRemoteModeration:
    """OpenAI moderation layer."""

    def _client(self, **create_kwargs):
        client = MagicMock()
        client.moderations.create = AsyncMock(**create_kwargs)
        return client

    def test_flagged_result_maps_to_verdict(self):
        categories = MagicMock()
        categories.model_dump.return_value = {
            "harassment": True,
            "harassment_threatening": True,
            "violence": False,
        }
        response = SimpleNamespace(results=[SimpleNamespace(flagged=True, categories=categories)])
        moderation = ModerationFilter(openai_client=self._client(return_value=response))

        verdict = check(moderation, "Let's talk about the contract renewal next week.")

        assert verdict.is_allowed is False
        assert verdict.layer == "remote"
        assert verdict.reason_code == "ai_moderation"
        assert verdict.matched_categories == ("harassment", "harassment/threatening")
        assert verdict.severity == Severity.CRITICAL

    def test_unflagged_result_allows(self):
        response = SimpleNamespace(results=[SimpleNamespace(flagged=False, categories=None)])
        client = self._client(return_value=response)
        moderation = ModerationFilter(openai_client=client)

        verdict = check(moderation, "Can we revisit the pricing next quarter?")

        assert verdict.is_allowed is True
        client.moderations.create.assert_awaited_once()

    def test_local_block_skips_remote_call(self):
        client = self._client()
        moderation = ModerationFilter(openai_client=client)

        check(moderation, "I want to kill everyone in your company")

        client.moderations.create.assert_not_awaited()

    def test_timeout_retried_once_then_upstream_error(self):
        client = self._client(side_effect=asyncio.TimeoutError())
        moderation = ModerationFilter(openai_client=client, timeout=0.5, max_retries=1)

        with pytest.raises(UpstreamServiceError) as exc_info:
            check(moderation, "Can we revisit the pricing next quarter?")

        assert exc_info.value.dependency == "moderation"
        assert exc_info.value.timed_out is True
        assert client.moderations.create.await_count == 2

    def test_remote_disabled_without_client(self):
        moderation = ModerationFilter(openai_client=None, remote_enabled=True)
        assert moderation.remote_enabled is False
