"""
Tests for the confidence heuristic.

Rules under test:
    base 50, +20 rich context, +15 high similarity, +10 evidence, +5 length,
    x historical accuracy factor, clamp [10, 95], fallback 20

Usage:
    pytest tests/test_confidence.py -v
"""

import pytest

from crm_ai.ai.confidence import ConfidenceScorer
from crm_ai.config import ConfidenceConfig
from crm_ai.models import Feature, RagContextItem

COACH = Feature.DEAL_COACH


def context(*similarities):
    return [RagContextItem(source_id=f"d{i}", similarity_score=s) for i, s in enumerate(similarities)]


class TestConfidenceRules:

    def setup_method(self):
        self.scorer = ConfidenceScorer(ConfidenceConfig(min_feedback_samples=5))

    def test_base_score(self):
        assert self.scorer.score("Call them.", [], COACH) == 50

    def test_rich_context_bonus(self):
        assert self.scorer.score("Call them.", context(0.5, 0.5, 0.5), COACH) == 70

    def test_two_items_is_not_rich(self):
        assert self.scorer.score("Call them.", context(0.5, 0.5), COACH) == 50

    def test_high_similarity_bonus(self):
        assert self.scorer.score("Call them.", context(0.81), COACH) == 65

    def test_similarity_threshold_is_exclusive(self):
        assert self.scorer.score("Call them.", context(0.8), COACH) == 50

    @pytest.mark.parametrize("text", [
        "Similar deals closed after a pricing review.",
        "Historically, this segment responds to case studies.",
        "Teams that ran a pilot converted 40% more often.",
        "Based on past negotiations, offer a discount.",
    ])
    def test_evidence_bonus(self, text):
        assert self.scorer.score(text, [], COACH) == 60

    def test_length_bonus(self):
        assert self.scorer.score("x" * 200, [], COACH) == 55
        assert self.scorer.score("x" * 1500, [], COACH) == 55
        assert self.scorer.score("x" * 1501, [], COACH) == 50

    def test_upper_clamp(self):
        response = "Similar deals closed 40% faster. " + "x" * 300
        assert self.scorer.score(response, context(0.9, 0.9, 0.9), COACH) == 95

    def test_lower_clamp(self):
        scorer = ConfidenceScorer(ConfidenceConfig(base=2, min_feedback_samples=5))
        assert scorer.score("Call them.", [], COACH) == 10

    def test_fallback_score(self):
        assert self.scorer.fallback_score() == 20

    def test_rules_are_named(self):
        assert [name for name, _, _ in self.scorer.rules] == [
            "rich_context", "high_similarity", "evidence", "ideal_length",
        ]


class TestHistoricalFactor:

    def setup_method(self):
        self.scorer = ConfidenceScorer(ConfidenceConfig(min_feedback_samples=5))

    def test_no_feedback_is_neutral(self):
        assert self.scorer.historical_factor(None, 0) == 1.0

    def test_too_few_samples_is_neutral(self):
        assert self.scorer.historical_factor(0.0, 4) == 1.0

    @pytest.mark.parametrize("ratio,expected", [(0.0, 0.8), (0.5, 1.0), (1.0, 1.2)])
    def test_factor_range(self, ratio, expected):
        assert self.scorer.historical_factor(ratio, 10) == pytest.approx(expected)

    def test_factor_applied_to_score(self):
        assert self.scorer.score("Call them.", [], COACH, positive_ratio=0.0, feedback_samples=10) == 40
        assert self.scorer.score("Call them.", [], COACH, positive_ratio=1.0, feedback_samples=10) == 60

    def test_factor_still_clamped(self):
        response = "Similar deals closed 40% faster. " + "x" * 300
        score = self.scorer.score(response, context(0.9, 0.9, 0.9), COACH, positive_ratio=1.0, feedback_samples=10)
        assert score == 95
