"""
Confidence Scorer
=================

Heuristic confidence (10-95) for a generated response, computed as a pure
fold of (predicate, weight) rules over immutable inputs:

    base 50
    + 20  at least 3 retrieved context items
    + 15  any context item with similarity > 0.8
    + 10  response cites evidence ("similar deals", "historically", "40%", ...)
    +  5  response length within 200-1500 chars
    x historical accuracy factor 0.8 + 0.4 * positive_feedback_ratio
      (1.0 until enough feedback exists)
    clamp to [10, 95]

Fallback responses always score 20.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from ..config import ConfidenceConfig
from ..models import Feature, RagContextItem

EVIDENCE_PATTERN = re.compile(
    r"\b(?:similar (?:deals?|objections?|customers?|cases?)|based on|historically|data (?:shows?|suggests?)|"
    r"case stud(?:y|ies)|evidence|benchmarks?|on average|in (?:past|previous) deals?|"
    r"\d+(?:\.\d+)?\s?%)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ScoringInput:
    """Everything a rule may look at."""
    response: str
    rag_context: Tuple[RagContextItem, ...]
    feature: Feature


Rule = Tuple[str, Callable[[ScoringInput], bool], int]


class ConfidenceScorer:
    """Pure confidence heuristic. Constants come from ConfidenceConfig."""

    def __init__(self, config: Optional[ConfidenceConfig] = None):
        self.config = config or ConfidenceConfig()
        self._rules = self._build_rules()

    def _build_rules(self) -> List[Rule]:
        c = self.config
        low, high = c.length_band
        return [
            ("rich_context", lambda s: len(s.rag_context) >= c.rich_context_items, c.rich_context_bonus),
            (
                "high_similarity",
                lambda s: any(i.similarity_score > c.high_similarity_threshold for i in s.rag_context),
                c.high_similarity_bonus,
            ),
            ("evidence", lambda s: bool(EVIDENCE_PATTERN.search(s.response)), c.evidence_bonus),
            ("ideal_length", lambda s: low <= len(s.response) <= high, c.length_bonus),
        ]

    @property
    def rules(self) -> List[Rule]:
        return list(self._rules)

    def historical_factor(self, positive_ratio: Optional[float], samples: int) -> float:
        """0.8 + 0.4 * ratio once min_feedback_samples exist, else 1.0."""
        if positive_ratio is None or samples < self.config.min_feedback_samples:
            return 1.0
        ratio = max(0.0, min(1.0, positive_ratio))
        return 0.8 + 0.4 * ratio

    def score(
        self,
        response: str,
        rag_context: Sequence[RagContextItem],
        feature: Feature,
        positive_ratio: Optional[float] = None,
        feedback_samples: int = 0,
    ) -> int:
        """
        Score a response.

        Args:
            response: Generated text
            rag_context: Context items used for the prompt
            feature: Feature that produced the response
            positive_ratio: Share of positive feedback for the feature
            feedback_samples: Number of feedback entries behind positive_ratio

        Returns:
            Integer confidence in [min_score, max_score]
        """
        subject = ScoringInput(response=response or "", rag_context=tuple(rag_context), feature=feature)

        total = self.config.base
        for _name, predicate, weight in self._rules:
            if predicate(subject):
                total += weight

        total *= self.historical_factor(positive_ratio, feedback_samples)
        return self.clamp(round(total))

    def clamp(self, value: int) -> int:
        return max(self.config.min_score, min(self.config.max_score, int(value)))

    def fallback_score(self) -> int:
        return self.clamp(self.config.fallback_score)
