"""
RAG Data Models
===============

Records exchanged between the retriever, the vector stores and indexing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Collection(str, Enum):
    """Vector collections, one per kind of historical record."""
    DEALS = "deals"
    OBJECTIONS = "objections"
    INTERACTIONS = "interactions"


@dataclass
class QueryFeatures:
    """
    What a retrieval query is about.

    ``text`` is embedded; the other fields drive feature relevance.
    """
    text: str
    industry: Optional[str] = None
    value: Optional[float] = None
    objection_types: List[str] = field(default_factory=list)
    category: Optional[str] = None
    severity: Optional[str] = None
    interaction_type: Optional[str] = None


@dataclass
class RetrievalFilters:
    """
    Constraints applied inside the store query, before scoring.

    Attributes:
        recency_days: Only records whose metadata timestamp is within this window
        equals: Metadata key -> required value (industry, outcome, category)
        value_range: Inclusive (min, max) on metadata "value"
        exclude_ids: Document ids never returned (the record being explained)
    """
    recency_days: Optional[int] = 365
    equals: Dict[str, Any] = field(default_factory=dict)
    value_range: Optional[Tuple[float, float]] = None
    exclude_ids: Tuple[str, ...] = ()

    def cutoff(self, now: datetime) -> Optional[datetime]:
        if self.recency_days is None:
            return None
        return now - timedelta(days=self.recency_days)

    def matches(self, metadata: Dict[str, Any], now: datetime) -> bool:
        """Evaluate the filters against one record's metadata."""
        for key, expected in self.equals.items():
            actual = metadata.get(key)
            if isinstance(actual, str) and isinstance(expected, str):
                if actual.lower() != expected.lower():
                    return False
            elif actual != expected:
                return False

        if self.value_range is not None:
            value = metadata.get("value")
            if value is None:
                return False
            low, high = self.value_range
            if not low <= float(value) <= high:
                return False

        cutoff = self.cutoff(now)
        if cutoff is not None:
            timestamp = parse_timestamp(metadata.get("timestamp"))
            if timestamp is None or timestamp < cutoff:
                return False

        return True


@dataclass
class VectorMatch:
    """A raw store hit before feature re-ranking."""
    doc_id: str
    cosine: float
    metadata: Dict[str, Any]
    text: str = ""


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp into a naive local datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed
