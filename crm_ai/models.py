"""
CRM AI Data Models
==================

Records flowing through the orchestration pipeline:

- Entity snapshots supplied read-only by the CRM data layer
  (Deal, Contact, Objection, Interaction)
- RagContextItem: one retrieved historical record
- ModerationVerdict: result of a moderation check
- AiRequestRecord / FeedbackRecord: append-only audit entries
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Feature(str, Enum):
    """AI features exposed by the service."""
    DEAL_COACH = "deal_coach"
    OBJECTION_HANDLER = "objection_handler"
    PERSONA_BUILDER = "persona_builder"
    WIN_LOSS_EXPLAINER = "win_loss_explainer"


class Severity(str, Enum):
    """Moderation severity tiers, ordered."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self)

    def __ge__(self, other):
        if isinstance(other, Severity):
            return self.rank >= other.rank
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, Severity):
            return self.rank > other.rank
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, Severity):
            return self.rank <= other.rank
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, Severity):
            return self.rank < other.rank
        return NotImplemented


SEVERITY_ORDER = [Severity.NONE, Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


CLOSED_STAGES = ("closed_won", "closed_lost")
DEAL_STAGES = ("lead", "qualified", "proposal", "negotiation") + CLOSED_STAGES
OBJECTION_CATEGORIES = (
    "price", "budget", "timing", "authority", "need",
    "trust", "competitor", "features", "support", "other",
)
OBJECTION_SEVERITIES = ("low", "medium", "high", "critical")


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


# =============================================================================
# ENTITY SNAPSHOTS (read-only, from the CRM)
# =============================================================================

@dataclass(frozen=True)
class InteractionSnapshot:
    """A logged call / email / meeting."""
    id: str
    type: str = "other"
    notes: str = ""
    outcome: Optional[str] = None
    date: Optional[datetime] = None
    duration: Optional[int] = None
    contact_id: Optional[str] = None
    deal_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InteractionSnapshot":
        return cls(
            id=str(data.get("id") or data.get("_id")),
            type=data.get("type") or "other",
            notes=data.get("notes") or "",
            outcome=data.get("outcome"),
            date=_parse_datetime(data.get("date")),
            duration=data.get("duration"),
            contact_id=_ref_id(data.get("contactId")),
            deal_id=_ref_id(data.get("dealId")),
        )


@dataclass(frozen=True)
class ObjectionSnapshot:
    """A customer objection raised on a deal."""
    id: str
    text: str
    category: str = "other"
    severity: str = "medium"
    deal_id: Optional[str] = None
    deal_stage: Optional[str] = None
    is_resolved: bool = False
    outcome: Optional[str] = None
    resolution: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectionSnapshot":
        return cls(
            id=str(data.get("id") or data.get("_id")),
            text=data.get("text") or "",
            category=data.get("category") or "other",
            severity=data.get("severity") or "medium",
            deal_id=_ref_id(data.get("dealId")),
            deal_stage=data.get("dealStage"),
            is_resolved=bool(data.get("isResolved", False)),
            outcome=data.get("outcome"),
            resolution=data.get("resolution"),
        )


@dataclass(frozen=True)
class ContactSnapshot:
    """A CRM contact with its interaction history."""
    id: str
    first_name: str = ""
    last_name: str = ""
    company: Optional[str] = None
    industry: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    status: Optional[str] = None
    lead_source: Optional[str] = None
    preferred_contact_method: Optional[str] = None
    notes: str = ""
    interactions: tuple = ()
    deals: tuple = ()

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContactSnapshot":
        preferences = data.get("preferences") or {}
        return cls(
            id=str(data.get("id") or data.get("_id")),
            first_name=data.get("firstName") or "",
            last_name=data.get("lastName") or "",
            company=data.get("company"),
            industry=data.get("industry"),
            job_title=data.get("jobTitle"),
            department=data.get("department"),
            status=data.get("status"),
            lead_source=data.get("leadSource"),
            preferred_contact_method=preferences.get("preferredContactMethod"),
            notes=data.get("notes") or "",
            interactions=tuple(
                InteractionSnapshot.from_dict(i) for i in data.get("interactions") or []
            ),
            deals=tuple(DealSnapshot.from_dict(d) for d in data.get("deals") or []),
        )


@dataclass(frozen=True)
class DealSnapshot:
    """A CRM deal with the data the AI features read."""
    id: str
    title: str = ""
    value: float = 0.0
    stage: str = "lead"
    industry: Optional[str] = None
    company: Optional[str] = None
    contact_id: Optional[str] = None
    notes: str = ""
    close_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    interactions: tuple = ()
    objections: tuple = ()

    @property
    def is_closed(self) -> bool:
        return self.stage in CLOSED_STAGES

    @property
    def open_objection_categories(self) -> List[str]:
        return sorted({o.category for o in self.objections if not o.is_resolved})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DealSnapshot":
        contact = data.get("contact") if isinstance(data.get("contact"), dict) else {}
        return cls(
            id=str(data.get("id") or data.get("_id")),
            title=data.get("title") or "",
            value=float(data.get("value") or 0),
            stage=data.get("stage") or "lead",
            industry=data.get("industry") or contact.get("industry"),
            company=data.get("company") or contact.get("company"),
            contact_id=_ref_id(data.get("contact")),
            notes=data.get("notes") or "",
            close_reason=data.get("closeReason"),
            created_at=_parse_datetime(data.get("createdAt")),
            closed_at=_parse_datetime(data.get("actualCloseDate") or data.get("closedAt")),
            interactions=tuple(
                InteractionSnapshot.from_dict(i) for i in data.get("interactions") or []
            ),
            objections=tuple(
                ObjectionSnapshot.from_dict(o) for o in data.get("objections") or []
            ),
        )


def _ref_id(value: Any) -> Optional[str]:
    """Extract an id from either a raw id or a populated sub-document."""
    if value is None:
        return None
    if isinstance(value, dict):
        ref = value.get("id") or value.get("_id")
        return str(ref) if ref is not None else None
    return str(value)


# =============================================================================
# PIPELINE RECORDS
# =============================================================================

@dataclass(frozen=True)
class RagContextItem:
    """A retrieved historical record with its blended similarity."""
    source_id: str
    similarity_score: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    summary: str = ""
    vector_score: float = 0.0
    feature_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.source_id,
            "similarity": round(self.similarity_score, 4),
            "industry": self.metadata.get("industry"),
            "outcome": self.metadata.get("outcome"),
            "value": self.metadata.get("value"),
            "category": self.metadata.get("category"),
            "timestamp": self.metadata.get("timestamp"),
        }


@dataclass(frozen=True)
class ModerationVerdict:
    """Outcome of a moderation check."""
    is_allowed: bool
    reason_code: str
    severity: Severity = Severity.NONE
    matched_categories: tuple = ()
    layer: str = "local"

    @classmethod
    def allowed(cls, severity: Severity = Severity.NONE, categories=(), layer: str = "local") -> "ModerationVerdict":
        return cls(
            is_allowed=True,
            reason_code="content_approved",
            severity=severity,
            matched_categories=tuple(categories),
            layer=layer,
        )


@dataclass
class AiRequestRecord:
    """Audit entry, one per request terminal transition."""
    request_id: str
    user_id: str
    feature: str
    entity_id: Optional[str]
    cache_hit: bool
    confidence: Optional[int]
    latency_ms: int
    status: str  # completed | rejected | failed | cancelled
    timestamp: datetime = field(default_factory=datetime.now)
    error_code: Optional[str] = None
    fallback: bool = False
    dependency: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "userId": self.user_id,
            "feature": self.feature,
            "entityId": self.entity_id,
            "cacheHit": self.cache_hit,
            "confidence": self.confidence,
            "latencyMs": self.latency_ms,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "errorCode": self.error_code,
            "fallback": self.fallback,
            "dependency": self.dependency,
        }


@dataclass
class FeedbackRecord:
    """Thumbs up / down recorded against a prior AI response."""
    feedback_id: str
    request_id: str
    user_id: str
    feature: str
    feedback: str  # positive | negative
    rating: Optional[int] = None
    comments: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_positive(self) -> bool:
        return self.feedback == "positive"
