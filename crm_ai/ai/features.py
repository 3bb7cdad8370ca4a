"""
Feature Handlers
================

One handler per AI feature, registered in FEATURE_HANDLERS and dispatched by
the Feature enum. A handler knows, for its feature:

- how to validate the request and load the entity snapshot
- whether the entity is eligible (win/loss only explains closed deals)
- what to retrieve (collection, k, query features, store filters)
- the prompt template and the entity fields it renders
- the text to moderate and the fields that fingerprint the cache entry
- how to parse the model output (JSON, with a text fallback)
- the generic payload returned when an upstream dependency fails

| Feature            | Collection   | k | max_tokens |
|--------------------|--------------|---|------------|
| deal_coach         | deals        | 3 | 400        |
| objection_handler  | objections   | 3 | 350        |
| persona_builder    | interactions | 5 | 450        |
| win_loss_explainer | deals        | 4 | 500        |
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from ..config import RetrievalConfig
from ..errors import NotEligible, ValidationError
from ..models import (
    CLOSED_STAGES,
    OBJECTION_CATEGORIES,
    OBJECTION_SEVERITIES,
    ContactSnapshot,
    DealSnapshot,
    Feature,
    RagContextItem,
)
from ..rag.indexing import deal_duration_days
from ..rag.models import Collection, QueryFeatures, RetrievalFilters, parse_timestamp
from .prompt_assembler import PromptTemplate

logger = logging.getLogger(__name__)

OBJECTION_MIN_CHARS = 3
OBJECTION_MAX_CHARS = 1000


@dataclass
class FeatureRequest:
    """An inbound AI feature request."""
    feature: Feature
    user_id: str
    entity_id: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass(frozen=True)
class FeatureSubject:
    """The loaded entity (and request parameters) a feature works on."""
    cache_entity_id: str
    deal: Optional[DealSnapshot] = None
    contact: Optional[ContactSnapshot] = None
    objection_text: Optional[str] = None
    category: Optional[str] = None
    severity: Optional[str] = None


def parse_json_content(content: str) -> Any:
    """Parse model output as JSON, tolerating ```json fences. Raises ValueError."""
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.split("```")[1]
        if text.startswith("json"):
            text = text[4:]
    return json.loads(text.strip())


def _money(value: float) -> str:
    return f"${value:,.0f}"


# =============================================================================
# BASE HANDLER
# =============================================================================

class FeatureHandler(ABC):
    """Per-feature behaviour used by the orchestrator."""

    feature: Feature
    collection: Collection
    k: int
    template: PromptTemplate
    result_key: str

    def validate(self, request: FeatureRequest) -> None:
        """Pure request validation. Raises ValidationError."""
        if not (request.entity_id or "").strip():
            raise ValidationError(f"{self.feature.value} requires an entity id")

    @abstractmethod
    async def load(self, request: FeatureRequest, crm) -> FeatureSubject:
        """Fetch the entity snapshot from the CRM data layer."""

    def check_eligibility(self, subject: FeatureSubject) -> None:
        """Raise NotEligible when the feature does not apply."""
        return None

    def moderation_text(self, subject: FeatureSubject) -> Optional[str]:
        """User-supplied text to moderate before anything else runs."""
        return None

    @abstractmethod
    def cache_fields(self, subject: FeatureSubject) -> Dict[str, Any]:
        """Fields that change the response."""

    @abstractmethod
    def query_features(self, subject: FeatureSubject) -> QueryFeatures:
        """What to retrieve similar records for."""

    @abstractmethod
    def filters(self, subject: FeatureSubject, config: RetrievalConfig) -> RetrievalFilters:
        """Store-level retrieval filters."""

    @abstractmethod
    def prompt_fields(self, subject: FeatureSubject, now: datetime) -> Dict[str, Any]:
        """Entity values keyed as in template.fields."""

    @abstractmethod
    def parse(self, content: str) -> Any:
        """Turn model text into structured data."""

    @abstractmethod
    def fallback(self, subject: FeatureSubject) -> Any:
        """Generic payload used when generation is unavailable."""

    def rag_summary(self, item: RagContextItem) -> Dict[str, Any]:
        return item.to_dict()


# =============================================================================
# DEAL COACH
# =============================================================================

class DealCoachHandler(FeatureHandler):
    feature = Feature.DEAL_COACH
    collection = Collection.DEALS
    k = 3
    result_key = "suggestions"

    template = PromptTemplate(
        name="deal_coach",
        system=(
            "You are an expert sales coach AI. Provide actionable, specific suggestions "
            "to help salespeople advance their deals.\n\n"
            "Guidelines:\n"
            "- Provide 2-3 concrete, actionable suggestions\n"
            "- Base recommendations on similar successful deals when available\n"
            "- Consider the deal stage, value, and industry context\n"
            "- Be specific about timing and approach\n\n"
            "Respond with a JSON array of objects: "
            '[{"action": "...", "reasoning": "...", "priority": "high|medium|low", "timeline": "..."}]'
        ),
        header="Analyze this deal and provide coaching suggestions:",
        fields=(
            ("company", "Company"),
            ("industry", "Industry"),
            ("value", "Value"),
            ("stage", "Stage"),
            ("days_in_pipeline", "Days in pipeline"),
            ("recent_activity", "Recent Activity"),
            ("open_objections", "Current Objections"),
            ("notes", "Notes"),
        ),
        context_heading="Similar successful deals for context:",
        instruction="Provide specific, actionable coaching suggestions to advance this deal.",
        max_tokens=400,
    )

    async def load(self, request: FeatureRequest, crm) -> FeatureSubject:
        deal = await crm.get_deal(request.entity_id)
        interactions = await crm.list_interactions(deal_id=deal.id)
        objections = await crm.list_objections(deal_id=deal.id)
        deal = replace(deal, interactions=tuple(interactions), objections=tuple(objections))
        return FeatureSubject(cache_entity_id=deal.id, deal=deal)

    def cache_fields(self, subject: FeatureSubject) -> Dict[str, Any]:
        deal = subject.deal
        return {
            "stage": deal.stage,
            "value": deal.value,
            "industry": deal.industry,
            "company": deal.company,
            "notes": deal.notes,
            "objections": sorted((o.id, o.category, o.is_resolved) for o in deal.objections),
            "interactions": sorted(i.id for i in deal.interactions),
        }

    def query_features(self, subject: FeatureSubject) -> QueryFeatures:
        deal = subject.deal
        return QueryFeatures(
            text=(
                f"{deal.industry or 'Unknown'} company {deal.company or ''} deal worth "
                f"{_money(deal.value)} in {deal.stage} stage"
            ),
            industry=deal.industry,
            value=deal.value,
            objection_types=deal.open_objection_categories,
        )

    def filters(self, subject: FeatureSubject, config: RetrievalConfig) -> RetrievalFilters:
        deal = subject.deal
        equals = {"outcome": "closed_won"}
        if deal.industry:
            equals["industry"] = deal.industry
        value_range = None
        if deal.value > 0:
            low, high = config.value_band
            value_range = (deal.value * low, deal.value * high)
        return RetrievalFilters(
            recency_days=config.recency_days,
            equals=equals,
            value_range=value_range,
            exclude_ids=(deal.id,),
        )

    def prompt_fields(self, subject: FeatureSubject, now: datetime) -> Dict[str, Any]:
        deal = subject.deal
        created = parse_timestamp(deal.created_at)
        days = max(0, (now - created).days) if created is not None else None
        return {
            "company": deal.company,
            "industry": deal.industry,
            "value": _money(deal.value),
            "stage": deal.stage,
            "days_in_pipeline": days,
            "recent_activity": [f"{i.type}: {i.notes or 'No notes'}" for i in deal.interactions[-3:]],
            "open_objections": [f"{o.category}: {o.text}" for o in deal.objections if not o.is_resolved],
            "notes": deal.notes,
        }

    def parse(self, content: str) -> Any:
        try:
            parsed = parse_json_content(content)
            return parsed if isinstance(parsed, list) else [parsed]
        except ValueError:
            return [{
                "action": content[:200],
                "reasoning": "AI-generated suggestion",
                "priority": "medium",
                "timeline": "within 1 week",
            }]

    def fallback(self, subject: FeatureSubject) -> Any:
        return [
            {
                "action": "Review the latest interactions and schedule a follow-up with the decision maker",
                "reasoning": "Generic guidance while AI coaching is unavailable",
                "priority": "medium",
                "timeline": "within 1 week",
            },
            {
                "action": "Confirm budget, timeline and next steps in writing",
                "reasoning": "Generic guidance while AI coaching is unavailable",
                "priority": "medium",
                "timeline": "within 2 weeks",
            },
        ]

    def rag_summary(self, item: RagContextItem) -> Dict[str, Any]:
        return {
            "id": item.source_id,
            "similarity": round(item.similarity_score, 4),
            "industry": item.metadata.get("industry"),
            "value": item.metadata.get("value"),
            "outcome": item.metadata.get("outcome"),
        }


# =============================================================================
# OBJECTION HANDLER
# =============================================================================

class ObjectionHandler(FeatureHandler):
    feature = Feature.OBJECTION_HANDLER
    collection = Collection.OBJECTIONS
    k = 3
    result_key = "response"

    template = PromptTemplate(
        name="objection_handler",
        system=(
            "You are an expert sales objection handler. Provide thoughtful, persuasive "
            "responses to customer objections.\n\n"
            "Guidelines:\n"
            "- Acknowledge the concern genuinely\n"
            "- Provide logical, evidence-based responses\n"
            "- Keep responses conversational and professional\n"
            "- Suggest a follow-up question to understand the objection better\n\n"
            'Respond with JSON: {"response": "...", "approach": "logical|emotional|social_proof", '
            '"followUp": "...", "tips": ["...", "..."]}'
        ),
        header="Handle this customer objection:",
        fields=(
            ("objection", "Objection"),
            ("category", "Category"),
            ("severity", "Severity"),
            ("company", "Company"),
            ("industry", "Industry"),
            ("value", "Deal Value"),
            ("stage", "Deal Stage"),
        ),
        context_heading="Similar resolved objections for reference:",
        instruction="Provide a thoughtful, persuasive response that addresses the customer's concern.",
        max_tokens=350,
    )

    def validate(self, request: FeatureRequest) -> None:
        text = (request.params.get("objection_text") or "").strip()
        if len(text) < OBJECTION_MIN_CHARS or len(text) > OBJECTION_MAX_CHARS:
            raise ValidationError(
                f"Objection text is required and must be {OBJECTION_MIN_CHARS}-{OBJECTION_MAX_CHARS} characters",
                {"length": len(text)},
            )
        category = request.params.get("category")
        if category and category not in OBJECTION_CATEGORIES:
            raise ValidationError(f"Unknown objection category: {category}", {"allowed": list(OBJECTION_CATEGORIES)})
        severity = request.params.get("severity")
        if severity and severity not in OBJECTION_SEVERITIES:
            raise ValidationError(f"Unknown objection severity: {severity}", {"allowed": list(OBJECTION_SEVERITIES)})

    async def load(self, request: FeatureRequest, crm) -> FeatureSubject:
        text = " ".join(request.params["objection_text"].split())
        deal = None
        if request.entity_id:
            deal = await crm.get_deal(request.entity_id)

        if deal is not None:
            entity_id = deal.id
        else:
            entity_id = "text-" + hashlib.sha256(text.lower().encode()).hexdigest()[:16]

        return FeatureSubject(
            cache_entity_id=entity_id,
            deal=deal,
            objection_text=text,
            category=request.params.get("category"),
            severity=request.params.get("severity"),
        )

    def moderation_text(self, subject: FeatureSubject) -> Optional[str]:
        return subject.objection_text

    def cache_fields(self, subject: FeatureSubject) -> Dict[str, Any]:
        deal = subject.deal
        return {
            "objection": subject.objection_text.lower(),
            "category": subject.category,
            "severity": subject.severity,
            "deal": [deal.stage, deal.value, deal.industry] if deal else None,
        }

    def query_features(self, subject: FeatureSubject) -> QueryFeatures:
        industry = subject.deal.industry if subject.deal else None
        return QueryFeatures(
            text=f"{industry or 'general'} objection: {subject.objection_text}",
            industry=industry,
            category=subject.category,
            severity=subject.severity,
        )

    def filters(self, subject: FeatureSubject, config: RetrievalConfig) -> RetrievalFilters:
        equals = {"outcome": "resolved"}
        if subject.category:
            equals["category"] = subject.category
        return RetrievalFilters(recency_days=config.recency_days, equals=equals)

    def prompt_fields(self, subject: FeatureSubject, now: datetime) -> Dict[str, Any]:
        deal = subject.deal
        return {
            "objection": f"\"{subject.objection_text}\"",
            "category": subject.category,
            "severity": subject.severity,
            "company": deal.company if deal else None,
            "industry": deal.industry if deal else None,
            "value": _money(deal.value) if deal else None,
            "stage": deal.stage if deal else None,
        }

    def parse(self, content: str) -> Any:
        try:
            parsed = parse_json_content(content)
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass
        return {
            "response": content,
            "approach": "logical",
            "followUp": "What specific concerns do you have about this?",
            "tips": ["Listen actively", "Address the root concern"],
        }

    def fallback(self, subject: FeatureSubject) -> Any:
        return {
            "response": (
                "Thank you for raising this. Could you tell me more about what is driving "
                "the concern so we can look at it together?"
            ),
            "approach": "logical",
            "followUp": "What would need to be true for this to work for you?",
            "tips": ["Listen actively", "Address the root concern", "Confirm understanding before responding"],
        }

    def rag_summary(self, item: RagContextItem) -> Dict[str, Any]:
        return {
            "id": item.source_id,
            "similarity": round(item.similarity_score, 4),
            "category": item.metadata.get("category"),
            "severity": item.metadata.get("severity"),
            "outcome": item.metadata.get("outcome"),
        }


# =============================================================================
# PERSONA BUILDER
# =============================================================================

class PersonaBuilderHandler(FeatureHandler):
    feature = Feature.PERSONA_BUILDER
    collection = Collection.INTERACTIONS
    k = 5
    result_key = "persona"

    template = PromptTemplate(
        name="persona_builder",
        system=(
            "You are an expert customer psychology analyst and sales strategist. Create a "
            "personalized customer persona from the contact data and interaction history.\n\n"
            "Base the analysis on the data provided, not generic assumptions.\n\n"
            'Respond with JSON: {"communicationStyle": "...", "decisionMaking": "...", '
            '"motivations": ["..."], "concerns": ["..."], "engagementLevel": "high|medium|low", '
            '"preferredApproach": "...", "keyInsights": ["..."]}'
        ),
        header="Analyze this customer and create a personalized persona:",
        fields=(
            ("name", "Customer"),
            ("company", "Company"),
            ("industry", "Industry"),
            ("job_title", "Job Title"),
            ("department", "Department"),
            ("status", "Status"),
            ("lead_source", "Lead Source"),
            ("preferred_contact_method", "Preferred Contact Method"),
            ("recent_interactions", "Recent Interactions"),
            ("deal_history", "Deal History"),
            ("notes", "Contact Notes"),
        ),
        context_heading="Similar customer patterns:",
        instruction=(
            "Create a persona specific to this contact: communication style, decision making, "
            "motivations, concerns, engagement level and a tailored sales approach."
        ),
        max_tokens=450,
    )

    async def load(self, request: FeatureRequest, crm) -> FeatureSubject:
        contact = await crm.get_contact(request.entity_id)
        interactions = await crm.list_interactions(contact_id=contact.id)
        deals = await crm.list_deals(contact_id=contact.id)
        contact = replace(contact, interactions=tuple(interactions), deals=tuple(deals))
        return FeatureSubject(cache_entity_id=contact.id, contact=contact)

    def cache_fields(self, subject: FeatureSubject) -> Dict[str, Any]:
        contact = subject.contact
        return {
            "company": contact.company,
            "industry": contact.industry,
            "job_title": contact.job_title,
            "department": contact.department,
            "status": contact.status,
            "notes": contact.notes,
            "interactions": sorted(i.id for i in contact.interactions),
            "deals": sorted((d.id, d.stage) for d in contact.deals),
        }

    @staticmethod
    def dominant_interaction_type(contact: ContactSnapshot) -> Optional[str]:
        counts = Counter(i.type for i in contact.interactions)
        if not counts:
            return None
        # Ties resolved alphabetically
        return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]

    def query_features(self, subject: FeatureSubject) -> QueryFeatures:
        contact = subject.contact
        parts = [
            contact.job_title or "professional",
            f"in {contact.department}" if contact.department else "",
            f"at {contact.company}" if contact.company else "",
            f"contact {contact.full_name} with {len(contact.interactions)} interactions",
        ]
        return QueryFeatures(
            text=" ".join(p for p in parts if p),
            industry=contact.industry,
            interaction_type=self.dominant_interaction_type(contact),
        )

    def filters(self, subject: FeatureSubject, config: RetrievalConfig) -> RetrievalFilters:
        equals = {}
        if subject.contact.industry:
            equals["industry"] = subject.contact.industry
        return RetrievalFilters(recency_days=config.recency_days, equals=equals)

    def prompt_fields(self, subject: FeatureSubject, now: datetime) -> Dict[str, Any]:
        contact = subject.contact
        recent = contact.interactions[-5:]
        return {
            "name": contact.full_name,
            "company": contact.company,
            "industry": contact.industry,
            "job_title": contact.job_title,
            "department": contact.department,
            "status": contact.status,
            "lead_source": contact.lead_source,
            "preferred_contact_method": contact.preferred_contact_method or "email",
            "recent_interactions": [
                f"{i.type} ({i.date.date().isoformat() if i.date else 'undated'}): {i.notes or 'No notes'}"
                f" | Outcome: {i.outcome or 'Unknown'}"
                for i in recent
            ],
            "deal_history": [
                f"{_money(d.value)} deal in {d.stage} stage ({d.close_reason or 'ongoing'})"
                for d in contact.deals[-3:]
            ],
            "notes": contact.notes,
        }

    def parse(self, content: str) -> Any:
        try:
            parsed = parse_json_content(content)
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass
        return {
            "communicationStyle": "analytical",
            "decisionMaking": "deliberate",
            "motivations": ["Business growth", "Cost efficiency"],
            "concerns": ["Budget constraints", "Implementation complexity"],
            "engagementLevel": "medium",
            "preferredApproach": content[:300] or "Provide detailed information and case studies",
            "keyInsights": ["Needs more data to make decisions"],
        }

    def fallback(self, subject: FeatureSubject) -> Any:
        contact = subject.contact
        count = len(contact.interactions)
        engagement = "high" if count >= 10 else "medium" if count >= 3 else "low"
        return {
            "communicationStyle": "Not analyzed",
            "decisionMaking": "Not analyzed",
            "motivations": [],
            "concerns": [],
            "engagementLevel": engagement,
            "preferredApproach": f"Reach out via {contact.preferred_contact_method or 'email'} and review past interactions",
            "keyInsights": [f"{count} interactions on record"],
        }

    def rag_summary(self, item: RagContextItem) -> Dict[str, Any]:
        return {
            "id": item.source_id,
            "similarity": round(item.similarity_score, 4),
            "type": item.metadata.get("type"),
            "industry": item.metadata.get("industry"),
            "outcome": item.metadata.get("outcome"),
        }


# =============================================================================
# WIN / LOSS EXPLAINER
# =============================================================================

class WinLossExplainerHandler(DealCoachHandler):
    feature = Feature.WIN_LOSS_EXPLAINER
    collection = Collection.DEALS
    k = 4
    result_key = "analysis"

    template = PromptTemplate(
        name="win_loss_explainer",
        system=(
            "You are an expert sales analyst. Analyze closed deals to identify the key "
            "factors that led to the win or loss.\n\n"
            "Be objective and data-driven, and give actionable insights for future deals.\n\n"
            'Respond with JSON: {"outcome": "won|lost", "primaryFactors": ["..."], '
            '"timeline": "...", "objectionHandling": "...", "engagementLevel": "...", '
            '"keyLessons": ["..."], "recommendations": ["..."]}'
        ),
        header="Analyze this closed deal:",
        fields=(
            ("stage", "Deal Outcome"),
            ("company", "Company"),
            ("industry", "Industry"),
            ("value", "Value"),
            ("duration", "Duration"),
            ("close_reason", "Close Reason"),
            ("interactions", "Interactions"),
            ("objections", "Objections"),
            ("notes", "Notes"),
        ),
        context_heading="Similar deals for comparison:",
        instruction="Provide a comprehensive analysis of why this deal closed the way it did.",
        max_tokens=500,
    )

    def check_eligibility(self, subject: FeatureSubject) -> None:
        if subject.deal.stage not in CLOSED_STAGES:
            raise NotEligible(
                "Can only analyze closed deals",
                {"stage": subject.deal.stage, "allowed": list(CLOSED_STAGES)},
            )

    def cache_fields(self, subject: FeatureSubject) -> Dict[str, Any]:
        fields = super().cache_fields(subject)
        fields["close_reason"] = subject.deal.close_reason
        return fields

    def query_features(self, subject: FeatureSubject) -> QueryFeatures:
        deal = subject.deal
        return QueryFeatures(
            text=(
                f"{deal.industry or 'Unknown'} deal worth {_money(deal.value)} {deal.stage} "
                f"after {len(deal.interactions)} interactions"
            ),
            industry=deal.industry,
            value=deal.value,
            objection_types=sorted({o.category for o in deal.objections}),
        )

    def filters(self, subject: FeatureSubject, config: RetrievalConfig) -> RetrievalFilters:
        equals = {"outcome": subject.deal.stage}
        if subject.deal.industry:
            equals["industry"] = subject.deal.industry
        return RetrievalFilters(recency_days=config.recency_days, equals=equals, exclude_ids=(subject.deal.id,))

    def prompt_fields(self, subject: FeatureSubject, now: datetime) -> Dict[str, Any]:
        deal = subject.deal
        duration = deal_duration_days(deal)
        return {
            "stage": deal.stage,
            "company": deal.company,
            "industry": deal.industry,
            "value": _money(deal.value),
            "duration": f"{duration} days" if duration is not None else None,
            "close_reason": deal.close_reason,
            "interactions": [
                f"{i.type}: {i.notes or 'No notes'} ({i.outcome or 'Unknown outcome'})"
                for i in deal.interactions[-5:]
            ],
            "objections": [
                f"{o.category}: {o.text} ({'Resolved' if o.is_resolved else 'Unresolved'})"
                for o in deal.objections[-3:]
            ],
            "notes": deal.notes,
        }

    def parse(self, content: str) -> Any:
        try:
            parsed = parse_json_content(content)
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass
        return {
            "outcome": "unknown",
            "primaryFactors": [content[:200]] if content else ["Insufficient data for analysis"],
            "timeline": "Unable to analyze timeline",
            "objectionHandling": "No objection data available",
            "engagementLevel": "Unknown",
            "keyLessons": ["Improve data collection"],
            "recommendations": ["Track more interaction details"],
        }

    def fallback(self, subject: FeatureSubject) -> Any:
        deal = subject.deal
        return {
            "outcome": "won" if deal.stage == "closed_won" else "lost",
            "primaryFactors": [f"Close reason: {deal.close_reason or 'not specified'}"],
            "timeline": "Not analyzed",
            "objectionHandling": f"{len(deal.objections)} objections recorded",
            "engagementLevel": f"{len(deal.interactions)} interactions recorded",
            "keyLessons": [],
            "recommendations": ["Retry the analysis later"],
        }

    def rag_summary(self, item: RagContextItem) -> Dict[str, Any]:
        summary = super().rag_summary(item)
        summary["duration"] = item.metadata.get("duration")
        return summary


FEATURE_HANDLERS: Dict[Feature, FeatureHandler] = {
    handler.feature: handler
    for handler in (
        DealCoachHandler(),
        ObjectionHandler(),
        PersonaBuilderHandler(),
        WinLossExplainerHandler(),
    )
}


def get_handler(feature: Feature) -> FeatureHandler:
    try:
        return FEATURE_HANDLERS[Feature(feature)]
    except (KeyError, ValueError):
        raise ValidationError(f"Unknown feature: {feature}")
