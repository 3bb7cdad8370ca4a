"""
RAG Indexing
============

Turns CRM records into vector documents:

- Closed deals       -> "deals" collection (Deal Coach, Win/Loss context)
- Resolved objections -> "objections" collection (Objection Handler context)
- Interactions       -> "interactions" collection (Persona Builder context)

Each document is a short text (embedded) plus JSON metadata used by the
store filters and the feature relevance score. Metadata always carries a
"timestamp" (ISO, server-local) for the recency filter.

Usage:
    indexer = RAGIndexer(retriever)
    await indexer.index_deal(deal)
    await indexer.on_entity_changed("deal", deal_id, deal)
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from ..models import DealSnapshot, InteractionSnapshot, ObjectionSnapshot
from .models import Collection, parse_timestamp

logger = logging.getLogger(__name__)

ENTITY_COLLECTIONS = {
    "deal": Collection.DEALS,
    "objection": Collection.OBJECTIONS,
    "interaction": Collection.INTERACTIONS,
}


def _iso(value: Optional[datetime], fallback: datetime) -> str:
    ts = parse_timestamp(value) or fallback
    return ts.replace(microsecond=0).isoformat()


def deal_duration_days(deal: DealSnapshot) -> Optional[int]:
    if deal.closed_at and deal.created_at:
        closed = parse_timestamp(deal.closed_at)
        created = parse_timestamp(deal.created_at)
        return max(0, (closed - created).days)
    return None


# =============================================================================
# DOCUMENT BUILDERS
# =============================================================================

def build_deal_document(deal: DealSnapshot, now: datetime) -> Tuple[str, Dict[str, Any]]:
    """Text and metadata for a closed deal."""
    duration = deal_duration_days(deal)
    interaction_summary = " ".join(
        f"{i.type}: {i.notes}".strip() for i in deal.interactions
    )[:500]
    objection_summary = " ".join(
        f"{o.category}: {o.text}" for o in deal.objections
    )[:300]

    text = "\n".join([
        f"Company: {deal.company or 'Unknown Company'}",
        f"Industry: {deal.industry or 'Unknown Industry'}",
        f"Deal Value: ${deal.value:,.0f}",
        f"Outcome: {deal.stage}",
        f"Duration: {f'{duration} days' if duration is not None else 'unknown'}",
        f"Notes: {deal.notes}",
        f"Interactions: {interaction_summary}",
        f"Objections: {objection_summary}",
        f"Close Reason: {deal.close_reason or ''}",
    ])

    metadata = {
        "dealId": deal.id,
        "value": deal.value,
        "industry": (deal.industry or "unknown"),
        "outcome": deal.stage,
        "stage": deal.stage,
        "duration": duration,
        "objectionTypes": sorted({o.category for o in deal.objections}),
        "objectionCount": len(deal.objections),
        "interactionCount": len(deal.interactions),
        "timestamp": _iso(deal.closed_at or deal.created_at, now),
        "indexedAt": _iso(now, now),
        "type": "deal",
    }
    return text, metadata


def build_objection_document(
    objection: ObjectionSnapshot,
    now: datetime,
    industry: Optional[str] = None,
) -> Tuple[str, Dict[str, Any]]:
    """Text and metadata for a resolved objection. First line is the objection itself."""
    text = "\n".join([
        objection.text,
        f"Category: {objection.category}",
        f"Severity: {objection.severity}",
        f"Deal Stage: {objection.deal_stage or 'unknown'}",
        f"Resolution: {objection.resolution or ''}",
    ])

    metadata = {
        "objectionId": objection.id,
        "dealId": objection.deal_id,
        "category": objection.category,
        "severity": objection.severity,
        "industry": industry or "unknown",
        "outcome": "resolved" if objection.is_resolved else (objection.outcome or "open"),
        "timestamp": _iso(None, now),
        "type": "objection",
    }
    return text, metadata


def build_interaction_document(
    interaction: InteractionSnapshot,
    now: datetime,
    industry: Optional[str] = None,
) -> Tuple[str, Dict[str, Any]]:
    """Text and metadata for an interaction."""
    text = "\n".join([
        f"Type: {interaction.type}",
        f"Industry: {industry or 'unknown'}",
        f"Outcome: {interaction.outcome or 'unknown'}",
        f"Duration: {interaction.duration or 'unknown'} min",
        f"Notes: {interaction.notes}",
    ])

    metadata = {
        "interactionId": interaction.id,
        "contactId": interaction.contact_id,
        "dealId": interaction.deal_id,
        "type": interaction.type,
        "industry": industry or "unknown",
        "outcome": interaction.outcome or "unknown",
        "duration": interaction.duration,
        "timestamp": _iso(interaction.date, now),
    }
    return text, metadata


def summarize_match(collection: Collection, metadata: Dict[str, Any], text: str) -> str:
    """One-line description of a retrieved record for prompts."""
    if collection == Collection.DEALS:
        duration = metadata.get("duration")
        days = f"{duration} days to close" if duration is not None else "duration unknown"
        value = metadata.get("value") or 0
        return f"{metadata.get('industry', 'unknown')} deal worth ${float(value):,.0f} ({days}, {metadata.get('outcome', 'unknown')})"

    if collection == Collection.OBJECTIONS:
        first_line = (text or "").split("\n", 1)[0].strip()
        return f"\"{first_line}\" ({metadata.get('category', 'other')}, {metadata.get('outcome', 'resolved')})"

    return (
        f"{metadata.get('type', 'other')} interaction in {metadata.get('industry', 'unknown')} "
        f"({metadata.get('outcome', 'unknown')})"
    )


# =============================================================================
# INDEXER
# =============================================================================

class RAGIndexer:
    """
    Keeps the vector collections in sync with CRM records.

    Open deals and unresolved objections are not indexed; when a record moves
    out of the indexable state its vector is removed.
    """

    def __init__(self, retriever, clock: Optional[Callable[[], datetime]] = None):
        self.retriever = retriever
        self._clock = clock or datetime.now

    async def index_deal(self, deal: DealSnapshot) -> bool:
        if not deal.is_closed:
            await self.retriever.delete(Collection.DEALS, deal.id)
            return False
        text, metadata = build_deal_document(deal, self._clock())
        await self.retriever.upsert(Collection.DEALS, deal.id, text, metadata)
        logger.debug(f"Indexed deal {deal.id}")
        return True

    async def index_objection(self, objection: ObjectionSnapshot, industry: Optional[str] = None) -> bool:
        if not objection.is_resolved:
            await self.retriever.delete(Collection.OBJECTIONS, objection.id)
            return False
        text, metadata = build_objection_document(objection, self._clock(), industry)
        await self.retriever.upsert(Collection.OBJECTIONS, objection.id, text, metadata)
        logger.debug(f"Indexed objection {objection.id}")
        return True

    async def index_interaction(self, interaction: InteractionSnapshot, industry: Optional[str] = None) -> bool:
        text, metadata = build_interaction_document(interaction, self._clock(), industry)
        await self.retriever.upsert(Collection.INTERACTIONS, interaction.id, text, metadata)
        logger.debug(f"Indexed interaction {interaction.id}")
        return True

    async def on_entity_changed(
        self,
        entity_type: str,
        entity_id: str,
        record: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Re-index (record given) or remove (record None) one entity's vector.

        Returns:
            "indexed", "removed", "skipped" or "ignored" (entity type has no collection)
        """
        collection = ENTITY_COLLECTIONS.get(entity_type)
        if collection is None:
            return "ignored"

        if record is None:
            await self.retriever.delete(collection, entity_id)
            return "removed"

        record = {**record, "id": entity_id}
        contact = record.get("contact") if isinstance(record.get("contact"), dict) else {}
        industry = record.get("industry") or contact.get("industry")

        if collection == Collection.DEALS:
            indexed = await self.index_deal(DealSnapshot.from_dict(record))
        elif collection == Collection.OBJECTIONS:
            indexed = await self.index_objection(ObjectionSnapshot.from_dict(record), industry)
        else:
            indexed = await self.index_interaction(InteractionSnapshot.from_dict(record), industry)

        return "indexed" if indexed else "skipped"
