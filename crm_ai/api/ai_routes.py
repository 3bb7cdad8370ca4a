"""
CRM AI API Routes
=================

Endpoints for the AI features of the CRM:
- Deal coaching, objection handling, persona building, win/loss analysis
- Usage analytics and response feedback
- Entity change notifications (cache invalidation and re-indexing)

Every response uses the envelope {success, data, meta}.
"""

import asyncio
import logging
from datetime import datetime
from uuid import uuid4

from fastapi import APIRouter, Depends, Query, Response

from .. import __version__
from ..ai.features import FeatureRequest
from ..models import Feature
from ..orchestrator.pipeline import FeatureResult, Orchestrator
from .dependencies import ServiceContainer, get_orchestrator, get_services, get_user_id
from .models import (
    AIResponse,
    EntityChangedRequest,
    FeedbackRequest,
    HealthResponse,
    ObjectionRequest,
    ResponseMeta,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["AI"])


def _feature_response(result: FeatureResult, response: Response) -> AIResponse:
    if result.remaining_requests is not None:
        response.headers["X-RateLimit-Remaining"] = str(result.remaining_requests)
    return AIResponse(data=result.data, meta=ResponseMeta(**result.meta))


def _plain_response(data: dict) -> AIResponse:
    return AIResponse(data=data, meta=ResponseMeta(requestId=uuid4().hex))


# =============================================================================
# FEATURES
# =============================================================================

@router.get("/deals/{deal_id}/coach", response_model=AIResponse)
async def deal_coach(
    deal_id: str,
    response: Response,
    user_id: str = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Coaching suggestions for an open deal."""
    result = await orchestrator.handle(FeatureRequest(Feature.DEAL_COACH, user_id, deal_id))
    return _feature_response(result, response)


@router.post("/objections/handle", response_model=AIResponse)
async def handle_objection(
    body: ObjectionRequest,
    response: Response,
    user_id: str = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Suggested reply to a customer objection."""
    request = FeatureRequest(
        Feature.OBJECTION_HANDLER,
        user_id,
        body.dealId,
        params={
            "objection_text": body.objectionText,
            "category": body.category,
            "severity": body.severity,
        },
    )
    result = await orchestrator.handle(request)
    return _feature_response(result, response)


@router.get("/contacts/{contact_id}/persona", response_model=AIResponse)
async def customer_persona(
    contact_id: str,
    response: Response,
    user_id: str = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Customer persona built from the contact's interactions and deals."""
    result = await orchestrator.handle(FeatureRequest(Feature.PERSONA_BUILDER, user_id, contact_id))
    return _feature_response(result, response)


@router.get("/deals/{deal_id}/explain", response_model=AIResponse)
async def explain_win_loss(
    deal_id: str,
    response: Response,
    user_id: str = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Why a closed deal was won or lost. Open deals are rejected with 409."""
    result = await orchestrator.handle(FeatureRequest(Feature.WIN_LOSS_EXPLAINER, user_id, deal_id))
    return _feature_response(result, response)


# =============================================================================
# ANALYTICS / FEEDBACK
# =============================================================================

@router.get("/analytics", response_model=AIResponse)
async def usage_analytics(
    period: str = Query("7d", description="1d|7d|30d"),
    user_id: str = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """AI usage statistics of the caller."""
    return _plain_response(await orchestrator.analytics(user_id, period))


@router.post("/feedback", response_model=AIResponse)
async def submit_feedback(
    body: FeedbackRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    entry = await orchestrator.submit_feedback(
        user_id,
        body.requestId,
        body.feedback,
        feature=body.feature,
        rating=body.rating,
        comments=body.comments,
    )
    return _plain_response({
        "feedbackId": entry.feedback_id,
        "requestId": entry.request_id,
        "feature": entry.feature,
        "feedback": entry.feedback,
        "message": "Feedback recorded",
    })


# =============================================================================
# DATA CHANGES / HEALTH
# =============================================================================

@router.post("/entities/{entity_type}/{entity_id}/changed", response_model=AIResponse)
async def entity_changed(
    entity_type: str,
    entity_id: str,
    body: EntityChangedRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Called by the CRM after a create/update/delete.

    Drops cached AI responses about the entity and refreshes its vector.
    """
    result = await orchestrator.on_entity_changed(entity_type, entity_id, body.record)
    return _plain_response(result)


@router.get("/health", response_model=HealthResponse)
async def health(services: ServiceContainer = Depends(get_services)):
    components = await services.orchestrator.health()
    if services.scheduler is not None:
        components["scheduler"] = services.scheduler.get_status()
    if services.database is not None:
        components["database"] = await asyncio.to_thread(services.database.check_health)

    degraded = components.get("database", {}).get("status") == "disconnected"
    return HealthResponse(
        status="degraded" if degraded else "healthy",
        version=__version__,
        timestamp=datetime.now().isoformat(),
        components=components,
    )
