"""
CRM AI API Models
=================

Pydantic models for API request/response serialization.
Field names follow the CRM frontend (camelCase); snake_case aliases are
accepted on input.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# =============================================================================
# REQUESTS
# =============================================================================

class ObjectionRequest(BaseModel):
    """Objection to handle, optionally attached to a deal."""
    objectionText: str = Field(alias="objection_text")
    dealId: Optional[str] = Field(None, alias="deal_id")
    category: Optional[str] = None
    severity: Optional[str] = None

    class Config:
        populate_by_name = True


class FeedbackRequest(BaseModel):
    """Thumbs up / down on a previous AI response."""
    requestId: str = Field(alias="request_id")
    feature: Optional[str] = None
    feedback: str = Field(..., description="positive|negative")
    rating: Optional[int] = Field(None, ge=1, le=5)
    comments: Optional[str] = Field(None, max_length=1000)

    class Config:
        populate_by_name = True


class EntityChangedRequest(BaseModel):
    """CRM change notification. A missing record means the entity was deleted."""
    record: Optional[Dict[str, Any]] = None


# =============================================================================
# RESPONSES
# =============================================================================

class ResponseMeta(BaseModel):
    cacheHit: bool = False
    confidence: Optional[int] = None
    requestId: str
    fallback: bool = False


class AIResponse(BaseModel):
    """Envelope of every successful response."""
    success: bool = True
    data: Dict[str, Any]
    meta: ResponseMeta


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = {}


class ErrorResponse(BaseModel):
    """Envelope of every error response."""
    success: bool = False
    error: ErrorBody
    meta: Dict[str, Any] = {}


class HealthResponse(BaseModel):
    """Service health."""
    status: str
    version: str
    timestamp: str
    components: Dict[str, Any] = {}
