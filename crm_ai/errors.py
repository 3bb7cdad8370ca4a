"""
AI Service Error Taxonomy
=========================

Every failure the orchestration pipeline can surface is one of these types.
The HTTP layer maps them to status codes through ``http_status`` and ``code``.

- RateLimitExceeded: daily quota used up (user-facing, 429)
- RateLimiterUnavailable: quota storage unreadable, request denied (503)
- ContentRejected: input or output blocked by moderation (422)
- UpstreamServiceError: embedding / vector store / generation / moderation failed (502)
- ValidationError: malformed request (400)
- NotEligible: feature not applicable to the entity (409)
- EntityNotFound: CRM entity missing (404)
"""

from typing import Any, Dict, List, Optional


class AIServiceError(Exception):
    """Base class for errors surfaced by the AI pipeline."""

    code = "AI_SERVICE_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        # Set by the orchestrator once the request has an id
        self.request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class RateLimitExceeded(AIServiceError):
    """Daily AI request limit exceeded."""

    code = "RATE_LIMIT_EXCEEDED"
    http_status = 429

    def __init__(self, user_id: str, limit: int):
        super().__init__(
            f"Daily AI request limit of {limit} exceeded",
            {"limit": limit, "remaining": 0},
        )
        self.user_id = user_id
        self.limit = limit


class RateLimiterUnavailable(AIServiceError):
    """Quota counter could not be read or written. Requests are denied."""

    code = "RATE_LIMITER_UNAVAILABLE"
    http_status = 503


class ContentRejected(AIServiceError):
    """Moderation blocked the input or the generated output."""

    code = "CONTENT_REJECTED"
    http_status = 422

    def __init__(
        self,
        reason_code: str,
        severity: str,
        categories: List[str],
        direction: str = "input",
    ):
        super().__init__(
            f"Content rejected ({direction}): {reason_code}",
            {
                "reasonCode": reason_code,
                "severity": severity,
                "categories": list(categories),
                "direction": direction,
            },
        )
        self.reason_code = reason_code
        self.severity = severity
        self.categories = list(categories)
        self.direction = direction


class UpstreamServiceError(AIServiceError):
    """An external dependency failed or timed out."""

    code = "UPSTREAM_SERVICE_ERROR"
    http_status = 502

    def __init__(self, dependency: str, message: str, timed_out: bool = False):
        super().__init__(
            f"{dependency} unavailable: {message}",
            {"dependency": dependency, "timedOut": timed_out},
        )
        self.dependency = dependency
        self.timed_out = timed_out


class ValidationError(AIServiceError):
    """Malformed request."""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotEligible(AIServiceError):
    """The requested feature does not apply to this entity."""

    code = "NOT_ELIGIBLE"
    http_status = 409


class EntityNotFound(AIServiceError):
    """CRM entity does not exist."""

    code = "ENTITY_NOT_FOUND"
    http_status = 404

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type} {entity_id} not found",
            {"entityType": entity_type, "entityId": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
