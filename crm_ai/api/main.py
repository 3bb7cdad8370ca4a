"""
CRM AI FastAPI Application
==========================

REST API of the CRM AI request orchestration service.

Endpoints:
    GET  /ai/deals/{id}/coach              - Deal coaching suggestions
    POST /ai/objections/handle             - Objection response
    GET  /ai/contacts/{id}/persona         - Customer persona
    GET  /ai/deals/{id}/explain            - Win/loss analysis (closed deals)
    GET  /ai/analytics?period=7d           - Usage statistics
    POST /ai/feedback                      - Response feedback
    POST /ai/entities/{type}/{id}/changed  - CRM change notification
    GET  /ai/health                        - Health check

Usage:
    uvicorn crm_ai.api.main:app --reload --port 8000

    Or with CLI:
    python -m crm_ai.api.main
"""

from dotenv import load_dotenv
load_dotenv()

import logging
import os
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import Settings, get_settings
from ..errors import AIServiceError
from ..logging_config import setup_logging
from .ai_routes import router as ai_router
from .dependencies import ServiceContainer, build_services, shutdown_services

logger = logging.getLogger(__name__)

ServicesFactory = Callable[[Settings], Awaitable[ServiceContainer]]


def _error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    """Error envelope. Requests rejected before reaching the orchestrator get a fresh id."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code, "message": message, "details": details or {}},
            "meta": {
                "cacheHit": False,
                "confidence": None,
                "requestId": request_id or uuid4().hex,
                "fallback": False,
            },
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    services_factory: ServicesFactory = build_services,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings (default: environment)
        services_factory: Builds the process-scoped services at startup
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        setup_logging(
            level=settings.logging.level,
            json_output=settings.logging.json_logs,
            log_file=settings.logging.log_file,
        )
        logger.info(f"Starting {settings.app_name} {__version__} ({settings.environment})...")

        services = await services_factory(settings)
        app.state.services = services
        if services.scheduler is not None:
            services.scheduler.start()

        yield

        await shutdown_services(services)
        logger.info(f"Shutting down {settings.app_name}...")

    app = FastAPI(
        title="CRM AI Service",
        description="AI request orchestration for the CRM: coaching, objections, personas, win/loss analysis",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS configuration
    # Extra origins via CORS_ORIGINS (comma-separated)
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
    extra_origins = os.getenv("CORS_ORIGINS", "")
    if extra_origins:
        origins.extend([o.strip() for o in extra_origins.split(",") if o.strip()])

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AIServiceError)
    async def ai_service_error_handler(request: Request, exc: AIServiceError):
        return _error_response(exc.http_status, exc.code, exc.message, exc.details, exc.request_id)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")}
            for e in exc.errors()
        ]
        return _error_response(400, "VALIDATION_ERROR", "Invalid request", {"errors": errors})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return _error_response(500, "INTERNAL_ERROR", "Internal server error")

    app.include_router(ai_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "crm_ai.api.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_level="info",
    )
