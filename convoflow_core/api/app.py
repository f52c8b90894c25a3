"""
FastAPI Application Module

HTTP surface for template activation, message processing, session
resets and metrics.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..analytics.base import EngineVariant
from ..config import Settings, get_settings
from ..core.errors import (
    BaselineExecutionError,
    MalformedGraph,
    TransientProcessingError,
    UnknownTemplateError,
)
from ..core.logging import configure_logging
from ..flow.state import ConversationState, utcnow
from ..processing import ConversationProcessor


logger = structlog.get_logger()


# =============================================================================
# Request / Response Models
# =============================================================================


class TemplateRequest(BaseModel):
    """Template document in ingestion format."""
    nodes: List[Dict[str, Any]]
    entryNodeId: str
    version: Optional[str] = None
    name: Optional[str] = None
    tenantId: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TemplateResponse(BaseModel):
    template_id: str
    version: str
    node_count: int


class MessageRequest(BaseModel):
    """Inbound message."""
    tenant_id: str
    user_id: str
    session_id: str
    template_id: str
    message: Optional[str] = None
    prior_state: Optional[Dict[str, Any]] = None


class MessageResponse(BaseModel):
    outputs: List[Dict[str, Any]]
    state: Dict[str, Any]
    engineUsed: str
    degraded: bool
    routing: Dict[str, Any]
    fallback: Optional[Dict[str, Any]] = None


class HealthResponse(BaseModel):
    status: str = "healthy"
    service: str
    timestamp: datetime


# =============================================================================
# Exception Handlers
# =============================================================================


async def malformed_graph_handler(request: Request, exc: MalformedGraph):
    return JSONResponse(
        status_code=422,
        content={
            "error": "malformed_graph",
            "message": str(exc),
            "template_id": exc.template_id,
            "problems": exc.problems,
        },
    )


async def unknown_template_handler(request: Request, exc: UnknownTemplateError):
    return JSONResponse(
        status_code=404,
        content={"error": "unknown_template", "message": str(exc)},
    )


async def baseline_error_handler(request: Request, exc: BaselineExecutionError):
    logger.error("baseline_execution_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={"error": "processing_error", "message": "The message could not be processed"},
    )


async def transient_error_handler(request: Request, exc: TransientProcessingError):
    logger.warning("transient_processing_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"error": "temporarily_unavailable", "message": "Please retry shortly"},
        headers={"Retry-After": "1"},
    )


# =============================================================================
# Application Factory
# =============================================================================


def create_app(
    settings: Optional[Settings] = None,
    processor: Optional[ConversationProcessor] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Application settings
        processor: Pre-built processor (tests inject their own)

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    processor = processor or ConversationProcessor.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("service_starting", service=settings.service_name, port=settings.port)
        yield
        logger.info("service_stopping", service=settings.service_name)
        await processor.close()

    app = FastAPI(
        title="Convoflow",
        description="Conversation flow execution with dual-engine routing",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.processor = processor

    app.add_exception_handler(MalformedGraph, malformed_graph_handler)
    app.add_exception_handler(UnknownTemplateError, unknown_template_handler)
    app.add_exception_handler(BaselineExecutionError, baseline_error_handler)
    app.add_exception_handler(TransientProcessingError, transient_error_handler)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(service=settings.service_name, timestamp=utcnow())

    @app.put("/v1/templates/{template_id}", response_model=TemplateResponse)
    async def put_template(template_id: str, request: TemplateRequest):
        graph = await processor.registry.register(
            template_id,
            request.model_dump(exclude_none=True),
            version=request.version,
        )
        processor.router.invalidate(template_id=template_id)
        return TemplateResponse(template_id=template_id, version=graph.version, node_count=len(graph))

    @app.post("/v1/messages", response_model=MessageResponse)
    async def post_message(request: MessageRequest):
        prior = None
        if request.prior_state:
            try:
                prior = ConversationState.from_dict(request.prior_state)
            except (KeyError, TypeError, ValueError) as e:
                raise HTTPException(status_code=400, detail=f"Invalid prior_state: {e}")

        result = await processor.process_message(
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            session_id=request.session_id,
            template_id=request.template_id,
            message_text=request.message,
            prior_state=prior,
        )
        return MessageResponse(**result.to_dict())

    @app.delete("/v1/sessions/{tenant_id}/{user_id}/{session_id}")
    async def reset_session(tenant_id: str, user_id: str, session_id: str):
        removed = await processor.reset_session(tenant_id, user_id, session_id)
        return {"reset": removed}

    @app.get("/v1/metrics/{tenant_id}")
    async def get_metrics(
        tenant_id: str,
        engine: Optional[EngineVariant] = None,
        template_id: Optional[str] = None,
        start: Optional[datetime] = Query(None, alias="from"),
        end: Optional[datetime] = Query(None, alias="to"),
    ):
        aggregate = processor.metrics.get_aggregated_metrics(
            tenant_id, engine=engine, start=start, end=end, template_id=template_id
        )
        return {"tenant_id": tenant_id, "metrics": aggregate.to_dict()}

    @app.get("/v1/metrics/{tenant_id}/comparison")
    async def compare_engines(tenant_id: str, template_id: Optional[str] = None):
        comparison = processor.metrics.compare_engines(tenant_id, template_id)
        return {
            "tenant_id": tenant_id,
            "engines": {name: aggregate.to_dict() for name, aggregate in comparison.items()},
        }

    @app.get("/v1/metrics/{tenant_id}/fallbacks")
    async def list_fallbacks(tenant_id: str, limit: int = 100):
        events = processor.metrics.fallback_events(tenant_id, limit)
        return {"tenant_id": tenant_id, "fallbacks": [event.to_dict() for event in events]}

    return app


def main() -> None:
    """Run the service with uvicorn."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
