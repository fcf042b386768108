#!/usr/bin/env python3
"""
Recommendation Delivery API
===========================

FastAPI app for submission delivery: creating submissions for finalized
recommendations, receiving university confirmations, live status updates
over SSE and operator tooling.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ...core.submissions import SubmissionPipeline
from ...core.submissions.lifecycle import pipeline_lifespan
from ..shared.middleware import register_error_handlers, TraceMiddleware
from ..shared.routers import events_router, health_router
from ..shared.security import SecurityMiddleware
from ..shared.sse import SSEManager
from .routers import admin_router, confirmations_router, submissions_router

API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("API_PORT", "9300"))
SERVICE_NAME = "recdelivery-backend"

logger = logging.getLogger(__name__)


def init_observability():
    """Initialize observability components (tracing, metrics, logging)."""
    from ...core.observability import init_tracing, init_metrics, configure_logging

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    otel_enabled = os.getenv("OTEL_ENABLED", "false").lower() == "true"
    console_export = os.getenv("OTEL_CONSOLE_EXPORT", "false").lower() == "true"

    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=os.getenv("LOG_STRUCTURED", "true").lower() == "true",
        service_name=SERVICE_NAME
    )

    if otel_enabled or otlp_endpoint:
        init_tracing(
            service_name=SERVICE_NAME,
            service_version=os.getenv("APP_VERSION", "1.0.0"),
            otlp_endpoint=otlp_endpoint,
            console_export=console_export,
            sample_ratio=float(os.getenv("OTEL_TRACES_SAMPLER_ARG", "1.0")),
        )
        init_metrics(
            service_name=SERVICE_NAME,
            otlp_endpoint=otlp_endpoint,
            console_export=console_export
        )
        logger.info("OpenTelemetry observability initialized")


def create_app(
    pipeline: Optional[SubmissionPipeline] = None,
    sse_manager: Optional[SSEManager] = None,
) -> FastAPI:
    """
    Build the API.

    With no pipeline, the lifespan builds one from the environment, starts
    its loops and closes it on shutdown. A pipeline passed in is used as-is
    and its lifecycle stays with the caller.
    """
    sessions = sse_manager or SSEManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.sse_manager = sessions
        if pipeline is not None:
            app.state.pipeline = pipeline
            yield
            return

        init_observability()
        async with pipeline_lifespan(sessions=sessions) as built:
            app.state.pipeline = built
            yield

    app = FastAPI(
        title="Recommendation Delivery API",
        description="Submission delivery and confirmation tracking",
        version="1.0.0",
        lifespan=lifespan
    )

    # State is also set eagerly so transports that skip lifespan still work
    app.state.sse_manager = sessions
    if pipeline is not None:
        app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.add_middleware(TraceMiddleware)
    app.add_middleware(SecurityMiddleware)

    app.include_router(health_router)
    app.include_router(submissions_router)
    app.include_router(confirmations_router)
    app.include_router(events_router)
    app.include_router(admin_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.api.delivery.main:app",
        host=API_HOST,
        port=API_PORT,
    )
