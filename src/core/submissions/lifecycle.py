"""
Pipeline Lifecycle Management

Integrates the submission pipeline with the FastAPI application lifecycle.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from ..database import DatabaseAdapter
from .collaborators import SessionRegistry
from .config import PipelineConfig
from .pipeline import SubmissionPipeline

logger = logging.getLogger(__name__)


@asynccontextmanager
async def pipeline_lifespan(
    config: Optional[PipelineConfig] = None,
    sessions: Optional[SessionRegistry] = None,
    db: Optional[DatabaseAdapter] = None,
) -> AsyncIterator[SubmissionPipeline]:
    """
    Lifespan context manager for the pipeline.

    Usage in FastAPI:
        from src.core.submissions.lifecycle import pipeline_lifespan

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with pipeline_lifespan(sessions=sse_manager) as pipeline:
                app.state.pipeline = pipeline
                yield

        app = FastAPI(lifespan=lifespan)
    """
    logger.info("Starting submission pipeline...")
    pipeline = await SubmissionPipeline.from_environment(config=config, sessions=sessions, db=db)
    await pipeline.start()
    try:
        yield pipeline
    finally:
        logger.info("Stopping submission pipeline...")
        await pipeline.close()
