"""
Health Check Endpoints

Provides health, readiness, and liveness endpoints for container orchestration.
"""

from datetime import datetime, timezone
from typing import Dict, Any
import os

from fastapi import APIRouter, Request, Response

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check.

    Returns 200 if the service is running.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": os.getenv("APP_VERSION", "1.0.0")
    }


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness check: 200 while the process is alive."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, Any]:
    """
    Readiness check.

    Returns 200 if the database answers, 503 otherwise. The state of the
    background loops is reported but does not affect readiness.
    """
    checks = {}
    all_healthy = True

    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        checks["pipeline"] = "not initialized"
        all_healthy = False
    else:
        try:
            await pipeline.db.fetchval("SELECT 1")
            checks["database"] = "healthy"
        except Exception as e:
            checks["database"] = f"unhealthy: {str(e)[:100]}"
            all_healthy = False

        checks["processor"] = "running" if pipeline.processor.running else "stopped"
        checks["monitoring"] = "running" if pipeline.monitoring.running else "stopped"

    if not all_healthy:
        response.status_code = 503

    return {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
