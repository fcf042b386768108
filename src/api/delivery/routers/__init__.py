"""Delivery API routers."""

from .admin import router as admin_router
from .confirmations import router as confirmations_router
from .submissions import router as submissions_router

__all__ = ["admin_router", "confirmations_router", "submissions_router"]
