"""API routers."""
from .live_activity import router as live_activity_router

__all__ = ["live_activity_router"]
