"""Pydantic schemas for API request/response models."""
from .live_activity import (
    TokenRegistration,
    ControlRequest,
    ApiResponse,
)

__all__ = [
    "TokenRegistration",
    "ControlRequest",
    "ApiResponse",
]
