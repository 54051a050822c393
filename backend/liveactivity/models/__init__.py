"""Database models."""
from .push_token import PushToken

__all__ = ["PushToken"]
