"""Services for token storage, push delivery, and lifecycle scheduling."""
from .token_store import TokenStore
from .push_gateway import PushGateway, APNsPushGateway, FCMPushGateway
from .scheduler import ActivityLifecycleScheduler, ScheduleWindow

__all__ = [
    "TokenStore",
    "PushGateway",
    "APNsPushGateway",
    "FCMPushGateway",
    "ActivityLifecycleScheduler",
    "ScheduleWindow",
]
