"""Lifecycle payloads sent to devices.

Payloads never carry class or period content. The app recomputes what to
display from its own timetable data when it receives one of the markers
below.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Transition(str, Enum):
    """Lifecycle transitions that produce a fan-out."""
    START = "start"
    UPDATE = "update"
    END = "end"


# data.type marker the app switches on
MESSAGE_TYPES = {
    Transition.START: "start_live_activity",
    Transition.UPDATE: "wake_live_activity",
    Transition.END: "stop_live_activity",
}

DEFAULT_ALERTS = {
    Transition.START: ("시간표 Live Activity 시작", "학교 시간이 시작되었습니다. Live Activity가 활성화됩니다."),
    Transition.END: ("시간표 Live Activity 종료", "학교 시간이 종료되었습니다. Live Activity가 비활성화됩니다."),
}

ACTIVITY_ATTRIBUTES_TYPE = "ClassActivityAttributes"
ACTIVITY_ATTRIBUTES = {"schoolId": "yangcheon"}


@dataclass(frozen=True)
class LifecyclePayload:
    """Transport independent description of one lifecycle message."""
    transition: Transition
    message_type: str
    timestamp: int
    title: Optional[str] = None
    body: Optional[str] = None
    dismissal_date: Optional[int] = None
    attributes_type: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_silent(self) -> bool:
        """Wake/update messages have no visible alert."""
        return self.title is None and self.body is None

    @property
    def data(self) -> Dict[str, str]:
        """Custom data delivered next to the aps dictionary."""
        return {"type": self.message_type}


def _int_or_none(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def build_payload(
    transition: Transition,
    data: Optional[Dict[str, Any]] = None,
    now: Optional[float] = None,
) -> LifecyclePayload:
    """Build the payload for a transition.

    ``data`` comes from the manual control request. Only ``alertTitle``,
    ``alertBody`` and ``dismissalDate`` are honoured; anything else is
    ignored so no schedule content leaks into a push.
    """
    transition = Transition(transition)
    data = data or {}
    timestamp = int(now if now is not None else time.time())

    if transition == Transition.UPDATE:
        return LifecyclePayload(
            transition=transition,
            message_type=MESSAGE_TYPES[transition],
            timestamp=timestamp,
        )

    default_title, default_body = DEFAULT_ALERTS[transition]
    title = data.get("alertTitle") or default_title
    body = data.get("alertBody") or default_body

    if transition == Transition.START:
        return LifecyclePayload(
            transition=transition,
            message_type=MESSAGE_TYPES[transition],
            timestamp=timestamp,
            title=title,
            body=body,
            attributes_type=ACTIVITY_ATTRIBUTES_TYPE,
            attributes=dict(ACTIVITY_ATTRIBUTES),
        )

    dismissal_date = _int_or_none(data.get("dismissalDate"))
    return LifecyclePayload(
        transition=transition,
        message_type=MESSAGE_TYPES[transition],
        timestamp=timestamp,
        title=title,
        body=body,
        dismissal_date=dismissal_date if dismissal_date is not None else timestamp,
    )
