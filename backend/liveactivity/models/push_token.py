"""PushToken model - Live Activity and device push tokens."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint

from ..database import Base


class PushToken(Base):
    """A push token registered by a device.

    ``activity_key`` holds the activity id for activity tokens and an empty
    string for every other kind, so the unique constraint also holds on
    databases where NULLs never collide.
    """
    
    __tablename__ = "live_activity_tokens"
    __table_args__ = (
        UniqueConstraint("device_id", "kind", "activity_key", name="uq_token_identity"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False, index=True)  # push_to_start, activity_token, apns_token
    activity_key = Column(String, nullable=False, default="")
    token = Column(String, nullable=False)
    bundle_id = Column(String, nullable=True)
    grade = Column(Integer, nullable=True)  # 1-3
    class_number = Column(Integer, nullable=True)  # 1-11
    client_timestamp = Column(Integer, nullable=True)  # Unix seconds reported by the device
    registered_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
