"""Live Activity request/response schemas."""
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TokenRegistration(BaseModel):
    """Token registration sent by the app."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["push_to_start", "activity_token", "apns_token"]
    token: str = Field(min_length=1)
    activity_id: Optional[str] = Field(default=None, alias="activityId")
    grade: Optional[int] = Field(default=None, ge=1, le=3)
    class_number: Optional[int] = Field(default=None, alias="classNumber", ge=1, le=11)
    bundle_id: str = Field(alias="bundleId", min_length=1)
    device_id: str = Field(alias="deviceId", min_length=1)
    timestamp: float  # Unix seconds on the device

    @model_validator(mode="after")
    def _activity_id_required_for_activity_tokens(self):
        if self.type == "activity_token" and not (self.activity_id or "").strip():
            raise ValueError("activityId is required for activity_token")
        return self


class ControlRequest(BaseModel):
    """Manual lifecycle trigger."""
    action: Literal["start", "update", "end"]
    data: Optional[Dict[str, Any]] = None


class ApiResponse(BaseModel):
    """Envelope for every successful response."""
    success: bool = True
    message: str = ""
    data: Any = None
