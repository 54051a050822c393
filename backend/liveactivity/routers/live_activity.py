"""Live Activity API endpoints - token registration and lifecycle control."""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from ..errors import ValidationError
from ..schemas.live_activity import ApiResponse, ControlRequest, TokenRegistration
from ..services.payloads import Transition
from ..services.scheduler import ActivityLifecycleScheduler
from ..services.token_store import NewToken, TokenKind, TokenStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/live-activity", tags=["live-activity"])


def get_token_store(request: Request) -> TokenStore:
    return request.app.state.token_store


def get_lifecycle_scheduler(request: Request) -> ActivityLifecycleScheduler:
    return request.app.state.lifecycle_scheduler


async def require_control_key(
    request: Request,
    x_api_key: Optional[str] = Header(None),
):
    """Check X-API-Key when a control key is configured."""
    expected = getattr(request.app.state, "control_api_key", None)
    if not expected:
        return
    if not x_api_key or not hmac.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid API key")


async def _register(
    body: TokenRegistration,
    expected_kind: TokenKind,
    store: TokenStore,
) -> dict:
    if body.type != expected_kind.value:
        raise ValidationError(
            "Token type does not match endpoint",
            [{
                "field": "type",
                "message": f"type must be '{expected_kind.value}' for this endpoint",
                "type": "literal_error",
            }],
        )

    record = await store.register(NewToken(
        kind=expected_kind,
        token=body.token,
        device_id=body.device_id,
        bundle_id=body.bundle_id,
        activity_id=body.activity_id if expected_kind == TokenKind.ACTIVITY_TOKEN else None,
        grade=body.grade,
        class_number=body.class_number,
        client_timestamp=int(body.timestamp),
    ))
    return {
        "tokenId": record.id,
        "activityId": record.activity_id,
        "grade": record.grade,
        "classNumber": record.class_number,
        "registeredAt": record.registered_at.isoformat() if record.registered_at else None,
    }


@router.post("/push-to-start", response_model=ApiResponse)
async def register_push_to_start(
    body: TokenRegistration,
    store: TokenStore = Depends(get_token_store),
):
    """Register a push-to-start token (starts new activities)."""
    data = await _register(body, TokenKind.PUSH_TO_START, store)
    return ApiResponse(message="Push-to-start token registered successfully", data=data)


@router.post("/activity-token", response_model=ApiResponse)
async def register_activity_token(
    body: TokenRegistration,
    store: TokenStore = Depends(get_token_store),
):
    """Register the update token of one running activity."""
    data = await _register(body, TokenKind.ACTIVITY_TOKEN, store)
    return ApiResponse(message="Activity token registered successfully", data=data)


@router.post("/apns-token", response_model=ApiResponse)
async def register_apns_token(
    body: TokenRegistration,
    store: TokenStore = Depends(get_token_store),
):
    """Register a raw device token used as a fallback."""
    data = await _register(body, TokenKind.APNS_TOKEN, store)
    return ApiResponse(message="APNs token registered successfully", data=data)


async def _control(
    body: ControlRequest,
    transition: Transition,
    scheduler: ActivityLifecycleScheduler,
) -> dict:
    if body.action != transition.value:
        raise ValidationError(
            "Action does not match endpoint",
            [{
                "field": "action",
                "message": f"action must be '{transition.value}' for this endpoint",
                "type": "literal_error",
            }],
        )
    summary = await scheduler.trigger_transition(transition, body.data, source="http")
    logger.info(f"Live Activity {transition.value} requested for entire school")
    return summary.to_dict(include_results=True)


@router.post("/start", response_model=ApiResponse, dependencies=[Depends(require_control_key)])
async def start_live_activity(
    body: ControlRequest,
    scheduler: ActivityLifecycleScheduler = Depends(get_lifecycle_scheduler),
):
    """Start the Live Activity on every device now."""
    data = await _control(body, Transition.START, scheduler)
    return ApiResponse(message="Live Activity start request sent", data=data)


@router.post("/update", response_model=ApiResponse, dependencies=[Depends(require_control_key)])
async def update_live_activity(
    body: ControlRequest,
    scheduler: ActivityLifecycleScheduler = Depends(get_lifecycle_scheduler),
):
    """Ask running activities to refresh from their local schedule data.

    The push carries no content state; the app recomputes it.
    """
    data = await _control(body, Transition.UPDATE, scheduler)
    return ApiResponse(message="Live Activity update request sent (existing logic refresh)", data=data)


@router.post("/end", response_model=ApiResponse, dependencies=[Depends(require_control_key)])
async def end_live_activity(
    body: ControlRequest,
    scheduler: ActivityLifecycleScheduler = Depends(get_lifecycle_scheduler),
):
    """End running activities now."""
    data = await _control(body, Transition.END, scheduler)
    return ApiResponse(message="Live Activity end request sent", data=data)


@router.get("/tokens", response_model=ApiResponse)
async def list_tokens(store: TokenStore = Depends(get_token_store)):
    """All registered tokens (diagnostic)."""
    grouped = await store.list_all()
    push_to_start = [r.to_dict() for r in grouped[TokenKind.PUSH_TO_START.value]]
    return ApiResponse(data={
        "pushToStartTokens": push_to_start,
        "activityTokens": [r.to_dict() for r in grouped[TokenKind.ACTIVITY_TOKEN.value]],
        "apnsTokens": [r.to_dict() for r in grouped[TokenKind.APNS_TOKEN.value]],
        "totalDevices": len({r["deviceId"] for r in push_to_start}),
    })


@router.get("/stats", response_model=ApiResponse)
async def token_stats(store: TokenStore = Depends(get_token_store)):
    """Token counts per kind."""
    return ApiResponse(data=await store.stats())


@router.get("/schedule-status", response_model=ApiResponse)
async def schedule_status(scheduler: ActivityLifecycleScheduler = Depends(get_lifecycle_scheduler)):
    """Current schedule window evaluation and scheduler state."""
    return ApiResponse(data=scheduler.status())


@router.delete("/devices/{device_id}", response_model=ApiResponse)
async def remove_device_tokens(
    device_id: str,
    store: TokenStore = Depends(get_token_store),
):
    """Remove every token registered by a device."""
    removed = await store.remove_device(device_id)
    return ApiResponse(
        message=f"Removed {removed} tokens" if removed else "No tokens registered for device",
        data={"deviceId": device_id, "removed": removed},
    )
