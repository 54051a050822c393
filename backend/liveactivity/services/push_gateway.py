"""Push gateway - delivers lifecycle payloads over APNs or FCM.

``send`` never raises for per-token problems. It reports one of three
outcomes instead:

- ``delivered``: the transport accepted the message
- ``transient_failure``: timeout, rate limit or server error; the next
  scheduled tick is the retry
- ``invalid_token``: the token is unregistered or expired; the caller must
  drop it from the store

Only errors that affect every message (bad payload, rejected credentials)
propagate, as ``PayloadError`` / ``FatalConfigurationError``.
"""
import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import firebase_admin
from aioapns import APNs, NotificationRequest, PushType
from firebase_admin import credentials, exceptions, messaging

from ..errors import FatalConfigurationError, PayloadError, PushGatewayError
from .payloads import LifecyclePayload, Transition
from .token_store import TokenKind, TokenRecord

logger = logging.getLogger(__name__)

# Priority values understood by APNs
PRIORITY_IMMEDIATE = 10
PRIORITY_BACKGROUND = 5

# APNs reasons meaning the token will never work again
APNS_INVALID_TOKEN_REASONS = {
    "BadDeviceToken",
    "Unregistered",
    "DeviceTokenNotForTopic",
    "ExpiredToken",
}

# APNs reasons meaning the message itself is broken
APNS_PAYLOAD_REASONS = {
    "BadPayload",
    "PayloadEmpty",
    "PayloadTooLarge",
    "BadPriority",
    "BadExpirationDate",
    "InvalidPushType",
}

# APNs reasons meaning our credentials or topic are wrong
APNS_CONFIG_REASONS = {
    "InvalidProviderToken",
    "MissingProviderToken",
    "BadCertificate",
    "BadCertificateEnvironment",
    "BadTopic",
    "TopicDisallowed",
    "MissingTopic",
}


class DeliveryOutcome(str, Enum):
    """Result of a single push attempt."""
    DELIVERED = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    INVALID_TOKEN = "invalid_token"


@dataclass
class DeliveryResult:
    """Outcome of delivering one payload to one token."""
    token: TokenRecord
    outcome: DeliveryOutcome
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "token": self.token.token[:16],
            "type": self.token.kind.value,
            "deviceId": self.token.device_id,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


class PushGateway:
    """Base gateway: bounded timeout and outcome logging around ``_deliver``."""

    name = "base"

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds

    async def send(self, token: TokenRecord, payload: LifecyclePayload) -> DeliveryResult:
        """Deliver ``payload`` to a single token.

        Args:
            token: Stored token to deliver to
            payload: Lifecycle payload to render for this transport

        Returns:
            DeliveryResult with the classified outcome

        Raises:
            PayloadError: The transport rejected the payload format
            FatalConfigurationError: The transport rejected our credentials
        """
        try:
            outcome, reason = await asyncio.wait_for(
                self._deliver(token, payload),
                timeout=self.timeout_seconds,
            )
        except PushGatewayError:
            raise
        except asyncio.TimeoutError:
            outcome, reason = DeliveryOutcome.TRANSIENT_FAILURE, "timeout"
        except Exception as e:
            outcome, reason = DeliveryOutcome.TRANSIENT_FAILURE, f"transport_error:{e}"

        if outcome == DeliveryOutcome.DELIVERED:
            logger.debug(f"{payload.message_type} delivered to {token.token[:16]}...")
        else:
            logger.warning(
                f"{payload.message_type} not delivered ({outcome.value}: {reason}) "
                f"to {token.kind.value} {token.token[:16]}... device={token.device_id}"
            )
        return DeliveryResult(token=token, outcome=outcome, reason=reason)

    async def _deliver(
        self,
        token: TokenRecord,
        payload: LifecyclePayload,
    ) -> Tuple[DeliveryOutcome, Optional[str]]:
        raise NotImplementedError

    async def close(self):
        """Release transport resources."""


# ---------------------------------------------------------------------------
# APNs
# ---------------------------------------------------------------------------

def render_apns_message(token: TokenRecord, payload: LifecyclePayload) -> Tuple[Dict[str, Any], str, int]:
    """Render the APNs JSON body for a token.

    Returns:
        Tuple of (message, push type name, priority). Push type is
        ``liveactivity`` for Live Activity tokens, otherwise ``alert`` or
        ``background``.
    """
    alert = None
    if not payload.is_silent:
        alert = {"title": payload.title, "body": payload.body}

    if token.kind in (TokenKind.PUSH_TO_START, TokenKind.ACTIVITY_TOKEN):
        aps: Dict[str, Any] = {
            "timestamp": payload.timestamp,
            "event": payload.transition.value,
        }
        if payload.transition == Transition.START:
            aps["attributes-type"] = payload.attributes_type
            aps["attributes"] = dict(payload.attributes)
            aps["input-push-token"] = 1
        if payload.dismissal_date is not None:
            aps["dismissal-date"] = payload.dismissal_date
        if alert:
            aps["alert"] = alert
            aps["sound"] = "default"
        priority = PRIORITY_BACKGROUND if payload.is_silent else PRIORITY_IMMEDIATE
        message = {"aps": aps}
        message.update(payload.data)
        return message, "liveactivity", priority

    # Raw device token: wake the notification service extension / app
    aps = {"content-available": 1}
    if alert:
        aps["alert"] = alert
        aps["mutable-content"] = 1
        aps["sound"] = "default"
        push_type, priority = "alert", PRIORITY_IMMEDIATE
    else:
        push_type, priority = "background", PRIORITY_BACKGROUND
    message = {"aps": aps}
    message.update(payload.data)
    return message, push_type, priority


def classify_apns_response(status: Any, reason: Optional[str]) -> Tuple[DeliveryOutcome, Optional[str]]:
    """Map an APNs status code and reason to a delivery outcome.

    Raises:
        PayloadError: For payload-level rejections
        FatalConfigurationError: For credential or topic rejections
    """
    status = str(status)
    if status == "200":
        return DeliveryOutcome.DELIVERED, None
    if status == "410" or reason in APNS_INVALID_TOKEN_REASONS:
        return DeliveryOutcome.INVALID_TOKEN, reason or f"status_{status}"
    if reason in APNS_PAYLOAD_REASONS or status == "413":
        raise PayloadError(f"APNs rejected payload: {reason or status}")
    if reason in APNS_CONFIG_REASONS or status == "403":
        raise FatalConfigurationError(f"APNs rejected credentials: {reason or status}")
    return DeliveryOutcome.TRANSIENT_FAILURE, reason or f"status_{status}"


class APNsPushGateway(PushGateway):
    """Direct APNs delivery with token-based (.p8) auth via aioapns."""

    name = "apns"

    def __init__(
        self,
        key_path: str,
        key_id: str,
        team_id: str,
        bundle_id: str,
        use_sandbox: bool = True,
        timeout_seconds: float = 10.0,
        client=None,
    ):
        super().__init__(timeout_seconds=timeout_seconds)
        self.bundle_id = bundle_id
        self.use_sandbox = use_sandbox

        if client is not None:
            self._client = client
            return

        try:
            # aioapns signs its JWT with the key contents, not a path
            with open(key_path) as key_file:
                key = key_file.read()
            self._client = APNs(
                key=key,
                key_id=key_id,
                team_id=team_id,
                topic=bundle_id,
                use_sandbox=use_sandbox,
            )
        except Exception as e:
            raise FatalConfigurationError(f"Failed to configure APNs client: {e}") from e
        logger.info(f"APNs client configured (sandbox={use_sandbox}, topic={bundle_id})")

    def topic_for(self, push_type: str) -> str:
        """APNs topic header; Live Activity pushes use a suffixed topic."""
        if push_type == "liveactivity":
            return f"{self.bundle_id}.push-type.liveactivity"
        return self.bundle_id

    async def _deliver(self, token, payload):
        message, push_type, priority = render_apns_message(token, payload)
        request = NotificationRequest(
            device_token=token.token,
            message=message,
            push_type=PushType(push_type),
            priority=priority,
            apns_topic=self.topic_for(push_type),
        )
        response = await self._client.send_notification(request)
        return classify_apns_response(response.status, response.description)


# ---------------------------------------------------------------------------
# FCM
# ---------------------------------------------------------------------------

def build_fcm_message(token: TokenRecord, payload: LifecyclePayload):
    """Build a firebase-admin Message for a registration token."""
    if payload.is_silent:
        notification = None
        aps = messaging.Aps(content_available=True)
        headers = {"apns-push-type": "background", "apns-priority": str(PRIORITY_BACKGROUND)}
    else:
        notification = messaging.Notification(title=payload.title, body=payload.body)
        aps = messaging.Aps(
            alert=messaging.ApsAlert(title=payload.title, body=payload.body),
            content_available=True,
            mutable_content=True,
            sound="default",
        )
        headers = {"apns-push-type": "alert", "apns-priority": str(PRIORITY_IMMEDIATE)}

    return messaging.Message(
        token=token.token,
        data=payload.data,
        notification=notification,
        apns=messaging.APNSConfig(headers=headers, payload=messaging.APNSPayload(aps=aps)),
        android=messaging.AndroidConfig(priority="high"),
    )


class FCMPushGateway(PushGateway):
    """Delivery through Firebase Cloud Messaging via firebase-admin."""

    name = "fcm"

    def __init__(self, credentials_path: str, timeout_seconds: float = 10.0, app=None):
        super().__init__(timeout_seconds=timeout_seconds)
        if app is not None:
            self._app = app
            return

        try:
            cred = credentials.Certificate(credentials_path)
            self._app = firebase_admin.initialize_app(cred, name="liveactivity")
        except (ValueError, IOError) as e:
            raise FatalConfigurationError(f"Failed to configure Firebase app: {e}") from e
        logger.info(f"Firebase app configured (project={self._app.project_id})")

    async def _deliver(self, token, payload):
        message = build_fcm_message(token, payload)
        try:
            await asyncio.to_thread(messaging.send, message, app=self._app)
        except (messaging.UnregisteredError, messaging.SenderIdMismatchError) as e:
            return DeliveryOutcome.INVALID_TOKEN, e.code
        except messaging.ThirdPartyAuthError as e:
            raise FatalConfigurationError(f"FCM rejected APNs credentials: {e}") from e
        except (exceptions.UnauthenticatedError, exceptions.PermissionDeniedError) as e:
            raise FatalConfigurationError(f"FCM rejected credentials: {e}") from e
        except exceptions.InvalidArgumentError as e:
            if "registration token" in str(e).lower():
                return DeliveryOutcome.INVALID_TOKEN, e.code
            raise PayloadError(f"FCM rejected payload: {e}") from e
        except exceptions.FirebaseError as e:
            return DeliveryOutcome.TRANSIENT_FAILURE, e.code
        return DeliveryOutcome.DELIVERED, None

    async def close(self):
        firebase_admin.delete_app(self._app)


def build_gateway(settings) -> PushGateway:
    """Create the configured gateway.

    Raises:
        FatalConfigurationError: Unknown provider or missing credentials
    """
    provider = (settings.push_provider or "").lower()

    if provider == "apns":
        missing = [
            name for name, value in (
                ("APNS_KEY_PATH", settings.apns_key_path),
                ("APNS_KEY_ID", settings.apns_key_id),
                ("APNS_TEAM_ID", settings.apns_team_id),
                ("APNS_BUNDLE_ID", settings.apns_bundle_id),
            ) if not value
        ]
        if missing:
            raise FatalConfigurationError(f"APNs not configured, missing: {', '.join(missing)}")
        if not os.path.isfile(settings.apns_key_path):
            raise FatalConfigurationError(f"APNs key file not found: {settings.apns_key_path}")
        return APNsPushGateway(
            key_path=settings.apns_key_path,
            key_id=settings.apns_key_id,
            team_id=settings.apns_team_id,
            bundle_id=settings.apns_bundle_id,
            use_sandbox=settings.apns_use_sandbox,
            timeout_seconds=settings.push_timeout_seconds,
        )

    if provider == "fcm":
        if not settings.fcm_credentials_path or not os.path.isfile(settings.fcm_credentials_path):
            raise FatalConfigurationError(
                f"FCM credentials file not found: {settings.fcm_credentials_path}"
            )
        return FCMPushGateway(
            credentials_path=settings.fcm_credentials_path,
            timeout_seconds=settings.push_timeout_seconds,
        )

    raise FatalConfigurationError(f"Unknown push provider: {settings.push_provider}")
