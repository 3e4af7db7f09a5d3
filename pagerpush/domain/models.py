from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import time
from typing import Any
from uuid import uuid4

from pagerpush.core.errors import PayloadValidationError


class NotificationKind(str, Enum):
    ALERT = "alert"
    SILENT = "silent"
    LIVE_ACTIVITY = "liveactivity"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DRAINING = "draining"


@dataclass(frozen=True)
class Recipient:
    # Read-only view of the user storage row; the two tokens live in different namespaces.
    id: str
    device_token: str
    live_activity_token: str | None = None
    display_name: str | None = None
    handle: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.handle or self.id


@dataclass(frozen=True)
class SignedCredential:
    token: str
    issued_at: int


@dataclass(frozen=True)
class SendResult:
    accepted: bool
    status_code: int
    reason: str | None = None
    apns_id: str | None = None

    @property
    def invalid_token(self) -> bool:
        # Dead address tokens: retrying the same token can never succeed.
        if self.accepted:
            return False
        if self.status_code == 410:
            return True
        return self.status_code == 400 and self.reason in INVALID_TOKEN_REASONS

    @property
    def transient(self) -> bool:
        return not self.accepted and (self.status_code >= 500 or self.status_code == 429)


INVALID_TOKEN_REASONS = frozenset({"BadDeviceToken", "Unregistered", "DeviceTokenNotForTopic"})


@dataclass(frozen=True)
class AlertPayload:
    device_token: str
    title: str | None = None
    body: str | None = None
    sound: str | None = None
    badge: int | None = None
    content_available: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_token": self.device_token,
            "title": self.title,
            "body": self.body,
            "sound": self.sound,
            "badge": self.badge,
            "content_available": self.content_available,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AlertPayload:
        return cls(
            device_token=str(raw["device_token"]),
            title=raw.get("title"),
            body=raw.get("body"),
            sound=raw.get("sound"),
            badge=raw.get("badge"),
            content_available=bool(raw.get("content_available", False)),
            data=dict(raw.get("data") or {}),
        )


@dataclass(frozen=True)
class LiveActivityContentState:
    sender: str
    message: str
    timestamp: str
    is_demo: bool = False
    message_index: int = 1
    total_messages: int = 1

    def to_wire(self) -> dict[str, Any]:
        # Key names match the Codable ContentState on the device.
        return {
            "sender": self.sender,
            "message": self.message,
            "timestamp": self.timestamp,
            "isDemo": self.is_demo,
            "messageIndex": self.message_index,
            "totalMessages": self.total_messages,
        }

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> LiveActivityContentState:
        return cls(
            sender=str(raw["sender"]),
            message=str(raw["message"]),
            timestamp=str(raw["timestamp"]),
            is_demo=bool(raw.get("isDemo", False)),
            message_index=int(raw.get("messageIndex", 1)),
            total_messages=int(raw.get("totalMessages", 1)),
        )


@dataclass(frozen=True)
class MessageFallback:
    # Everything needed to re-send a message as a plain alert, minus any address token.
    sender_name: str
    message_text: str
    message_id: str


@dataclass(frozen=True)
class LiveActivityPayload:
    push_token: str
    content_state: LiveActivityContentState
    alert_title: str | None = None
    alert_body: str | None = None
    fallback: MessageFallback | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "push_token": self.push_token,
            "content_state": self.content_state.to_wire(),
            "alert_title": self.alert_title,
            "alert_body": self.alert_body,
            "fallback": (
                {
                    "sender_name": self.fallback.sender_name,
                    "message_text": self.fallback.message_text,
                    "message_id": self.fallback.message_id,
                }
                if self.fallback is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LiveActivityPayload:
        fallback_raw = raw.get("fallback")
        return cls(
            push_token=str(raw["push_token"]),
            content_state=LiveActivityContentState.from_wire(raw["content_state"]),
            alert_title=raw.get("alert_title"),
            alert_body=raw.get("alert_body"),
            fallback=MessageFallback(**fallback_raw) if fallback_raw else None,
        )


@dataclass(frozen=True)
class NotificationJob:
    kind: NotificationKind
    user_id: str
    alert: AlertPayload | None = None
    live_activity: LiveActivityPayload | None = None
    id: str = field(default_factory=lambda: uuid4().hex)
    attempt_count: int = 0
    max_attempts: int = 3
    status: JobStatus = JobStatus.WAITING
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    last_error: str | None = None

    def __post_init__(self) -> None:
        # A job carries exactly the payload its kind addresses.
        if self.kind == NotificationKind.LIVE_ACTIVITY:
            if self.live_activity is None or self.alert is not None:
                raise PayloadValidationError("liveactivity jobs require only a live_activity payload")
            if not self.live_activity.push_token:
                raise PayloadValidationError("liveactivity jobs require a push-to-start token")
        else:
            if self.alert is None or self.live_activity is not None:
                raise PayloadValidationError(f"{self.kind.value} jobs require only an alert payload")
            if not self.alert.device_token:
                raise PayloadValidationError(f"{self.kind.value} jobs require a device token")

    @property
    def address(self) -> str:
        if self.live_activity is not None:
            return self.live_activity.push_token
        assert self.alert is not None
        return self.alert.device_token

    def evolve(self, **changes: Any) -> NotificationJob:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "user_id": self.user_id,
            "alert": self.alert.to_dict() if self.alert is not None else None,
            "live_activity": self.live_activity.to_dict() if self.live_activity is not None else None,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> NotificationJob:
        try:
            return cls(
                id=str(raw["id"]),
                kind=NotificationKind(raw["kind"]),
                user_id=str(raw["user_id"]),
                alert=AlertPayload.from_dict(raw["alert"]) if raw.get("alert") else None,
                live_activity=(
                    LiveActivityPayload.from_dict(raw["live_activity"]) if raw.get("live_activity") else None
                ),
                attempt_count=int(raw.get("attempt_count", 0)),
                max_attempts=int(raw.get("max_attempts", 3)),
                status=JobStatus(raw.get("status", JobStatus.WAITING.value)),
                created_at=float(raw.get("created_at", 0.0)),
                updated_at=float(raw.get("updated_at", 0.0)),
                last_error=raw.get("last_error"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PayloadValidationError(f"malformed notification job: {exc}") from exc


@dataclass(frozen=True)
class QueueMetrics:
    waiting: int
    active: int
    completed: int
    failed: int

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
        }
