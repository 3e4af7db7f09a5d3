from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import time
from typing import Any

from pagerpush.core.errors import PayloadValidationError
from pagerpush.domain.models import (
    AlertPayload,
    LiveActivityPayload,
    NotificationJob,
    NotificationKind,
)


PUSH_TYPE_ALERT = "alert"
PUSH_TYPE_BACKGROUND = "background"
PUSH_TYPE_LIVE_ACTIVITY = "liveactivity"

# Gateway priorities: 10 delivers immediately, 5 lets the device batch for power.
PRIORITY_IMMEDIATE = 10
PRIORITY_BACKGROUND = 5

DEFAULT_SOUND = "default"

# Must match the ActivityAttributes type and fields compiled into the widget extension.
LIVE_ACTIVITY_ATTRIBUTES_TYPE = "PagerActivityAttributes"
LIVE_ACTIVITY_ATTRIBUTES = {"activityType": "message"}


@dataclass(frozen=True)
class SendSpec:
    address: str
    payload: dict[str, Any]
    topic: str
    push_type: str
    priority: int


def preview_text(text: str, limit: int = 100) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


def iso_timestamp(epoch_s: float) -> str:
    # JavaScript-style ISO-8601: millisecond precision, Z suffix.
    moment = datetime.fromtimestamp(epoch_s, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def live_activity_topic(bundle_id: str) -> str:
    return f"{bundle_id}.push-type.liveactivity"


def _merge_custom_data(aps: dict[str, Any], data: dict[str, Any]) -> dict[str, Any]:
    if "aps" in data:
        raise PayloadValidationError("custom data must not contain the reserved 'aps' key")
    return {**data, "aps": aps}


def build_alert_payload(alert: AlertPayload) -> dict[str, Any]:
    aps: dict[str, Any] = {}
    if alert.title is not None or alert.body is not None:
        aps["alert"] = {key: value for key, value in (("title", alert.title), ("body", alert.body)) if value is not None}
        aps["sound"] = alert.sound or DEFAULT_SOUND
    elif alert.sound:
        aps["sound"] = alert.sound
    if alert.badge is not None:
        aps["badge"] = int(alert.badge)
    if alert.content_available:
        aps["content-available"] = 1
    if not aps:
        raise PayloadValidationError("alert notification has no visible content")
    return _merge_custom_data(aps, alert.data)


def build_silent_payload(alert: AlertPayload) -> dict[str, Any]:
    # Background pushes may carry only the wake flag; alert, sound and badge make them visible.
    return _merge_custom_data({"content-available": 1}, alert.data)


def build_live_activity_payload(live: LiveActivityPayload, *, now: float | None = None) -> dict[str, Any]:
    state = live.content_state
    return {
        "aps": {
            "timestamp": int(time.time() if now is None else now),
            "event": "start",
            "content-state": state.to_wire(),
            "alert": {
                "title": live.alert_title or state.sender,
                "body": live.alert_body or state.message,
            },
            "sound": DEFAULT_SOUND,
        },
        "attributes-type": LIVE_ACTIVITY_ATTRIBUTES_TYPE,
        "attributes": dict(LIVE_ACTIVITY_ATTRIBUTES),
    }


def send_spec_for(job: NotificationJob, *, bundle_id: str, now: float | None = None) -> SendSpec:
    if job.kind == NotificationKind.LIVE_ACTIVITY:
        assert job.live_activity is not None
        return SendSpec(
            address=job.live_activity.push_token,
            payload=build_live_activity_payload(job.live_activity, now=now),
            topic=live_activity_topic(bundle_id),
            push_type=PUSH_TYPE_LIVE_ACTIVITY,
            priority=PRIORITY_IMMEDIATE,
        )
    assert job.alert is not None
    if job.kind == NotificationKind.SILENT:
        return SendSpec(
            address=job.alert.device_token,
            payload=build_silent_payload(job.alert),
            topic=bundle_id,
            push_type=PUSH_TYPE_BACKGROUND,
            priority=PRIORITY_BACKGROUND,
        )
    return SendSpec(
        address=job.alert.device_token,
        payload=build_alert_payload(job.alert),
        topic=bundle_id,
        push_type=PUSH_TYPE_ALERT,
        priority=PRIORITY_IMMEDIATE,
    )
