from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Iterable, Protocol, Union

from pagerpush.core.config import Settings, get_settings
from pagerpush.core.errors import PayloadValidationError
from pagerpush.domain.models import (
    AlertPayload,
    LiveActivityContentState,
    LiveActivityPayload,
    MessageFallback,
    NotificationJob,
    NotificationKind,
    Recipient,
)
from pagerpush.services.notifications.payloads import DEFAULT_SOUND, iso_timestamp, preview_text
from pagerpush.services.notifications.queue import JobQueue, priority_for_kind
from pagerpush.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ClearTokenCallback = Callable[[str], Union[Awaitable[None], None]]

_FRIEND_STATUSES = {"online", "offline"}


class RecipientDirectory(Protocol):
    # Read side of user storage; may be implemented sync or async.
    def get_recipient(self, user_id: str) -> Recipient | None | Awaitable[Recipient | None]: ...


class InMemoryRecipientDirectory:
    """Dict-backed recipient store for local runs and tests.

    ``clear_live_activity_token`` has the callback signature the dispatcher
    expects, so one instance can serve both collaborator roles.
    """

    def __init__(self, recipients: Iterable[Recipient] = ()) -> None:
        self._recipients: dict[str, Recipient] = {recipient.id: recipient for recipient in recipients}

    def upsert(self, recipient: Recipient) -> None:
        self._recipients[recipient.id] = recipient

    def get_recipient(self, user_id: str) -> Recipient | None:
        return self._recipients.get(user_id)

    def clear_live_activity_token(self, user_id: str) -> None:
        recipient = self._recipients.get(user_id)
        if recipient is not None:
            self._recipients[user_id] = replace(recipient, live_activity_token=None)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def is_valid_live_activity_token(token: str | None, *, min_length: int = 32) -> bool:
    # Push-to-start tokens are long hex strings; anything shorter is a stale placeholder.
    return isinstance(token, str) and len(token) >= min_length


class NotificationDispatcher:
    """Entry point for domain code: decides which notification to enqueue.

    Every public method returns once the job is durably queued. Delivery
    outcomes are handled by the worker pool and never reach the caller;
    only queue failures propagate.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        recipients: RecipientDirectory | None = None,
        settings: Settings | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._queue = queue
        self._recipients = recipients
        self._time = time_source or time.time
        self._min_token_length = settings.live_activity_min_token_length
        self._preview_chars = settings.message_preview_max_chars
        self._clear_token_callback: ClearTokenCallback | None = None

    def set_clear_live_activity_token_callback(self, callback: ClearTokenCallback | None) -> None:
        self._clear_token_callback = callback

    async def _enqueue(self, job: NotificationJob) -> NotificationJob:
        stored = await self._queue.enqueue(job, priority_for_kind(job.kind))
        increment_counter(f"notification_enqueued_total.{job.kind.value}")
        logger.info("notification_enqueued job_id=%s kind=%s user_id=%s", stored.id, job.kind.value, job.user_id)
        return stored

    async def notify_alert(
        self,
        recipient: Recipient,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
        *,
        badge: int | None = None,
        sound: str = DEFAULT_SOUND,
    ) -> NotificationJob:
        job = NotificationJob(
            kind=NotificationKind.ALERT,
            user_id=recipient.id,
            alert=AlertPayload(
                device_token=recipient.device_token,
                title=title,
                body=body,
                sound=sound,
                badge=badge,
                data=dict(data or {}),
            ),
        )
        return await self._enqueue(job)

    async def notify_silent(self, recipient: Recipient, data: dict[str, Any]) -> NotificationJob:
        job = NotificationJob(
            kind=NotificationKind.SILENT,
            user_id=recipient.id,
            alert=AlertPayload(
                device_token=recipient.device_token,
                content_available=True,
                data=dict(data),
            ),
        )
        return await self._enqueue(job)

    async def notify_message_received(
        self,
        recipient: Recipient,
        sender_name: str,
        text: str,
        message_id: str,
    ) -> NotificationJob:
        return await self.notify_alert(
            recipient,
            f"📟 {sender_name}",
            preview_text(text, self._preview_chars),
            {"type": "MESSAGE", "messageId": message_id, "senderName": sender_name},
            badge=1,
        )

    async def _enqueue_live_activity(
        self,
        recipient: Recipient,
        sender_name: str,
        text: str,
        message_id: str,
    ) -> NotificationJob:
        assert recipient.live_activity_token is not None
        preview = preview_text(text, self._preview_chars)
        job = NotificationJob(
            kind=NotificationKind.LIVE_ACTIVITY,
            user_id=recipient.id,
            live_activity=LiveActivityPayload(
                push_token=recipient.live_activity_token,
                content_state=LiveActivityContentState(
                    sender=sender_name,
                    message=preview,
                    timestamp=iso_timestamp(self._time()),
                    is_demo=False,
                    message_index=1,
                    total_messages=1,
                ),
                alert_title=sender_name,
                alert_body=preview,
                fallback=MessageFallback(sender_name=sender_name, message_text=text, message_id=message_id),
            ),
        )
        return await self._enqueue(job)

    async def send_message_notification(
        self,
        recipient: Recipient,
        sender_name: str,
        text: str,
        message_id: str,
    ) -> NotificationJob:
        # Prefer starting a Live Activity; the worker falls back to an alert if the token turns out dead.
        if is_valid_live_activity_token(recipient.live_activity_token, min_length=self._min_token_length):
            return await self._enqueue_live_activity(recipient, sender_name, text, message_id)
        logger.info("live_activity_token_unusable user_id=%s; sending alert", recipient.id)
        return await self.notify_message_received(recipient, sender_name, text, message_id)

    async def notify_voice_note_received(
        self,
        recipient: Recipient,
        sender_handle: str,
        voice_note_id: str,
    ) -> NotificationJob:
        return await self.notify_alert(
            recipient,
            "📟 New Voice Note",
            f"From {sender_handle}",
            {"type": "VOICE_NOTE", "voiceNoteId": voice_note_id, "senderId": sender_handle},
            badge=1,
        )

    async def notify_friend_request(
        self,
        recipient: Recipient,
        sender_handle: str,
        request_id: str,
        sender_display_name: str | None = None,
    ) -> NotificationJob:
        return await self.notify_alert(
            recipient,
            "👋 Friend Request",
            f"{sender_display_name or sender_handle} wants to be friends",
            {"type": "FRIEND_REQUEST", "requestId": request_id, "senderHexCode": sender_handle},
        )

    async def notify_friend_request_accepted(self, recipient: Recipient, accepter_handle: str) -> NotificationJob:
        return await self.notify_alert(
            recipient,
            "✅ Friend Request Accepted",
            f"{accepter_handle} accepted your request",
            {"type": "FRIEND_ACCEPTED", "friendHexCode": accepter_handle},
        )

    async def notify_friend_status_changed(
        self,
        recipient: Recipient,
        friend_handle: str,
        status: str,
    ) -> NotificationJob:
        if status not in _FRIEND_STATUSES:
            raise PayloadValidationError(f"unknown friend status: {status!r}")
        return await self.notify_silent(
            recipient,
            {"type": "FRIEND_STATUS", "friendHexCode": friend_handle, "status": status},
        )

    async def broadcast_status_to_friends(
        self,
        friends: Iterable[Recipient],
        user_handle: str,
        status: str,
    ) -> list[NotificationJob]:
        friends = list(friends)
        jobs = await asyncio.gather(
            *(self.notify_friend_status_changed(friend, user_handle, status) for friend in friends)
        )
        logger.info("friend_status_broadcast handle=%s status=%s friends=%s", user_handle, status, len(friends))
        return list(jobs)

    async def _clear_live_activity_token(self, user_id: str) -> None:
        callback = self._clear_token_callback
        if callback is None:
            logger.warning("live_activity_token_cleanup_unregistered user_id=%s", user_id)
            return
        logger.info("live_activity_token_cleared user_id=%s", user_id)
        increment_counter("notification_live_activity_token_cleared_total")
        try:
            await _maybe_await(callback(user_id))
        except Exception:  # noqa: BLE001 - a storage hiccup must not block the alert fallback.
            logger.exception("live_activity_token_cleanup_failed user_id=%s", user_id)

    async def _lookup(self, user_id: str) -> Recipient | None:
        if self._recipients is None:
            return None
        return await _maybe_await(self._recipients.get_recipient(user_id))

    async def handle_live_activity_failure(
        self,
        job: NotificationJob,
        *,
        invalid_token: bool,
    ) -> NotificationJob | None:
        """Clean up after a push-to-start job that will not be delivered.

        Called by the worker pool once per failed live activity job. A dead
        token is cleared through the registered callback; in every case the
        message is re-sent once as a regular alert to the recipient's device
        token. The fallback is an alert job, so it can never trigger another
        fallback.
        """
        if job.kind != NotificationKind.LIVE_ACTIVITY or job.live_activity is None:
            return None
        if invalid_token:
            await self._clear_live_activity_token(job.user_id)
        fallback = job.live_activity.fallback
        if fallback is None:
            logger.warning("live_activity_failed_without_fallback job_id=%s user_id=%s", job.id, job.user_id)
            return None
        recipient = await self._lookup(job.user_id)
        if recipient is None or not recipient.device_token:
            logger.warning("live_activity_fallback_no_recipient job_id=%s user_id=%s", job.id, job.user_id)
            return None
        increment_counter("notification_live_activity_fallback_total")
        logger.info(
            "live_activity_fallback job_id=%s user_id=%s invalid_token=%s",
            job.id,
            job.user_id,
            invalid_token,
        )
        return await self.notify_message_received(
            recipient,
            fallback.sender_name,
            fallback.message_text,
            fallback.message_id,
        )
