from __future__ import annotations

from dataclasses import dataclass
import importlib
import logging

from pagerpush.core.config import Settings, get_settings
from pagerpush.core.errors import ProviderConfigError, RecipientDirectoryError
from pagerpush.domain.models import QueueMetrics
from pagerpush.services.notifications.credentials import CredentialProvider
from pagerpush.services.notifications.dispatch import (
    ClearTokenCallback,
    NotificationDispatcher,
    RecipientDirectory,
)
from pagerpush.services.notifications.queue import JobQueue, build_job_queue
from pagerpush.services.notifications.transport import MockTransportSession, PushTransport, TransportSession
from pagerpush.services.notifications.worker_pool import NotificationWorkerPool


logger = logging.getLogger(__name__)


@dataclass
class NotificationRuntime:
    """The one queue, transport session, dispatcher and worker pool of a process."""

    settings: Settings
    queue: JobQueue
    transport: PushTransport
    dispatcher: NotificationDispatcher
    pool: NotificationWorkerPool
    recipients: RecipientDirectory
    mock_mode: bool = False

    def start(self) -> None:
        self.pool.start()

    async def stop(self) -> None:
        # Drain workers first; closing the session under an in-flight send would fail it.
        await self.pool.stop(grace_s=self.settings.notify_shutdown_grace_s)
        await self.transport.close()
        await self.queue.close()

    async def metrics(self) -> QueueMetrics:
        return await self.queue.metrics()


def build_transport(settings: Settings) -> tuple[PushTransport, bool]:
    # Missing gateway credentials put the subsystem in mock mode instead of blocking domain flows.
    if not settings.apns_configured:
        logger.warning("apns_not_configured; notifications will be logged, not sent")
        return MockTransportSession(), True
    try:
        credentials = CredentialProvider.from_settings(settings)
    except ProviderConfigError:
        logger.exception("apns_credentials_invalid; notifications will be logged, not sent")
        return MockTransportSession(), True
    return TransportSession.from_settings(credentials, settings), False


def load_recipient_directory(settings: Settings) -> RecipientDirectory:
    # Resolve NOTIFY_RECIPIENT_DIRECTORY ("package.module:factory") and call the factory.
    target = (settings.notify_recipient_directory or "").strip()
    if not target:
        raise RecipientDirectoryError(
            "NOTIFY_RECIPIENT_DIRECTORY is required: the worker pool needs recipient lookups "
            "for live activity fallbacks"
        )
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise RecipientDirectoryError(f"NOTIFY_RECIPIENT_DIRECTORY must look like 'module:factory', got {target!r}")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise RecipientDirectoryError(f"cannot load recipient directory factory {target!r}: {exc}") from exc
    directory = factory()
    if not callable(getattr(directory, "get_recipient", None)):
        raise RecipientDirectoryError(f"{target!r} did not return an object with get_recipient()")
    return directory


def build_runtime(
    settings: Settings | None = None,
    *,
    recipients: RecipientDirectory | None = None,
    clear_live_activity_token: ClearTokenCallback | None = None,
    queue: JobQueue | None = None,
    transport: PushTransport | None = None,
) -> NotificationRuntime:
    settings = settings or get_settings()
    # Fail at startup rather than silently dropping fallbacks for dead push-to-start tokens.
    recipients = recipients if recipients is not None else load_recipient_directory(settings)
    clear_live_activity_token = clear_live_activity_token or getattr(recipients, "clear_live_activity_token", None)
    if not callable(clear_live_activity_token):
        raise RecipientDirectoryError(
            "a clear_live_activity_token callback is required; pass one or expose it on the recipient directory"
        )
    queue = queue or build_job_queue(settings)
    mock_mode = False
    if transport is None:
        transport, mock_mode = build_transport(settings)
    dispatcher = NotificationDispatcher(queue, recipients=recipients, settings=settings)
    dispatcher.set_clear_live_activity_token_callback(clear_live_activity_token)
    pool = NotificationWorkerPool.from_settings(queue, transport, dispatcher=dispatcher, settings=settings)
    logger.info(
        "notification_runtime_built backend=%s mock_mode=%s concurrency=%s",
        settings.notify_queue_backend,
        mock_mode,
        pool.concurrency,
    )
    return NotificationRuntime(
        settings=settings,
        queue=queue,
        transport=transport,
        dispatcher=dispatcher,
        pool=pool,
        recipients=recipients,
        mock_mode=mock_mode,
    )
