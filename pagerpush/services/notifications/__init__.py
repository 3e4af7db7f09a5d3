from pagerpush.services.notifications.credentials import CredentialProvider, load_signing_key
from pagerpush.services.notifications.dispatch import (
    InMemoryRecipientDirectory,
    NotificationDispatcher,
    RecipientDirectory,
    is_valid_live_activity_token,
)
from pagerpush.services.notifications.queue import (
    InMemoryJobQueue,
    JobQueue,
    QueuePolicy,
    QueuePriority,
    RedisJobQueue,
    build_job_queue,
    priority_for_kind,
    retry_backoff_ms,
)
from pagerpush.services.notifications.runtime import NotificationRuntime, build_runtime
from pagerpush.services.notifications.transport import MockTransportSession, PushTransport, TransportSession
from pagerpush.services.notifications.worker_pool import (
    Delivered,
    NotificationWorkerPool,
    RetryableFailure,
    TerminalFailure,
)

__all__ = [
    "CredentialProvider",
    "load_signing_key",
    "InMemoryRecipientDirectory",
    "NotificationDispatcher",
    "RecipientDirectory",
    "is_valid_live_activity_token",
    "InMemoryJobQueue",
    "JobQueue",
    "QueuePolicy",
    "QueuePriority",
    "RedisJobQueue",
    "build_job_queue",
    "priority_for_kind",
    "retry_backoff_ms",
    "NotificationRuntime",
    "build_runtime",
    "MockTransportSession",
    "PushTransport",
    "TransportSession",
    "Delivered",
    "NotificationWorkerPool",
    "RetryableFailure",
    "TerminalFailure",
]
