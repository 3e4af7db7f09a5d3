from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Callable, Union

from pagerpush.core.config import Settings, get_settings
from pagerpush.core.errors import PayloadValidationError, QueueUnavailableError, TransportError
from pagerpush.domain.models import JobStatus, NotificationJob, NotificationKind, SendResult
from pagerpush.services.notifications.dispatch import NotificationDispatcher
from pagerpush.services.notifications.payloads import send_spec_for
from pagerpush.services.notifications.queue import JobQueue
from pagerpush.services.notifications.transport import PushTransport
from pagerpush.services.resilience import TokenBucketLimiter
from pagerpush.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Gateway reasons that describe the sender or gateway state, not the request itself.
_RETRYABLE_REASONS = frozenset(
    {
        "ExpiredProviderToken",
        "TooManyProviderTokenUpdates",
        "TooManyRequests",
        "IdleTimeout",
        "Shutdown",
        "InternalServerError",
        "ServiceUnavailable",
    }
)

_IDLE_DEQUEUE_TIMEOUT_S = 1.0
_QUEUE_ERROR_BACKOFF_S = 1.0


@dataclass(frozen=True)
class Delivered:
    result: SendResult


@dataclass(frozen=True)
class RetryableFailure:
    reason: str


@dataclass(frozen=True)
class TerminalFailure:
    reason: str
    invalid_token: bool = False


ProcessOutcome = Union[Delivered, RetryableFailure, TerminalFailure]


def classify_send_result(result: SendResult) -> ProcessOutcome:
    if result.accepted:
        return Delivered(result)
    reason = result.reason or f"http_{result.status_code}"
    if result.invalid_token:
        return TerminalFailure(reason, invalid_token=True)
    if result.transient or reason in _RETRYABLE_REASONS:
        return RetryableFailure(reason)
    return TerminalFailure(reason)


class NotificationWorkerPool:
    """Fixed set of worker coroutines draining the notification queue.

    Each worker loops dequeue -> process -> ack/retry/fail. All workers share
    one transport session and one send rate limiter. A job is handled by one
    worker at a time, so retries of the same job are strictly sequential.
    """

    def __init__(
        self,
        queue: JobQueue,
        transport: PushTransport,
        *,
        bundle_id: str,
        dispatcher: NotificationDispatcher | None = None,
        concurrency: int = 10,
        limiter: TokenBucketLimiter | None = None,
        rate_limit_per_s: float = 100,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._queue = queue
        self._transport = transport
        self._bundle_id = bundle_id
        self._dispatcher = dispatcher
        self._concurrency = max(1, int(concurrency))
        self._limiter = limiter or TokenBucketLimiter(rate=rate_limit_per_s)
        self._time = time_source or time.time
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._in_flight = 0

    @classmethod
    def from_settings(
        cls,
        queue: JobQueue,
        transport: PushTransport,
        *,
        dispatcher: NotificationDispatcher | None = None,
        settings: Settings | None = None,
    ) -> NotificationWorkerPool:
        settings = settings or get_settings()
        return cls(
            queue,
            transport,
            bundle_id=settings.apns_bundle_id,
            dispatcher=dispatcher,
            concurrency=settings.notify_worker_concurrency,
            rate_limit_per_s=settings.notify_rate_limit_per_s,
        )

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def process(self, job: NotificationJob) -> ProcessOutcome:
        try:
            spec = send_spec_for(job, bundle_id=self._bundle_id, now=self._time())
        except PayloadValidationError as exc:
            return TerminalFailure(f"invalid_payload: {exc}")
        await self._limiter.acquire()
        increment_counter(f"notification_send_attempt_total.{job.kind.value}")
        try:
            result = await self._transport.send(
                spec.address,
                spec.payload,
                topic=spec.topic,
                push_type=spec.push_type,
                priority=spec.priority,
            )
        except PayloadValidationError as exc:
            return TerminalFailure(f"invalid_payload: {exc}")
        except TransportError as exc:
            return RetryableFailure(f"{type(exc).__name__}: {exc}")
        return classify_send_result(result)

    async def handle(self, job: NotificationJob) -> ProcessOutcome:
        try:
            outcome = await self.process(job)
        except Exception as exc:  # noqa: BLE001 - unexpected processing errors take the retry path.
            logger.exception("notification_job_processing_error job_id=%s kind=%s", job.id, job.kind.value)
            outcome = RetryableFailure(f"{type(exc).__name__}: {exc}")

        if isinstance(outcome, Delivered):
            await self._queue.ack(job.id)
            increment_counter(f"notification_delivered_total.{job.kind.value}")
            logger.info(
                "notification_delivered job_id=%s kind=%s user_id=%s apns_id=%s",
                job.id,
                job.kind.value,
                job.user_id,
                outcome.result.apns_id,
            )
            return outcome

        if isinstance(outcome, RetryableFailure):
            # The fallback must be queued before the last attempt marks the job failed.
            if job.attempt_count + 1 >= job.max_attempts:
                if not await self._enqueue_fallback(job, invalid_token=False):
                    return outcome
            updated = await self._queue.retry(job.id, error=outcome.reason)
            if updated.status != JobStatus.FAILED:
                increment_counter("notification_retry_total")
                logger.warning(
                    "notification_retry_scheduled job_id=%s kind=%s attempt=%s reason=%s",
                    job.id,
                    job.kind.value,
                    updated.attempt_count,
                    outcome.reason,
                )
                return outcome
            increment_counter("notification_failed_total")
            logger.error(
                "notification_retries_exhausted job_id=%s kind=%s user_id=%s attempts=%s reason=%s",
                job.id,
                job.kind.value,
                job.user_id,
                updated.attempt_count,
                outcome.reason,
            )
            return outcome

        if not await self._enqueue_fallback(job, invalid_token=outcome.invalid_token):
            return outcome
        await self._queue.fail(job.id, outcome.reason)
        increment_counter("notification_failed_total")
        if outcome.invalid_token:
            increment_counter("notification_invalid_token_total")
            logger.warning(
                "notification_token_rejected job_id=%s kind=%s user_id=%s reason=%s",
                job.id,
                job.kind.value,
                job.user_id,
                outcome.reason,
            )
        else:
            logger.error(
                "notification_job_failed job_id=%s kind=%s user_id=%s reason=%s job=%s",
                job.id,
                job.kind.value,
                job.user_id,
                outcome.reason,
                job.to_dict(),
            )
        return outcome

    async def _enqueue_fallback(self, job: NotificationJob, *, invalid_token: bool) -> bool:
        # False leaves the job leased, so lease expiry hands it back and the fallback is tried again.
        if job.kind != NotificationKind.LIVE_ACTIVITY or self._dispatcher is None:
            return True
        try:
            await self._dispatcher.handle_live_activity_failure(job, invalid_token=invalid_token)
        except QueueUnavailableError:
            increment_counter("notification_fallback_enqueue_failed_total")
            logger.exception(
                "live_activity_fallback_enqueue_failed job_id=%s user_id=%s; job left leased",
                job.id,
                job.user_id,
            )
            return False
        return True

    async def run_once(self, timeout: float | None = 0) -> ProcessOutcome | None:
        # Handle at most one job; used by tests and one-shot scripts.
        job = await self._queue.dequeue(timeout=timeout)
        if job is None:
            return None
        return await self.handle(job)

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                job = await self._queue.dequeue(timeout=_IDLE_DEQUEUE_TIMEOUT_S)
            except QueueUnavailableError:
                logger.exception("notification_dequeue_failed worker=%s", index)
                await asyncio.sleep(_QUEUE_ERROR_BACKOFF_S)
                continue
            if job is None:
                continue
            self._in_flight += 1
            try:
                await self.handle(job)
            except Exception:  # noqa: BLE001 - keep the worker alive; the lease returns the job to waiting.
                logger.exception("notification_worker_failed worker=%s job_id=%s", index, job.id)
            finally:
                self._in_flight -= 1

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"notification-worker-{index}")
            for index in range(self._concurrency)
        ]
        logger.info("notification_worker_pool_started concurrency=%s", self._concurrency)

    async def stop(self, grace_s: float = 30) -> None:
        # Stop taking jobs, give in-flight sends the grace period, then cancel stragglers.
        self._stopping.set()
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(self._tasks, timeout=max(0.0, grace_s))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("notification_worker_pool_cancelled pending=%s", len(pending))
        self._tasks = []
        logger.info("notification_worker_pool_stopped")
