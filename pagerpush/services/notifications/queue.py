from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import heapq
import json
import logging
import time
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from pagerpush.core.config import Settings, get_settings
from pagerpush.core.errors import JobNotFoundError, QueueUnavailableError
from pagerpush.domain.models import JobStatus, NotificationJob, NotificationKind, QueueMetrics
from pagerpush.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class QueuePriority(str, Enum):
    HIGH = "high"
    LOW = "low"


_PRIORITY_RANK = {QueuePriority.HIGH: 0, QueuePriority.LOW: 1}

# Waiting-set scores are rank * band + enqueue_ms, so every high job sorts before any low job.
_PRIORITY_BAND_MS = 10**13


def priority_for_kind(kind: NotificationKind) -> QueuePriority:
    # Background state sync yields to anything a person will see.
    if kind == NotificationKind.SILENT:
        return QueuePriority.LOW
    return QueuePriority.HIGH


@dataclass(frozen=True)
class QueuePolicy:
    max_attempts: int
    backoff_ms: int
    backoff_multiplier: int
    lease_timeout_s: float
    completed_retention_s: float
    completed_retention_count: int
    failed_retention_s: float


def default_queue_policy(settings: Settings | None = None) -> QueuePolicy:
    settings = settings or get_settings()
    return QueuePolicy(
        max_attempts=max(1, int(settings.notify_max_attempts)),
        backoff_ms=max(1, int(settings.notify_backoff_ms)),
        backoff_multiplier=max(1, int(settings.notify_backoff_multiplier)),
        lease_timeout_s=max(1, settings.notify_lease_timeout_s),
        completed_retention_s=max(0, settings.notify_completed_retention_s),
        completed_retention_count=max(0, int(settings.notify_completed_retention_count)),
        failed_retention_s=max(0, settings.notify_failed_retention_s),
    )


def retry_backoff_ms(attempt_no: int, *, policy: QueuePolicy | None = None) -> int:
    # Exponential backoff: base after the first failed attempt, doubling, exponent capped at max attempts.
    policy = policy or default_queue_policy()
    exponent = max(0, min(int(attempt_no), policy.max_attempts) - 1)
    return policy.backoff_ms * (policy.backoff_multiplier**exponent)


class JobQueue(Protocol):
    async def enqueue(self, job: NotificationJob, priority: QueuePriority | None = None) -> NotificationJob: ...

    async def dequeue(self, timeout: float | None = None) -> NotificationJob | None: ...

    async def ack(self, job_id: str) -> None: ...

    async def retry(self, job_id: str, delay_ms: int | None = None, error: str | None = None) -> NotificationJob: ...

    async def fail(self, job_id: str, reason: str) -> NotificationJob: ...

    async def get(self, job_id: str) -> NotificationJob | None: ...

    async def metrics(self) -> QueueMetrics: ...

    async def close(self) -> None: ...


def _next_attempt(job: NotificationJob, *, policy: QueuePolicy, error: str | None, now: float) -> NotificationJob:
    attempts = min(job.attempt_count + 1, policy.max_attempts)
    status = JobStatus.FAILED if attempts >= policy.max_attempts else JobStatus.WAITING
    return job.evolve(attempt_count=attempts, status=status, last_error=error, updated_at=now)


class InMemoryJobQueue:
    """Single-process queue with the same lease, retry and retention rules as the Redis queue.

    Used for tests and for running the API and workers in one process during
    development; state does not survive a restart.
    """

    def __init__(
        self,
        *,
        policy: QueuePolicy | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._policy = policy or default_queue_policy()
        self._time = time_source or time.time
        self._jobs: dict[str, NotificationJob] = {}
        self._ranks: dict[str, int] = {}
        self._waiting: list[tuple[int, int, str]] = []
        self._delayed: dict[str, float] = {}
        self._active: dict[str, float] = {}
        self._completed: dict[str, float] = {}
        self._failed: dict[str, float] = {}
        self._seq = 0
        self._closed = False
        self._cond = asyncio.Condition()

    @property
    def policy(self) -> QueuePolicy:
        return self._policy

    def _push_waiting(self, job_id: str) -> None:
        self._seq += 1
        heapq.heappush(self._waiting, (self._ranks.get(job_id, 0), self._seq, job_id))
        self._jobs[job_id] = self._jobs[job_id].evolve(status=JobStatus.WAITING)

    def _promote_and_reclaim(self, now: float) -> None:
        for job_id, ready_at in list(self._delayed.items()):
            if ready_at <= now:
                del self._delayed[job_id]
                self._push_waiting(job_id)
        for job_id, deadline in list(self._active.items()):
            if deadline <= now:
                # Lease expired without ack: the worker is presumed dead.
                del self._active[job_id]
                logger.warning("notification_job_lease_expired job_id=%s", job_id)
                increment_counter("notification_lease_reclaimed_total")
                self._push_waiting(job_id)

    def _prune(self, now: float) -> None:
        policy = self._policy
        for job_id, finished_at in list(self._completed.items()):
            if now - finished_at > policy.completed_retention_s:
                self._forget(job_id, self._completed)
        overflow = len(self._completed) - policy.completed_retention_count
        if overflow > 0:
            for job_id, _ in sorted(self._completed.items(), key=lambda item: item[1])[:overflow]:
                self._forget(job_id, self._completed)
        for job_id, finished_at in list(self._failed.items()):
            if now - finished_at > policy.failed_retention_s:
                self._forget(job_id, self._failed)

    def _forget(self, job_id: str, bucket: dict[str, float]) -> None:
        bucket.pop(job_id, None)
        self._jobs.pop(job_id, None)
        self._ranks.pop(job_id, None)

    def _next_wakeup(self, now: float) -> float | None:
        candidates = list(self._delayed.values()) + list(self._active.values())
        if not candidates:
            return None
        return max(0.0, min(candidates) - now)

    def _require(self, job_id: str) -> NotificationJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _detach(self, job_id: str) -> None:
        self._active.pop(job_id, None)
        self._delayed.pop(job_id, None)
        self._waiting = [entry for entry in self._waiting if entry[2] != job_id]
        heapq.heapify(self._waiting)

    async def enqueue(self, job: NotificationJob, priority: QueuePriority | None = None) -> NotificationJob:
        if self._closed:
            raise QueueUnavailableError("notification queue is closed")
        priority = priority or priority_for_kind(job.kind)
        stored = job.evolve(status=JobStatus.WAITING, max_attempts=self._policy.max_attempts)
        async with self._cond:
            self._jobs[stored.id] = stored
            self._ranks[stored.id] = _PRIORITY_RANK[priority]
            self._push_waiting(stored.id)
            self._cond.notify()
        return self._jobs[stored.id]

    async def dequeue(self, timeout: float | None = None) -> NotificationJob | None:
        # timeout=None blocks until a job or close(); timeout=0 never blocks.
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
        async with self._cond:
            while True:
                if self._closed:
                    return None
                now = self._time()
                self._promote_and_reclaim(now)
                while self._waiting:
                    _rank, _seq, job_id = heapq.heappop(self._waiting)
                    job = self._jobs.get(job_id)
                    if job is None or job.status != JobStatus.WAITING:
                        continue
                    self._active[job_id] = now + self._policy.lease_timeout_s
                    leased = job.evolve(status=JobStatus.ACTIVE, updated_at=now)
                    self._jobs[job_id] = leased
                    return leased
                wait = self._next_wakeup(now)
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass

    async def ack(self, job_id: str) -> None:
        async with self._cond:
            job = self._require(job_id)
            now = self._time()
            self._detach(job_id)
            self._jobs[job_id] = job.evolve(status=JobStatus.COMPLETED, updated_at=now)
            self._completed[job_id] = now
            self._prune(now)

    async def retry(self, job_id: str, delay_ms: int | None = None, error: str | None = None) -> NotificationJob:
        async with self._cond:
            job = self._require(job_id)
            now = self._time()
            self._detach(job_id)
            updated = _next_attempt(job, policy=self._policy, error=error, now=now)
            self._jobs[job_id] = updated
            if updated.status == JobStatus.FAILED:
                self._failed[job_id] = now
                self._prune(now)
                return updated
            delay = retry_backoff_ms(updated.attempt_count, policy=self._policy) if delay_ms is None else delay_ms
            self._delayed[job_id] = now + max(0, delay) / 1000.0
            self._cond.notify()
            return updated

    async def fail(self, job_id: str, reason: str) -> NotificationJob:
        async with self._cond:
            job = self._require(job_id)
            now = self._time()
            self._detach(job_id)
            failed = job.evolve(
                status=JobStatus.FAILED,
                attempt_count=min(job.attempt_count + 1, self._policy.max_attempts),
                last_error=reason,
                updated_at=now,
            )
            self._jobs[job_id] = failed
            self._failed[job_id] = now
            self._prune(now)
            return failed

    async def get(self, job_id: str) -> NotificationJob | None:
        return self._jobs.get(job_id)

    async def metrics(self) -> QueueMetrics:
        async with self._cond:
            now = self._time()
            self._prune(now)
            waiting = sum(1 for job in self._jobs.values() if job.status == JobStatus.WAITING)
            return QueueMetrics(
                waiting=waiting,
                active=len(self._active),
                completed=len(self._completed),
                failed=len(self._failed),
            )

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()


# Move due delayed jobs and expired leases back to waiting, then lease the best waiting job.
_CLAIM_LUA = r"""
local now_ms = tonumber(ARGV[1])
local lease_ms = tonumber(ARGV[2])
local job_prefix = ARGV[3]
local band = tonumber(ARGV[4])

local function requeue(id)
  local rank = tonumber(redis.call("HGET", job_prefix .. id, "rank") or "0")
  redis.call("ZADD", KEYS[1], rank * band + now_ms, id)
  redis.call("HSET", job_prefix .. id, "status", "waiting")
end

local due = redis.call("ZRANGEBYSCORE", KEYS[2], "-inf", now_ms)
for _, id in ipairs(due) do
  redis.call("ZREM", KEYS[2], id)
  requeue(id)
end

local expired = redis.call("ZRANGEBYSCORE", KEYS[3], "-inf", now_ms)
for _, id in ipairs(expired) do
  redis.call("ZREM", KEYS[3], id)
  requeue(id)
end

while true do
  local popped = redis.call("ZPOPMIN", KEYS[1])
  if #popped == 0 then
    return {#expired, false, false}
  end
  local id = popped[1]
  local data = redis.call("HGET", job_prefix .. id, "data")
  if data then
    redis.call("ZADD", KEYS[3], now_ms + lease_ms, id)
    redis.call("HSET", job_prefix .. id, "status", "active")
    return {#expired, id, data}
  end
end
"""


class RedisJobQueue:
    """Durable notification queue stored in Redis sorted sets.

    Layout under ``{prefix}``: ``job:{id}`` hashes (``data``, ``rank``,
    ``status``), plus ``waiting`` (priority band + enqueue time), ``delayed``
    (ready time), ``active`` (lease deadline), ``completed`` and ``failed``
    (finish time) sorted sets. Claiming is a single Lua script so a job is
    never both popped and unleased.
    """

    def __init__(
        self,
        *,
        redis: Redis | None = None,
        prefix: str | None = None,
        policy: QueuePolicy | None = None,
        poll_interval_ms: int | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self._prefix = prefix or f"pagerpush:queue:{settings.notify_queue_name}"
        self._policy = policy or default_queue_policy(settings)
        interval = settings.notify_dequeue_poll_interval_ms if poll_interval_ms is None else poll_interval_ms
        self._poll_interval_s = max(1, int(interval)) / 1000.0
        self._time = time_source or time.time
        self._closed = False

    @property
    def policy(self) -> QueuePolicy:
        return self._policy

    def _client(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
        return self._redis

    def _key(self, name: str) -> str:
        return f"{self._prefix}:{name}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _now_ms(self) -> int:
        return int(self._time() * 1000)

    async def _load(self, job_id: str) -> NotificationJob | None:
        raw = await self._client().hgetall(self._job_key(job_id))
        if not raw or "data" not in raw:
            return None
        job = NotificationJob.from_dict(json.loads(raw["data"]))
        status = raw.get("status")
        return job.evolve(status=JobStatus(status)) if status else job

    async def _require(self, job_id: str) -> NotificationJob:
        job = await self._load(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _finish(self, job: NotificationJob, bucket: str) -> None:
        now_ms = self._now_ms()
        redis = self._client()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key("active"), job.id)
            pipe.zrem(self._key("waiting"), job.id)
            pipe.zrem(self._key("delayed"), job.id)
            pipe.hset(
                self._job_key(job.id),
                mapping={"data": json.dumps(job.to_dict()), "status": job.status.value},
            )
            pipe.zadd(self._key(bucket), {job.id: now_ms})
            await pipe.execute()
        await self._prune(now_ms)

    async def _prune(self, now_ms: int) -> None:
        redis = self._client()
        policy = self._policy
        stale: list[str] = []
        stale += await redis.zrangebyscore(
            self._key("completed"), "-inf", now_ms - int(policy.completed_retention_s * 1000)
        )
        overflow = await redis.zcard(self._key("completed")) - policy.completed_retention_count
        if overflow > 0:
            stale += await redis.zrange(self._key("completed"), 0, overflow - 1)
        expired_failed = await redis.zrangebyscore(
            self._key("failed"), "-inf", now_ms - int(policy.failed_retention_s * 1000)
        )
        if not stale and not expired_failed:
            return
        async with redis.pipeline(transaction=True) as pipe:
            for job_id in set(stale):
                pipe.zrem(self._key("completed"), job_id)
                pipe.delete(self._job_key(job_id))
            for job_id in expired_failed:
                pipe.zrem(self._key("failed"), job_id)
                pipe.delete(self._job_key(job_id))
            await pipe.execute()

    async def enqueue(self, job: NotificationJob, priority: QueuePriority | None = None) -> NotificationJob:
        if self._closed:
            raise QueueUnavailableError("notification queue is closed")
        priority = priority or priority_for_kind(job.kind)
        rank = _PRIORITY_RANK[priority]
        stored = job.evolve(status=JobStatus.WAITING, max_attempts=self._policy.max_attempts)
        try:
            async with self._client().pipeline(transaction=True) as pipe:
                pipe.hset(
                    self._job_key(stored.id),
                    mapping={"data": json.dumps(stored.to_dict()), "rank": rank, "status": "waiting"},
                )
                pipe.zadd(self._key("waiting"), {stored.id: rank * _PRIORITY_BAND_MS + self._now_ms()})
                await pipe.execute()
        except (RedisError, OSError) as exc:
            raise QueueUnavailableError(f"failed to enqueue notification job: {exc}") from exc
        return stored

    async def _claim(self) -> NotificationJob | None:
        result = await self._client().eval(
            _CLAIM_LUA,
            3,
            self._key("waiting"),
            self._key("delayed"),
            self._key("active"),
            self._now_ms(),
            int(self._policy.lease_timeout_s * 1000),
            f"{self._prefix}:job:",
            _PRIORITY_BAND_MS,
        )
        reclaimed = int(result[0] or 0)
        if reclaimed:
            logger.warning("notification_job_leases_reclaimed count=%s", reclaimed)
            increment_counter("notification_lease_reclaimed_total", reclaimed)
        if not result[1]:
            return None
        job = NotificationJob.from_dict(json.loads(result[2]))
        return job.evolve(status=JobStatus.ACTIVE)

    async def dequeue(self, timeout: float | None = None) -> NotificationJob | None:
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
        while not self._closed:
            try:
                job = await self._claim()
            except (RedisError, OSError) as exc:
                raise QueueUnavailableError(f"failed to dequeue notification job: {exc}") from exc
            if job is not None:
                return job
            if deadline is not None and time.monotonic() >= deadline:
                return None
            await asyncio.sleep(self._poll_interval_s)
        return None

    async def ack(self, job_id: str) -> None:
        job = await self._require(job_id)
        await self._finish(job.evolve(status=JobStatus.COMPLETED, updated_at=self._time()), "completed")

    async def retry(self, job_id: str, delay_ms: int | None = None, error: str | None = None) -> NotificationJob:
        job = await self._require(job_id)
        updated = _next_attempt(job, policy=self._policy, error=error, now=self._time())
        if updated.status == JobStatus.FAILED:
            await self._finish(updated, "failed")
            return updated
        delay = retry_backoff_ms(updated.attempt_count, policy=self._policy) if delay_ms is None else delay_ms
        async with self._client().pipeline(transaction=True) as pipe:
            pipe.zrem(self._key("active"), job_id)
            pipe.hset(
                self._job_key(job_id),
                mapping={"data": json.dumps(updated.to_dict()), "status": "waiting"},
            )
            pipe.zadd(self._key("delayed"), {job_id: self._now_ms() + max(0, int(delay))})
            await pipe.execute()
        return updated

    async def fail(self, job_id: str, reason: str) -> NotificationJob:
        job = await self._require(job_id)
        failed = job.evolve(
            status=JobStatus.FAILED,
            attempt_count=min(job.attempt_count + 1, self._policy.max_attempts),
            last_error=reason,
            updated_at=self._time(),
        )
        await self._finish(failed, "failed")
        return failed

    async def get(self, job_id: str) -> NotificationJob | None:
        return await self._load(job_id)

    async def metrics(self) -> QueueMetrics:
        redis = self._client()
        await self._prune(self._now_ms())
        async with redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key("waiting"))
            pipe.zcard(self._key("delayed"))
            pipe.zcard(self._key("active"))
            pipe.zcard(self._key("completed"))
            pipe.zcard(self._key("failed"))
            waiting, delayed, active, completed, failed = await pipe.execute()
        return QueueMetrics(
            waiting=int(waiting) + int(delayed),
            active=int(active),
            completed=int(completed),
            failed=int(failed),
        )

    async def close(self) -> None:
        self._closed = True
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_job_queue(settings: Settings | None = None) -> JobQueue:
    settings = settings or get_settings()
    backend = settings.notify_queue_backend.strip().lower()
    if backend == "memory":
        return InMemoryJobQueue(policy=default_queue_policy(settings))
    if backend != "redis":
        raise ValueError(f"unsupported notify_queue_backend: {settings.notify_queue_backend}")
    return RedisJobQueue(policy=default_queue_policy(settings))
