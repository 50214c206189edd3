"""
Job Queue - durable Redis-backed queue with retries and rate limiting.

Layout under ``<prefix>:<queue>``:
- ``id``              INCR counter for job ids
- ``job:<id>``        hash with the job fields
- ``waiting``         list; producers LPUSH, workers LMOVE from the right
- ``active``          list of reserved job ids
- ``delayed``         sorted set of job ids scored by due time (ms)
- ``lock:<id>``       worker lock with expiry; a missing lock means stalled
- ``limiter``         sorted set of recent job starts for the rate limit

Delivery is at-least-once: a job whose worker dies is requeued once its
lock expires.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class JobStatus:
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


def _now_ms() -> int:
    return int(time.time() * 1000)


def create_redis_client(redis_url: str) -> redis.Redis:
    """Create the async Redis connection shared by the queue."""
    return redis.from_url(redis_url, decode_responses=True)


@dataclass
class Job:
    """A queued unit of work."""

    id: str
    name: str
    data: dict[str, Any]
    status: str = JobStatus.WAITING
    progress: int = 0
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    result: Optional[Any] = None
    failed_reason: Optional[str] = None
    created_at: int = field(default_factory=_now_ms)
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    lock_token: Optional[str] = None

    @property
    def api_status(self) -> str:
        """Status as reported to clients; delayed retries read as waiting."""
        if self.status == JobStatus.DELAYED:
            return JobStatus.WAITING
        return self.status

    @property
    def is_last_attempt(self) -> bool:
        """True while running the final allowed attempt."""
        return self.attempts_made + 1 >= self.max_attempts

    def to_mapping(self) -> dict[str, str]:
        mapping = {
            "id": self.id,
            "name": self.name,
            "data": json.dumps(self.data),
            "status": self.status,
            "progress": str(self.progress),
            "attempts_made": str(self.attempts_made),
            "max_attempts": str(self.max_attempts),
            "backoff_seconds": str(self.backoff_seconds),
            "created_at": str(self.created_at),
        }
        if self.result is not None:
            mapping["result"] = json.dumps(self.result)
        if self.failed_reason is not None:
            mapping["failed_reason"] = self.failed_reason
        if self.processed_on is not None:
            mapping["processed_on"] = str(self.processed_on)
        if self.finished_on is not None:
            mapping["finished_on"] = str(self.finished_on)
        return mapping

    @classmethod
    def from_mapping(cls, mapping: dict[str, str]) -> "Job":
        def _int(key: str) -> Optional[int]:
            value = mapping.get(key)
            return int(value) if value not in (None, "") else None

        result = mapping.get("result")
        return cls(
            id=mapping["id"],
            name=mapping["name"],
            data=json.loads(mapping.get("data") or "{}"),
            status=mapping.get("status", JobStatus.WAITING),
            progress=_int("progress") or 0,
            attempts_made=_int("attempts_made") or 0,
            max_attempts=_int("max_attempts") or 1,
            backoff_seconds=float(mapping.get("backoff_seconds") or 0),
            result=json.loads(result) if result else None,
            failed_reason=mapping.get("failed_reason"),
            created_at=_int("created_at") or 0,
            processed_on=_int("processed_on"),
            finished_on=_int("finished_on"),
        )


class JobQueue:
    """
    Named queue on a Redis connection.

    The connection is owned by the caller and closed by it on shutdown.
    """

    def __init__(
        self,
        client: redis.Redis,
        name: str = "video-processing",
        prefix: str = "sermonclips",
        rate_limit_max: int = 10,
        rate_limit_window_seconds: int = 60,
        lock_seconds: int = 60,
    ):
        self.client = client
        self.name = name
        self.rate_limit_max = rate_limit_max
        self.rate_limit_window_ms = rate_limit_window_seconds * 1000
        self.lock_seconds = lock_seconds
        self._base = f"{prefix}:{name}"

    def _key(self, *parts: str) -> str:
        return ":".join((self._base,) + parts)

    @property
    def waiting_key(self) -> str:
        return self._key("waiting")

    @property
    def active_key(self) -> str:
        return self._key("active")

    @property
    def delayed_key(self) -> str:
        return self._key("delayed")

    @property
    def limiter_key(self) -> str:
        return self._key("limiter")

    def job_key(self, job_id: str) -> str:
        return self._key("job", job_id)

    def lock_key(self, job_id: str) -> str:
        return self._key("lock", job_id)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def add(
        self,
        name: str,
        data: dict[str, Any],
        attempts: int = 3,
        backoff_seconds: float = 2.0,
    ) -> Job:
        """
        Enqueue a job; it becomes visible to workers immediately.

        Raises:
            JobQueueError: Redis rejected the write
        """
        try:
            job_id = str(await self.client.incr(self._key("id")))
            job = Job(
                id=job_id,
                name=name,
                data=data,
                max_attempts=max(1, attempts),
                backoff_seconds=backoff_seconds,
            )

            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self.job_key(job_id), mapping=job.to_mapping())
                pipe.lpush(self.waiting_key, job_id)
                await pipe.execute()
        except RedisError as e:
            raise JobQueueError(f"Failed to enqueue {name}: {e}") from e

        logger.info(f"Enqueued job {job_id} ({name}) on {self.name}")
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        mapping = await self.client.hgetall(self.job_key(job_id))
        if not mapping:
            return None
        return Job.from_mapping(mapping)

    async def get_job_counts(self) -> dict[str, int]:
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.llen(self.waiting_key)
            pipe.llen(self.active_key)
            pipe.zcard(self.delayed_key)
            waiting, active, delayed = await pipe.execute()
        return {"waiting": waiting, "active": active, "delayed": delayed}

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def reserve(self) -> Optional[Job]:
        """
        Take the oldest waiting job and lock it for this worker.

        Returns None when nothing is waiting or the start rate limit for the
        current window is used up.
        """
        if not await self._rate_limit_allows():
            return None

        job_id = await self.client.lmove(self.waiting_key, self.active_key, "RIGHT", "LEFT")
        if job_id is None:
            return None

        token = uuid.uuid4().hex
        now = _now_ms()
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self.lock_key(job_id), token, ex=self.lock_seconds)
            pipe.hset(self.job_key(job_id), mapping={"status": JobStatus.ACTIVE, "processed_on": str(now)})
            pipe.zadd(self.limiter_key, {f"{job_id}:{now}": now})
            await pipe.execute()

        job = await self.get_job(job_id)
        if job is None:
            # Hash vanished underneath us; drop the orphan id
            await self.client.lrem(self.active_key, 1, job_id)
            await self.client.delete(self.lock_key(job_id))
            return None

        job.lock_token = token
        return job

    async def _rate_limit_allows(self) -> bool:
        if self.rate_limit_max <= 0:
            return True
        now = _now_ms()
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(self.limiter_key, 0, now - self.rate_limit_window_ms)
            pipe.zcard(self.limiter_key)
            _, started = await pipe.execute()
        return started < self.rate_limit_max

    async def update_progress(self, job_id: str, progress: int) -> int:
        """Raise the stored progress; lower values are ignored. Returns the stored value."""
        progress = max(0, min(100, int(progress)))
        current = await self.client.hget(self.job_key(job_id), "progress")
        current_value = int(current) if current else 0
        if progress > current_value:
            await self.client.hset(self.job_key(job_id), "progress", str(progress))
            return progress
        return current_value

    async def extend_lock(self, job: Job) -> bool:
        """Refresh the lock if this worker still holds it."""
        key = self.lock_key(job.id)
        holder = await self.client.get(key)
        if holder != job.lock_token:
            return False
        return bool(await self.client.expire(key, self.lock_seconds))

    async def complete(self, job: Job, result: Any = None) -> Job:
        now = _now_ms()
        mapping = {"status": JobStatus.COMPLETED, "finished_on": str(now)}
        if result is not None:
            mapping["result"] = json.dumps(result)

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key, 1, job.id)
            pipe.delete(self.lock_key(job.id))
            pipe.hset(self.job_key(job.id), mapping=mapping)
            await pipe.execute()

        job.status = JobStatus.COMPLETED
        job.finished_on = now
        job.result = result
        logger.info(f"Job {job.id} ({job.name}) completed")
        return job

    async def fail(self, job: Job, reason: str) -> Job:
        """
        Record a failed attempt.

        Jobs with attempts left are scheduled on the delayed set with
        exponential backoff; otherwise they end as failed.
        """
        now = _now_ms()
        attempts_made = await self.client.hincrby(self.job_key(job.id), "attempts_made", 1)
        job.attempts_made = attempts_made
        job.failed_reason = reason

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key, 1, job.id)
            pipe.delete(self.lock_key(job.id))

            if attempts_made < job.max_attempts:
                delay_seconds = job.backoff_seconds * 2 ** (attempts_made - 1)
                due = now + int(delay_seconds * 1000)
                pipe.hset(self.job_key(job.id), mapping={"status": JobStatus.DELAYED, "failed_reason": reason})
                pipe.zadd(self.delayed_key, {job.id: due})
                job.status = JobStatus.DELAYED
                logger.warning(
                    f"Job {job.id} ({job.name}) failed attempt {attempts_made}/{job.max_attempts}, "
                    f"retrying in {delay_seconds:.1f}s: {reason}"
                )
            else:
                pipe.hset(
                    self.job_key(job.id),
                    mapping={"status": JobStatus.FAILED, "failed_reason": reason, "finished_on": str(now)},
                )
                job.status = JobStatus.FAILED
                job.finished_on = now
                logger.error(f"Job {job.id} ({job.name}) failed permanently after {attempts_made} attempts: {reason}")

            await pipe.execute()

        return job

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to waiting."""
        due_ids = await self.client.zrangebyscore(self.delayed_key, 0, _now_ms())
        promoted = 0
        for job_id in due_ids:
            # ZREM decides the winner when several workers promote at once
            if await self.client.zrem(self.delayed_key, job_id):
                async with self.client.pipeline(transaction=True) as pipe:
                    pipe.hset(self.job_key(job_id), "status", JobStatus.WAITING)
                    pipe.lpush(self.waiting_key, job_id)
                    await pipe.execute()
                promoted += 1
        if promoted:
            logger.debug(f"Promoted {promoted} delayed jobs on {self.name}")
        return promoted

    async def requeue_stalled(self) -> int:
        """Return active jobs whose lock expired to the head of the waiting list."""
        active_ids = await self.client.lrange(self.active_key, 0, -1)
        requeued = 0
        for job_id in active_ids:
            if await self.client.exists(self.lock_key(job_id)):
                continue
            if await self.client.lrem(self.active_key, 1, job_id):
                async with self.client.pipeline(transaction=True) as pipe:
                    pipe.hset(self.job_key(job_id), "status", JobStatus.WAITING)
                    pipe.rpush(self.waiting_key, job_id)
                    await pipe.execute()
                requeued += 1
                logger.warning(f"Requeued stalled job {job_id} on {self.name}")
        return requeued

    async def ping(self) -> bool:
        return bool(await self.client.ping())


class JobQueueError(Exception):
    """Exception raised when the queue cannot accept or track a job."""
    pass
