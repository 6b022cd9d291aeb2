"""Redis Streams transport for domain events and participant execution jobs.

Jobs are delivered at least once. Delayed jobs (retries with backoff and
step-limit continuations) sit in a sorted set scored by their due time until
``promote_due`` moves them onto the stream.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from datetime import timedelta
from typing import Protocol, cast

from redis.asyncio import Redis

from ..schemas import DomainEvent, ExecutionJob

__all__ = [
    "DLQ_SUFFIX",
    "DELAYED_SUFFIX",
    "EventBus",
    "JobQueue",
    "RedisEventBus",
    "RedisJobQueue",
    "create_redis_client",
    "decode_event",
    "decode_fields",
    "decode_job",
    "dead_letter",
]

logger = logging.getLogger(__name__)

DLQ_SUFFIX = ":dlq"
DELAYED_SUFFIX = ":delayed"


class JobQueue(Protocol):
    """Hands participant execution off to a worker."""

    async def enqueue(self, job: ExecutionJob, *, delay: timedelta | None = None) -> None: ...


class EventBus(Protocol):
    """Publishes domain events without waiting for them to be dispatched."""

    async def publish(self, event: DomainEvent) -> str: ...


def create_redis_client(redis_url: str) -> Redis:
    return Redis.from_url(  # pyright: ignore[reportUnknownMemberType]
        redis_url,
        encoding="utf-8",
        decode_responses=False,
    )


def _decode(value: bytes | str) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return value


def decode_fields(payload: Mapping[bytes | str, bytes | str]) -> dict[str, str]:
    return {_decode(key): _decode(value) for key, value in payload.items()}


def decode_job(payload: Mapping[bytes | str, bytes | str]) -> ExecutionJob:
    fields = decode_fields(payload)
    if "job" not in fields:
        raise ValueError("Job entry is missing the 'job' field")
    return ExecutionJob.model_validate_json(fields["job"])


def decode_event(payload: Mapping[bytes | str, bytes | str]) -> DomainEvent:
    fields = decode_fields(payload)
    if "event" in fields:
        return DomainEvent.model_validate_json(fields["event"])
    # Flat entries written by other producers: data may be JSON encoded.
    normalized: dict[str, object] = dict(fields)
    if "data" in normalized:
        normalized["data"] = json.loads(fields["data"])
    return DomainEvent.model_validate(normalized)


async def dead_letter(
    redis: Redis,
    stream_key: str,
    *,
    message_id: str,
    payload: Mapping[bytes | str, bytes | str],
    error: str,
) -> None:
    """Copy a poisoned entry to ``<stream>:dlq`` with the failure reason."""

    dlq_stream = f"{stream_key}{DLQ_SUFFIX}"
    await redis.xadd(
        dlq_stream,
        {
            "message_id": message_id,
            "stream": stream_key,
            "error": error,
            "payload": json.dumps(decode_fields(payload)),
        },
    )
    logger.warning(
        "Moved message to dead-letter stream",
        extra={"stream": stream_key, "message_id": message_id, "error": error},
    )


class RedisEventBus:
    """Event bus writing domain events to the trigger stream."""

    def __init__(self, redis: Redis, stream_key: str) -> None:
        self._redis = redis
        self.stream_key = stream_key

    async def publish(self, event: DomainEvent) -> str:
        message_id = await self._redis.xadd(self.stream_key, {"event": event.model_dump_json()})
        logger.debug(
            "Published domain event",
            extra={"event_id": event.event_id, "event_type": event.event_type.value},
        )
        return _decode(cast(bytes | str, message_id))


class RedisJobQueue:
    """Durable job queue with delayed delivery, bounded retries and a DLQ."""

    def __init__(
        self,
        redis: Redis,
        stream_key: str,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._redis = redis
        self.stream_key = stream_key
        self.delayed_key = f"{stream_key}{DELAYED_SUFFIX}"
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def enqueue(self, job: ExecutionJob, *, delay: timedelta | None = None) -> None:
        payload = job.model_dump_json()
        if delay is not None and delay.total_seconds() > 0:
            due = time.time() + delay.total_seconds()
            await self._redis.zadd(self.delayed_key, {payload: due})
            return
        await self._redis.xadd(self.stream_key, {"job": payload})

    async def promote_due(self, *, now: float | None = None, limit: int = 100) -> int:
        """Move due delayed jobs onto the stream; returns how many moved.

        ``ZREM`` decides which of several concurrent promoters owns a member,
        so each delayed job is published once.
        """

        cutoff = time.time() if now is None else now
        members = await self._redis.zrangebyscore(
            self.delayed_key, "-inf", cutoff, start=0, num=limit
        )
        promoted = 0
        for member in members:
            if not await self._redis.zrem(self.delayed_key, member):
                continue
            await self._redis.xadd(self.stream_key, {"job": _decode(member)})
            promoted += 1
        return promoted

    def retry_delay(self, attempt: int) -> timedelta:
        return timedelta(seconds=self.backoff_seconds * (2 ** (attempt - 1)))

    async def retry_or_dead_letter(
        self,
        job: ExecutionJob,
        *,
        message_id: str,
        payload: Mapping[bytes | str, bytes | str],
        error: str,
    ) -> bool:
        """Schedule another attempt; returns ``False`` once attempts are exhausted."""

        if job.attempt >= self.max_attempts:
            await dead_letter(
                self._redis,
                self.stream_key,
                message_id=message_id,
                payload=payload,
                error=error,
            )
            return False

        delay = self.retry_delay(job.attempt)
        await self.enqueue(
            job.model_copy(update={"attempt": job.attempt + 1, "reason": "retry"}),
            delay=delay,
        )
        logger.info(
            "Scheduled job retry",
            extra={
                "job_id": job.job_id,
                "participant_id": str(job.participant_id),
                "attempt": job.attempt + 1,
                "delay_seconds": delay.total_seconds(),
            },
        )
        return True
