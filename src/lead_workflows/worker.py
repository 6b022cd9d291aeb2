"""Redis Stream worker: trigger dispatch, participant execution and scheduling."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
import time
from contextlib import suppress
from typing import Any, cast

from redis.asyncio import Redis
from redis.exceptions import ResponseError
from typing_extensions import override

from lead_workflows.api.deps import build_engine, close_resources, get_collaborators, get_redis
from lead_workflows.config import EngineConfig, get_config
from lead_workflows.core.executor import NodeExecutor
from lead_workflows.core.messaging import RedisJobQueue, dead_letter, decode_event, decode_job
from lead_workflows.core.triggers import TriggerDispatcher
from lead_workflows.storage.database import dispose_engine, init_db

logger = logging.getLogger(__name__)

StreamEntries = list[tuple[bytes | str, list[tuple[bytes | str, dict[bytes, bytes]]]]]


def _decode(value: bytes | str) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return value


class StreamConsumer:
    """Consume one Redis stream through a consumer group.

    Subclasses implement :meth:`handle`. An entry is acknowledged once
    ``handle`` returns; failures are routed through :meth:`on_failure`.
    Entries left pending longer than ``claim_idle_ms`` (a consumer died
    mid-batch, or a failure could not be recorded) are reclaimed with
    ``XAUTOCLAIM`` and handled again.
    """

    def __init__(
        self,
        redis: Redis,
        stream_key: str,
        group: str,
        consumer: str,
        *,
        batch_size: int = 8,
        block_ms: int = 5000,
        claim_idle_ms: int = 60_000,
        claim_interval_seconds: float = 30.0,
    ) -> None:
        self._redis = redis
        self.stream_key: str = stream_key
        self.group: str = group
        self.consumer: str = consumer
        self.batch_size: int = batch_size
        self.block_ms: int = block_ms
        self.claim_idle_ms: int = claim_idle_ms
        self.claim_interval_seconds: float = claim_interval_seconds

        self._claim_cursor: str = "0-0"
        self._next_claim_at: float = 0.0
        self._stop_event: asyncio.Event = asyncio.Event()

    async def run(self) -> None:
        await self._ensure_consumer_group()
        while not self._stop_event.is_set():
            entries = await self._claim_stale() or await self._read_batch()
            if entries:
                await self._process_entries(entries)

    def request_shutdown(self) -> None:
        self._stop_event.set()

    async def handle(self, message_id: str, payload: dict[bytes, bytes]) -> None:
        raise NotImplementedError

    async def on_failure(
        self,
        message_id: str,
        payload: dict[bytes, bytes],
        exc: Exception,
    ) -> None:
        await dead_letter(
            self._redis,
            self.stream_key,
            message_id=message_id,
            payload=payload,
            error=str(exc) or type(exc).__name__,
        )

    async def _read_batch(self) -> StreamEntries:
        try:
            return cast(
                StreamEntries,
                await self._redis.xreadgroup(
                    groupname=self.group,
                    consumername=self.consumer,
                    streams={self.stream_key: ">"},
                    count=self.batch_size,
                    block=self.block_ms,
                ),
            )
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to read from stream", extra={"stream": self.stream_key})
            await asyncio.sleep(1.0)
            return []

    async def _claim_stale(self) -> StreamEntries:
        """Take over entries idle in any consumer's pending list.

        The cursor walks the pending list a batch per call; once it wraps
        around, the next scan waits ``claim_interval_seconds``.
        """

        now = time.monotonic()
        if now < self._next_claim_at:
            return []
        try:
            result = await self._redis.xautoclaim(
                self.stream_key,
                self.group,
                self.consumer,
                min_idle_time=self.claim_idle_ms,
                start_id=self._claim_cursor,
                count=self.batch_size,
            )
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to claim pending entries", extra={"stream": self.stream_key})
            self._next_claim_at = now + self.claim_interval_seconds
            return []

        self._claim_cursor = _decode(result[0])
        if self._claim_cursor == "0-0":
            self._next_claim_at = now + self.claim_interval_seconds
        # Entries trimmed from the stream come back without a payload.
        messages = [(raw_id, payload) for raw_id, payload in result[1] if payload]
        if not messages:
            return []
        logger.warning(
            "Reclaimed idle stream entries",
            extra={"stream": self.stream_key, "count": len(messages)},
        )
        return [(self.stream_key, messages)]

    async def _process_entries(self, entries: StreamEntries) -> None:
        for _stream_name, messages in entries:
            for raw_id, payload in messages:
                message_id = _decode(raw_id)
                try:
                    await self.handle(message_id, payload)
                except Exception as exc:
                    logger.exception(
                        "Failed to process stream entry",
                        extra={"stream": self.stream_key, "message_id": message_id},
                    )
                    try:
                        await self.on_failure(message_id, payload, exc)
                    except Exception:  # pragma: no cover - logging only
                        logger.exception(
                            "Failed to record stream failure",
                            extra={"stream": self.stream_key, "message_id": message_id},
                        )
                        # Left pending so the entry is not lost.
                        continue
                await self._ack(message_id)

    async def _ack(self, message_id: str) -> None:
        try:
            await self._redis.xack(self.stream_key, self.group, message_id)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to ack message", extra={"message_id": message_id})

    async def _ensure_consumer_group(self) -> None:
        try:
            await self._redis.xgroup_create(
                name=self.stream_key,
                groupname=self.group,
                id="0-0",
                mkstream=True,
            )
            logger.info(
                "Created consumer group",
                extra={"stream": self.stream_key, "group": self.group},
            )
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise


class TriggerConsumer(StreamConsumer):
    """Feeds domain events from the trigger stream to the dispatcher."""

    def __init__(
        self,
        redis: Redis,
        stream_key: str,
        group: str,
        consumer: str,
        dispatcher: TriggerDispatcher,
        **options: Any,
    ) -> None:
        super().__init__(redis, stream_key, group, consumer, **options)
        self._dispatcher = dispatcher

    @override
    async def handle(self, message_id: str, payload: dict[bytes, bytes]) -> None:
        event = decode_event(payload)
        report = await self._dispatcher.handle_event(event)
        logger.debug(
            "Dispatched domain event",
            extra={
                "message_id": message_id,
                "event_id": event.event_id,
                "matched": len(report.matched),
                "enrolled": len(report.enrolled),
            },
        )


class JobConsumer(StreamConsumer):
    """Runs participant execution jobs, retrying infrastructure failures."""

    def __init__(
        self,
        redis: Redis,
        stream_key: str,
        group: str,
        consumer: str,
        executor: NodeExecutor,
        jobs: RedisJobQueue,
        **options: Any,
    ) -> None:
        super().__init__(redis, stream_key, group, consumer, **options)
        self._executor = executor
        self._jobs = jobs

    @override
    async def handle(self, message_id: str, payload: dict[bytes, bytes]) -> None:
        job = decode_job(payload)
        outcome = await self._executor.execute_step(job.participant_id)
        logger.debug(
            "Executed participant job",
            extra={
                "message_id": message_id,
                "participant_id": str(job.participant_id),
                "steps": outcome.steps,
                "status": outcome.status.value if outcome.status else None,
            },
        )

    @override
    async def on_failure(
        self,
        message_id: str,
        payload: dict[bytes, bytes],
        exc: Exception,
    ) -> None:
        try:
            job = decode_job(payload)
        except ValueError:
            await super().on_failure(message_id, payload, exc)
            return
        await self._jobs.retry_or_dead_letter(
            job,
            message_id=message_id,
            payload=payload,
            error=str(exc) or type(exc).__name__,
        )


async def promote_delayed_jobs(
    jobs: RedisJobQueue,
    stop_event: asyncio.Event,
    *,
    poll_seconds: float = 1.0,
) -> None:
    """Move due retries and continuations onto the job stream until stopped."""

    while not stop_event.is_set():
        try:
            promoted = await jobs.promote_due()
            if promoted:
                logger.debug("Promoted delayed jobs", extra={"count": promoted})
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to promote delayed jobs", extra={"key": jobs.delayed_key})
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=poll_seconds)


class EngineWorker:
    """Process hosting both stream consumers, the promoter and the scheduler."""

    def __init__(self, config: EngineConfig, consumer: str) -> None:
        self.config = config
        self.consumer = consumer
        self._stop_event: asyncio.Event = asyncio.Event()
        self._consumers: list[StreamConsumer] = []

    async def run(self) -> None:
        await init_db()
        redis = get_redis()
        _, executor, dispatcher, scheduler = build_engine(get_collaborators(), config=self.config)
        jobs = RedisJobQueue(
            redis,
            self.config.job_stream_key,
            max_attempts=self.config.max_job_attempts,
            backoff_seconds=self.config.job_backoff_seconds,
        )
        group = self.config.consumer_group
        options: dict[str, Any] = {
            "batch_size": self.config.consumer_batch_size,
            "block_ms": self.config.consumer_block_ms,
            "claim_idle_ms": self.config.claim_idle_ms,
            "claim_interval_seconds": self.config.claim_interval_seconds,
        }
        self._consumers = [
            TriggerConsumer(
                redis,
                self.config.trigger_stream_key,
                group,
                self.consumer,
                dispatcher,
                **options,
            ),
            JobConsumer(
                redis,
                self.config.job_stream_key,
                group,
                self.consumer,
                executor,
                jobs,
                **options,
            ),
        ]

        await scheduler.start()
        tasks = [asyncio.create_task(consumer.run()) for consumer in self._consumers]
        tasks.append(
            asyncio.create_task(
                promote_delayed_jobs(
                    jobs, self._stop_event, poll_seconds=self.config.delayed_poll_seconds
                )
            )
        )
        logger.info("Workflow worker started", extra={"consumer": self.consumer})
        try:
            await self._stop_event.wait()
            # Consumers finish their current batch after the stop flag is set.
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            for task in tasks:
                task.cancel()
            await scheduler.shutdown()
            await close_resources()
            await dispose_engine()
            logger.info("Workflow worker stopped")

    def request_shutdown(self) -> None:
        self._stop_event.set()
        for consumer in self._consumers:
            consumer.request_shutdown()


async def main() -> None:
    config = get_config()
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level)

    consumer = os.getenv(
        "LEAD_WORKFLOWS_CONSUMER_NAME",
        f"{socket.gethostname()}-{os.getpid()}",
    )
    worker = EngineWorker(config, consumer)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, worker.request_shutdown)

    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
