"""
Redis Streams implementation of the QueueBroker interface.

Layout for a queue named <q> under key prefix <p>:
    <p><q>            stream of ready and leased jobs (consumer group <q>-workers)
    <p><q>:delayed    sorted set of jobs waiting for their retry, scored by ready time
    <p><q>:stalls     hash job_id -> times the job's lease expired
    <p><q>:failed     stream of dead-lettered jobs
    <p><q>:completed  stream of completed jobs kept when remove_on_complete is off
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from pydantic import ValidationError as SchemaError
from redis.exceptions import RedisError, ResponseError

from ..domain.ports import QueueBroker, QueueBrokerError
from ..domain.schema import Delivery, HealthStatus, Job
from .redis_client import RedisClient


logger = logging.getLogger(__name__)


# Atomically move due jobs from the delayed set back onto the stream so that
# two consumers promoting at once cannot enqueue the same retry twice.
PROMOTE_DUE_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, payload in ipairs(due) do
    redis.call('ZREM', KEYS[1], payload)
    local job = cjson.decode(payload)
    redis.call('XADD', KEYS[2], '*', 'job_id', job['id'], 'job_json', payload)
end
return #due
"""


class RedisStreamBroker(QueueBroker):
    """
    Redis Streams broker with consumer-group leases.

    A claimed entry stays in the group's pending list until acknowledged;
    its idle time is the lease. Entries idle longer than the lock duration
    are taken over with XAUTOCLAIM.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        queue_name: str = "form-submissions",
        key_prefix: str = "form-relay:",
        archive_maxlen: int = 100_000
    ):
        """
        Initialize Redis Stream broker.

        Args:
            redis_client: Connected Redis client
            queue_name: Logical queue name
            key_prefix: Prefix for every key of this queue
            archive_maxlen: Approximate cap for the failed/completed streams
        """
        self.redis_client = redis_client
        self.queue_name = queue_name
        self.stream_key = f"{key_prefix}{queue_name}"
        self.group = f"{queue_name}-workers"
        self.delayed_key = f"{self.stream_key}:delayed"
        self.stalls_key = f"{self.stream_key}:stalls"
        self.failed_key = f"{self.stream_key}:failed"
        self.completed_key = f"{self.stream_key}:completed"
        self.archive_maxlen = archive_maxlen

        self._group_ready = False
        self._promote_script = None

    @contextmanager
    def _broker_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except RedisError as e:
            logger.error(
                f"Redis {operation} failed: {e}",
                extra={
                    "component": "redis_broker",
                    "operation": operation,
                    "stream": self.stream_key,
                    "error": str(e)
                }
            )
            raise QueueBrokerError(f"Redis {operation} failed: {e}") from e

    async def ensure_group(self) -> None:
        """Create the stream and its consumer group if they don't exist."""
        with self._broker_errors("xgroup_create"):
            try:
                await self.redis_client.client.xgroup_create(
                    self.stream_key,
                    self.group,
                    id="0",
                    mkstream=True
                )
                logger.info(
                    "Created consumer group",
                    extra={"component": "redis_broker", "stream": self.stream_key, "group": self.group}
                )
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise
        self._group_ready = True

    async def push(self, job: Job) -> str:
        with self._broker_errors("xadd"):
            entry_id = await self.redis_client.client.xadd(
                self.stream_key,
                self._entry_fields(job)
            )

        logger.debug(
            f"Job written to stream: {entry_id}",
            extra={"component": "redis_broker", "job_id": job.id, "entry_id": entry_id}
        )
        return entry_id

    async def claim(self, consumer: str, count: int, block_ms: int) -> List[Delivery]:
        if not self._group_ready:
            await self.ensure_group()

        with self._broker_errors("xreadgroup"):
            try:
                response = await self.redis_client.client.xreadgroup(
                    self.group,
                    consumer,
                    {self.stream_key: ">"},
                    count=count,
                    block=block_ms
                )
            except ResponseError as e:
                if "NOGROUP" not in str(e):
                    raise
                # Stream was removed under us; recreate and try again next round
                logger.warning("Consumer group missing, recreating", extra={"component": "redis_broker"})
                self._group_ready = False
                return []

            if not response:
                return []

            streams = response.items() if isinstance(response, dict) else response
            deliveries = []
            for _, entries in streams:
                for entry_id, fields in entries:
                    delivery = await self._to_delivery(entry_id, fields)
                    if delivery:
                        deliveries.append(delivery)
        return deliveries

    async def extend_lease(self, consumer: str, delivery: Delivery) -> bool:
        with self._broker_errors("xclaim"):
            pending = await self.redis_client.client.xpending_range(
                self.stream_key,
                self.group,
                min=delivery.entry_id,
                max=delivery.entry_id,
                count=1
            )
            if not pending or pending[0].get("consumer") != consumer:
                return False

            # JUSTID resets idle time without bumping the delivery counter
            claimed = await self.redis_client.client.xclaim(
                self.stream_key,
                self.group,
                consumer,
                min_idle_time=0,
                message_ids=[delivery.entry_id],
                justid=True
            )
        return bool(claimed)

    async def reclaim_stalled(
        self,
        consumer: str,
        min_idle_ms: int,
        count: int
    ) -> List[Delivery]:
        if not self._group_ready:
            await self.ensure_group()

        with self._broker_errors("xautoclaim"):
            result = await self.redis_client.client.xautoclaim(
                self.stream_key,
                self.group,
                consumer,
                min_idle_time=min_idle_ms,
                start_id="0-0",
                count=count
            )

            entries = result[1] if len(result) > 1 else []
            deleted = result[2] if len(result) > 2 else []
            if deleted:
                await self.redis_client.client.xack(self.stream_key, self.group, *deleted)

            deliveries = []
            for entry_id, fields in entries:
                delivery = await self._to_delivery(entry_id, fields)
                if not delivery:
                    continue
                delivery.job.stalled_count = await self.redis_client.client.hincrby(
                    self.stalls_key,
                    delivery.job.id,
                    1
                )
                deliveries.append(delivery)

        return deliveries

    async def complete(self, delivery: Delivery) -> None:
        job = delivery.job
        with self._broker_errors("complete"):
            async with self.redis_client.transaction() as pipe:
                pipe.xack(self.stream_key, self.group, delivery.entry_id)
                pipe.xdel(self.stream_key, delivery.entry_id)
                pipe.hdel(self.stalls_key, job.id)
                if not job.remove_on_complete:
                    pipe.xadd(
                        self.completed_key,
                        {
                            **self._entry_fields(job),
                            "completed_at": datetime.now(timezone.utc).isoformat()
                        },
                        maxlen=self.archive_maxlen,
                        approximate=True
                    )

    async def retry_later(self, delivery: Delivery, ready_at_ms: int) -> None:
        with self._broker_errors("retry_later"):
            async with self.redis_client.transaction() as pipe:
                pipe.zadd(self.delayed_key, {delivery.job.model_dump_json(): ready_at_ms})
                pipe.xack(self.stream_key, self.group, delivery.entry_id)
                pipe.xdel(self.stream_key, delivery.entry_id)

    async def dead_letter(self, delivery: Delivery) -> None:
        job = delivery.job
        with self._broker_errors("dead_letter"):
            async with self.redis_client.transaction() as pipe:
                pipe.xadd(
                    self.failed_key,
                    {
                        **self._entry_fields(job),
                        "failed_reason": job.failed_reason or "",
                        "failed_at": datetime.now(timezone.utc).isoformat()
                    },
                    maxlen=self.archive_maxlen,
                    approximate=True
                )
                pipe.xack(self.stream_key, self.group, delivery.entry_id)
                pipe.xdel(self.stream_key, delivery.entry_id)
                pipe.hdel(self.stalls_key, job.id)

    async def promote_due(self, now_ms: int, limit: int) -> int:
        if self._promote_script is None:
            self._promote_script = self.redis_client.register_script(PROMOTE_DUE_SCRIPT)

        with self._broker_errors("promote_due"):
            promoted = await self._promote_script(
                keys=[self.delayed_key, self.stream_key],
                args=[now_ms, limit]
            )
        return int(promoted or 0)

    async def check_health(self) -> HealthStatus:
        """
        Check Redis health and report queue depth.

        Returns:
            HealthStatus with current state
        """
        checks = {}
        overall_status = "healthy"

        ping_result = await self.redis_client.ping()
        checks["redis_ping"] = "ok" if ping_result else "failed"
        if not ping_result:
            return HealthStatus(status="unhealthy", checks=checks)

        try:
            client = self.redis_client.client
            checks["stream_length"] = str(await client.xlen(self.stream_key))
            checks["delayed"] = str(await client.zcard(self.delayed_key))
            checks["dead_lettered"] = str(await client.xlen(self.failed_key))

            try:
                summary = await client.xpending(self.stream_key, self.group)
                checks["pending"] = str(summary.get("pending", 0))
            except ResponseError:
                # Group is created on first claim
                checks["pending"] = "no_group_yet"

        except RedisError as e:
            logger.error(f"Health check failed: {e}")
            overall_status = "unhealthy"
            checks["general"] = f"error_{e}"

        return HealthStatus(status=overall_status, checks=checks)

    @staticmethod
    def _entry_fields(job: Job) -> Dict[str, str]:
        """Redis Streams require string values; the job travels as one JSON field."""
        return {
            "job_id": job.id,
            "job_json": job.model_dump_json()
        }

    async def _to_delivery(self, entry_id: str, fields: Optional[Dict[str, str]]) -> Optional[Delivery]:
        if not fields:
            # Entry deleted while still pending
            await self.redis_client.client.xack(self.stream_key, self.group, entry_id)
            return None

        try:
            job = Job.model_validate_json(fields["job_json"])
        except (KeyError, SchemaError) as e:
            logger.error(
                f"Unreadable job entry {entry_id}, moving to dead-letter stream",
                extra={"component": "redis_broker", "entry_id": entry_id, "error": str(e)}
            )
            async with self.redis_client.transaction() as pipe:
                pipe.xadd(
                    self.failed_key,
                    {
                        **{k: str(v) for k, v in fields.items()},
                        "failed_reason": f"unreadable entry: {e}",
                        "failed_at": datetime.now(timezone.utc).isoformat()
                    },
                    maxlen=self.archive_maxlen,
                    approximate=True
                )
                pipe.xack(self.stream_key, self.group, entry_id)
                pipe.xdel(self.stream_key, entry_id)
            return None

        return Delivery(entry_id=entry_id, job=job)
