"""
Dead-letter storage for exhausted dispatch jobs.
Jobs are stored in their wire form so an operator (or a replay script) can
re-enqueue them with NotificationJob.from_wire.
"""

import json
from collections import deque
from datetime import UTC, datetime

from redis.exceptions import RedisError

from app.infrastructure.observability.logging import get_logger
from app.models.domain.job_domain import NotificationJob
from app.services.redis_client import FastRedisClient

logger = get_logger(__name__)


class DeadLetterStore:
    """
    Records exhausted jobs in a Redis list, or in a bounded process-local
    buffer when no Redis client is configured.

    record() is registered as a DispatchPipeline exhaustion sink.
    """

    def __init__(
        self,
        redis_client: FastRedisClient | None = None,
        key: str = "dispatch:dead_letter",
        max_entries: int = 10_000,
    ):
        self.redis_client = redis_client
        self.key = key
        self.max_entries = max_entries
        self._local: deque[dict] = deque(maxlen=max_entries)

    @property
    def uses_redis(self) -> bool:
        return self.redis_client is not None

    def _entry(self, job: NotificationJob) -> dict:
        return {
            "job": job.to_wire(),
            "error": job.last_error,
            "deadLetteredAt": datetime.now(UTC).isoformat(),
        }

    async def record(self, job: NotificationJob) -> None:
        entry = self._entry(job)

        if self.redis_client is None:
            self._local.append(entry)
        else:
            try:
                length = await self.redis_client.rpush(self.key, json.dumps(entry))
                if length > self.max_entries:
                    await self.redis_client.ltrim(self.key, -self.max_entries, -1)
            except (RedisError, RuntimeError) as e:
                # keep the entry locally so it is not lost with the process log only
                logger.error(
                    "Dead-letter write failed, buffering locally",
                    job_id=job.id,
                    error=str(e),
                )
                self._local.append(entry)
                return

        logger.error(
            "Job moved to dead-letter store",
            job_id=job.id,
            template_id=job.template_id,
            request_id=job.request_id,
            attempts=job.attempts,
        )

    async def list_entries(self, limit: int = 100) -> list[dict]:
        """Most recent entries last."""
        entries = list(self._local)[-limit:]
        if self.redis_client is None:
            return entries

        raw = await self.redis_client.lrange(self.key, -limit, -1)
        return [json.loads(item) for item in raw] + entries

    async def count(self) -> int:
        local = len(self._local)
        if self.redis_client is None:
            return local
        return await self.redis_client.llen(self.key) + local
