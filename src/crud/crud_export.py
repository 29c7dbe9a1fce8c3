# src/crud/crud_export.py
"""Job status store: one JSON record per export job, expiring after a fixed TTL.

Every ``put`` rewrites the whole record and restarts its expiry window. There
is no partial field update; the background task that owns a job is its only
writer, so read-modify-write is safe without locks.
"""
import logging
import time
from typing import Callable, Dict, Protocol, Tuple

from redis.asyncio import Redis

from src.db.redis import make_cache_key
from src.errors import ExportJobNotFound
from src.export.schemas import ExportJob

logger = logging.getLogger(__name__)

EXPORT_JOB_KEY_PREFIX = "export_job"
DEFAULT_EXPORT_JOB_TTL = 24 * 60 * 60


class JobStatusStore(Protocol):
    async def put(self, job: ExportJob) -> None: ...

    async def get(self, job_id: str) -> ExportJob: ...

    async def touch(self, job_id: str) -> None: ...


def export_job_key(job_id: str) -> str:
    return make_cache_key(EXPORT_JOB_KEY_PREFIX, job_id)


class RedisJobStatusStore:
    """Export job records kept in Redis under ``export_job:<job_id>``."""

    def __init__(self, redis: Redis, ttl_seconds: int = DEFAULT_EXPORT_JOB_TTL):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def put(self, job: ExportJob) -> None:
        await self.redis.set(export_job_key(job.job_id), job.model_dump_json(), ex=self.ttl_seconds)

    async def get(self, job_id: str) -> ExportJob:
        raw = await self.redis.get(export_job_key(job_id))
        if raw is None:
            raise ExportJobNotFound()
        return ExportJob.model_validate_json(raw)

    async def touch(self, job_id: str) -> None:
        refreshed = await self.redis.expire(export_job_key(job_id), self.ttl_seconds)
        if not refreshed:
            raise ExportJobNotFound()


class InMemoryJobStatusStore:
    """Process-local store for development and tests.

    Records are kept serialized so callers never share a mutable job object,
    matching what they would get back from Redis. Expired records are swept
    on every access.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_EXPORT_JOB_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._records: Dict[str, Tuple[float, str]] = {}

    def _sweep(self):
        now = self.clock()
        expired = [job_id for job_id, (expires_at, _) in self._records.items() if expires_at <= now]
        for job_id in expired:
            del self._records[job_id]
        if expired:
            logger.debug(f"Swept {len(expired)} expired export job record(s)")

    async def put(self, job: ExportJob) -> None:
        self._sweep()
        self._records[job.job_id] = (self.clock() + self.ttl_seconds, job.model_dump_json())

    async def get(self, job_id: str) -> ExportJob:
        self._sweep()
        record = self._records.get(job_id)
        if record is None:
            raise ExportJobNotFound()
        return ExportJob.model_validate_json(record[1])

    async def touch(self, job_id: str) -> None:
        self._sweep()
        record = self._records.get(job_id)
        if record is None:
            raise ExportJobNotFound()
        self._records[job_id] = (self.clock() + self.ttl_seconds, record[1])

    def __len__(self) -> int:
        self._sweep()
        return len(self._records)
