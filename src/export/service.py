import functools
import logging
from pathlib import Path
from typing import Optional

from redis.asyncio import Redis

from src.config import Settings
from src.crud.crud_export import InMemoryJobStatusStore, JobStatusStore, RedisJobStatusStore
from src.crud.crud_records import RecordStore, SQLRecordStore
from src.db.db import get_async_session_maker
from src.errors import ExportAccessDenied, ExportGone, ExportNotReady
from src.export.runner import AsyncioJobRunner, CeleryJobRunner, JobRunner
from src.export.schemas import ExportJob, ExportProgressResponse, ExportStatusEnum
from src.storage.blob_store import BlobStore, build_blob_store

logger = logging.getLogger(__name__)


class ExportService:
    """Submit, poll and download account exports.

    Every call is scoped to the authenticated owner. Only the background job
    writes a job record; this class creates it and afterwards only reads it.
    """

    def __init__(self, store: JobStatusStore, runner: JobRunner):
        self.store = store
        self.runner = runner

    async def submit(self, current_user_id: str, requested_uid: str) -> ExportJob:
        if not requested_uid or requested_uid != current_user_id:
            raise ExportAccessDenied()

        job = ExportJob(owner_id=current_user_id)
        await self.store.put(job)
        try:
            self.runner.start(job.job_id, job.owner_id)
        except Exception as e:
            # no worker will ever run it
            logger.exception(f"❌ Could not start export job {job.job_id}: {e}")
            job.mark_failed(f"failed to start export: {e}")
            await self.store.put(job)
            raise

        logger.info(f"Export job {job.job_id} submitted for user {current_user_id}")
        return job

    async def _get_owned_job(self, owner_id: str, job_id: str) -> ExportJob:
        job = await self.store.get(job_id)
        if job.owner_id != owner_id:
            logger.warning(f"User {owner_id} tried to access export job {job_id} of another user")
            raise ExportAccessDenied()
        return job

    async def poll(self, owner_id: str, job_id: str) -> ExportProgressResponse:
        job = await self._get_owned_job(owner_id, job_id)
        # keep jobs that are being watched from expiring
        await self.store.touch(job_id)
        return ExportProgressResponse.from_job(job)

    async def download(self, owner_id: str, job_id: str) -> Path:
        job = await self._get_owned_job(owner_id, job_id)
        if job.status != ExportStatusEnum.COMPLETED or not job.archive_location:
            raise ExportNotReady()

        archive = Path(job.archive_location)
        if not archive.is_file():
            logger.warning(f"Archive for export job {job_id} is gone: {archive}")
            raise ExportGone()
        return archive


def build_export_service(
    settings: Settings,
    redis: Optional[Redis] = None,
    record_store: Optional[RecordStore] = None,
    blob_store: Optional[BlobStore] = None,
) -> ExportService:
    """Wire the export service from configuration."""
    from src.tasks.export_worker import run_export_job

    if settings.EXPORT_JOB_STORE == "redis":
        if redis is None:
            raise RuntimeError("EXPORT_JOB_STORE=redis needs a Redis client")
        store = RedisJobStatusStore(redis, settings.EXPORT_JOB_TTL_SECONDS)
    else:
        store = InMemoryJobStatusStore(settings.EXPORT_JOB_TTL_SECONDS)

    if settings.EXPORT_RUNNER == "celery":
        if settings.EXPORT_JOB_STORE != "redis":
            raise RuntimeError("EXPORT_RUNNER=celery needs EXPORT_JOB_STORE=redis")
        runner = CeleryJobRunner()
    else:
        job_fn = functools.partial(
            run_export_job,
            store=store,
            record_store=record_store or SQLRecordStore(get_async_session_maker()),
            blob_store=blob_store or build_blob_store(settings),
            export_root=Path(settings.EXPORT_ROOT),
        )
        runner = AsyncioJobRunner(job_fn, store)

    logger.info(
        f"Export service ready: store={settings.EXPORT_JOB_STORE} runner={settings.EXPORT_RUNNER}"
    )
    return ExportService(store, runner)
