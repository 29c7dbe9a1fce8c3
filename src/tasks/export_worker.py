import asyncio
import logging
from contextlib import aclosing
from pathlib import Path
from typing import Optional, Tuple

import aiofiles

from src.config import settings
from src.core.celery_app import celery_app
from src.crud.crud_export import JobStatusStore, RedisJobStatusStore
from src.crud.crud_records import RecordStore, SQLRecordStore
from src.db.db import get_async_session_maker
from src.db.models import MediaCategory
from src.db.redis import init_redis_client
from src.errors import ExportJobError
from src.export.schemas import ExportJob, ExportStatusEnum, MEDIA_COUNTER
from src.storage.blob_store import BlobStore, build_blob_store
from src.tasks.archive import build_archive
from src.tasks.export_helpers import TABULAR_FILENAME, TabularWriter, media_filename


logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "export interrupted before completion"
OWNER_MISMATCH_MESSAGE = "export was dispatched for a different user"

# images first, then audio
MEDIA_ORDER = (MediaCategory.images, MediaCategory.audio)


def job_paths(export_root: Path, owner_id: str, job_id: str) -> Tuple[Path, Path]:
    """Working directory and archive path for one job."""
    owner_root = export_root / owner_id
    return owner_root / job_id, owner_root / f"{job_id}.zip"


def _unique_destination(dest: Path) -> Path:
    if not dest.exists():
        return dest
    n = 1
    while True:
        candidate = dest.with_name(f"{dest.stem}-{n}{dest.suffix}")
        if not candidate.exists():
            return candidate
        n += 1


class ExportExtractor:
    """
    Writes one owner's entries to ``entries.csv`` and copies their media into
    ``<entry_id>/images`` and ``<entry_id>/audio``, persisting counters and
    progress after every unit of work.

    Counting, streaming and media listing failures are fatal and raised as
    ExportJobError. A single asset that cannot be copied is logged and skipped,
    and still counts as processed.
    """

    def __init__(self, store: JobStatusStore, record_store: RecordStore, blob_store: BlobStore):
        self.store = store
        self.record_store = record_store
        self.blob_store = blob_store

    async def extract(self, job: ExportJob, work_dir: Path):
        try:
            totals = await self.record_store.count_owner_records(job.owner_id)
        except Exception as e:
            raise ExportJobError(f"failed to count records: {e}") from e

        job.set_totals(totals)
        await self.store.put(job)
        logger.info(
            f"Job {job.job_id} totals: {totals.entries} entries, "
            f"{totals.images} images, {totals.audio} audio"
        )

        with TabularWriter(work_dir / TABULAR_FILENAME) as table:
            try:
                async for record in self.record_store.stream_owner_records(job.owner_id):
                    table.write_row(record)
                    await self._advance(job, "entries")

                    for category in MEDIA_ORDER:
                        await self._copy_record_media(job, record.id, category, work_dir)
            except ExportJobError:
                raise
            except Exception as e:
                raise ExportJobError(f"failed to export entries: {e}") from e

    async def _advance(self, job: ExportJob, counter: str):
        if not job.record_processed(counter):
            logger.warning(
                f"Job {job.job_id}: more {counter} than counted up front, "
                f"total raised to {getattr(job.totals, counter)}"
            )
        await self.store.put(job)

    async def _copy_record_media(self, job: ExportJob, record_id: str, category: MediaCategory, work_dir: Path):
        try:
            refs = await self.record_store.list_record_media(record_id, category)
        except Exception as e:
            raise ExportJobError(f"failed to list {category.value} for entry {record_id}: {e}") from e

        dest_dir = work_dir / record_id / category.value
        for ref in refs:
            await self._copy_asset(job, ref, dest_dir)
            await self._advance(job, MEDIA_COUNTER[category])

    async def _copy_asset(self, job: ExportJob, ref: str, dest_dir: Path) -> bool:
        dest: Optional[Path] = None
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            dest = _unique_destination(dest_dir / media_filename(ref))
            async with aclosing(self.blob_store.fetch_asset(ref)) as chunks:
                async with aiofiles.open(dest, "wb") as f:
                    async for chunk in chunks:
                        await f.write(chunk)
        except Exception as e:
            logger.warning(f"⚠️ Skipping media for job {job.job_id}: {ref} - {e}")
            if dest is not None:
                dest.unlink(missing_ok=True)
            _remove_empty_dirs(dest_dir, dest_dir.parent)
            return False
        return True


def _remove_empty_dirs(*dirs: Path):
    """Remove directories innermost first, stopping at the first one that is missing or not empty."""
    for d in dirs:
        try:
            d.rmdir()
        except OSError:
            break


async def run_export_job(
    job_id: str,
    owner_id: str,
    *,
    store: JobStatusStore,
    record_store: RecordStore,
    blob_store: BlobStore,
    export_root: Path,
) -> ExportJob:
    """Take one Pending job to Completed or Failed. The caller is its only writer."""
    logger.info(f"🚀 Starting export job {job_id}")

    job = await store.get(job_id)
    if job.owner_id != owner_id:
        logger.error(f"Job {job_id} belongs to {job.owner_id}, refusing to run it for {owner_id}")
        if not job.is_terminal:
            job.mark_failed(OWNER_MISMATCH_MESSAGE)
            await store.put(job)
        return job

    if job.status != ExportStatusEnum.PENDING:
        if job.status == ExportStatusEnum.RUNNING:
            # redelivered after the previous worker died mid-run
            logger.warning(f"Job {job_id} was already running, marking it failed")
            job.mark_failed(INTERRUPTED_MESSAGE)
            await store.put(job)
        else:
            logger.info(f"Job {job_id} is already {job.status.value}, nothing to do")
        return job

    work_dir, archive_path = job_paths(Path(export_root), owner_id, job_id)
    job.mark_running()
    job.work_dir = str(work_dir)
    await store.put(job)

    try:
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ExportJobError(f"failed to create export directories: {e}") from e

        extractor = ExportExtractor(store, record_store, blob_store)
        await extractor.extract(job, work_dir)

        try:
            await asyncio.to_thread(build_archive, work_dir, archive_path)
        except Exception as e:
            raise ExportJobError(f"failed to create zip: {e}") from e

    except Exception as e:
        logger.exception(f"❌ Job {job_id} failed: {e}")
        job.mark_failed(str(e))
        await store.put(job)
        return job

    job.mark_completed(str(archive_path))
    await store.put(job)
    logger.info(f"✅ Job {job_id} completed: {archive_path}")
    return job


async def fail_unfinished_job(store: JobStatusStore, job_id: str, message: str) -> Optional[ExportJob]:
    """Mark a job Failed after its worker crashed, unless it already finished."""
    try:
        job = await store.get(job_id)
        if job.is_terminal:
            return job
        job.mark_failed(message)
        await store.put(job)
        logger.error(f"Job {job_id} marked failed: {message}")
        return job
    except Exception as e:
        logger.exception(f"Could not record failure for job {job_id}: {e}")
        return None


@celery_app.task(bind=True, name="exports.run_export_job", acks_late=True)
def run_export_job_task(self, job_id: str, owner_id: str):
    """
    Synchronous Celery entry point that runs the async export in an isolated event loop.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        job = loop.run_until_complete(_run_in_worker(job_id, owner_id))
        return {"job_id": job_id, "status": job.status.value}
    finally:
        loop.close()


async def _run_in_worker(job_id: str, owner_id: str) -> ExportJob:
    # Fresh clients per task: each task has its own event loop
    redis = init_redis_client(
        settings.REDIS_HOST,
        settings.REDIS_PORT,
        settings.REDIS_USERNAME,
        settings.REDIS_PASSWORD,
        settings.REDIS_DB,
    )
    session_maker = get_async_session_maker(force_new=True)
    store = RedisJobStatusStore(redis, settings.EXPORT_JOB_TTL_SECONDS)

    try:
        try:
            return await run_export_job(
                job_id,
                owner_id,
                store=store,
                record_store=SQLRecordStore(session_maker),
                blob_store=build_blob_store(settings),
                export_root=Path(settings.EXPORT_ROOT),
            )
        except Exception as e:
            await fail_unfinished_job(store, job_id, f"export worker crashed: {e}")
            raise
    finally:
        await redis.aclose()
        await session_maker.kw["bind"].dispose()
