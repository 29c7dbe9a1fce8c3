"""Ways to run an export job away from the request that submitted it."""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Protocol

from src.crud.crud_export import JobStatusStore

logger = logging.getLogger(__name__)

JobFn = Callable[[str, str], Awaitable[object]]


class JobRunner(Protocol):
    def start(self, job_id: str, owner_id: str) -> None: ...


class AsyncioJobRunner:
    """
    Runs each job as an asyncio task in the API process.

    Task handles are kept until the job finishes. If a task dies with an
    exception that escaped the worker, the job is marked failed so it does not
    stay ``running`` until its record expires.
    """

    def __init__(self, job_fn: JobFn, store: JobStatusStore):
        self.job_fn = job_fn
        self.store = store
        self._tasks: Dict[str, asyncio.Task] = {}

    def start(self, job_id: str, owner_id: str) -> None:
        task = asyncio.create_task(self.job_fn(job_id, owner_id), name=f"export-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._on_done(job_id, t))

    def _on_done(self, job_id: str, task: asyncio.Task):
        self._tasks.pop(job_id, None)
        if task.cancelled():
            logger.warning(f"Export job {job_id} task was cancelled")
            self._schedule_failure(job_id, "export task was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Export job {job_id} task crashed: {exc!r}")
            self._schedule_failure(job_id, f"export worker crashed: {exc}")

    def _schedule_failure(self, job_id: str, message: str):
        from src.tasks.export_worker import fail_unfinished_job

        # keep a handle so join() also waits for the failure to be recorded
        task = asyncio.get_running_loop().create_task(
            fail_unfinished_job(self.store, job_id, message)
        )
        self._tasks[f"{job_id}:crash"] = task
        task.add_done_callback(lambda _: self._tasks.pop(f"{job_id}:crash", None))

    def in_flight(self) -> int:
        return len(self._tasks)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._tasks

    async def join(self):
        """Wait until every job started so far (and any crash handling) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
            # done-callbacks run on the next loop iteration
            await asyncio.sleep(0)


class CeleryJobRunner:
    """Hands each job to the Celery worker pool."""

    def start(self, job_id: str, owner_id: str) -> None:
        from src.tasks.export_worker import run_export_job_task

        task = run_export_job_task.delay(job_id=job_id, owner_id=owner_id)
        logger.info(f"Enqueued export job {job_id} with task_id {task.id}")
