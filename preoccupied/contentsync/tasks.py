"""
Background execution: a runner which wraps one unit of work with relaxed
resource limits and uniform failure capture, and a durable queue of
deferred jobs which feeds it.

Jobs are kept in the site's state store and only removed after their
handler has returned or raised, so a job interrupted by a crash is run
again by the next worker pass.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import asyncio
import logging
import resource
import time
import uuid
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .progress import ProgressTracker
from .store import StateStore


logger = logging.getLogger(__name__)


IN_PROGRESS_KEY = 'sync_in_progress'
SYNC_STATE_KEY = 'sync_state'
QUEUE_KEY = 'task_queue'


TaskFn = Callable[[], Awaitable[Any]]
Handler = Callable[..., Awaitable[Any]]


@contextmanager
def relaxed_limits():
    """
    Raise the soft CPU time and address space limits to their hard
    ceilings for the duration of the block
    """

    saved = []
    for limit in (resource.RLIMIT_CPU, resource.RLIMIT_AS):
        try:
            soft, hard = resource.getrlimit(limit)
            if soft != hard:
                resource.setrlimit(limit, (hard, hard))
                saved.append((limit, soft, hard))
        except (ValueError, OSError) as e:
            logger.warning(f'Could not relax resource limit {limit}: {e}')

    try:
        yield

    finally:
        for limit, soft, hard in saved:
            try:
                resource.setrlimit(limit, (soft, hard))
            except (ValueError, OSError) as e:
                logger.warning(f'Could not restore resource limit {limit}: {e}')


class BackgroundTaskRunner:
    """
    Runs one unit of work. On failure the progress is marked failed and
    the in-progress flag cleared before the exception is re-raised.
    """

    def __init__(self, store: StateStore):
        self.store = store


    def is_chunking(self) -> bool:
        state = self.store.get(SYNC_STATE_KEY)
        return state is not None and not state.get('fatal')


    async def run(self, task_name: str, task_fn: TaskFn, progress: ProgressTracker) -> Any:
        logger.info(f'Starting background task: {task_name}')

        try:
            with relaxed_limits():
                result = await task_fn()

        except Exception as e:
            logger.error(f'Background task {task_name} failed: {e}', exc_info=True)
            progress.fail(f'Error during {task_name}: {e}')
            self.store.delete(IN_PROGRESS_KEY)
            raise

        if self.is_chunking():
            logger.info(f'Background task {task_name} continuing in chunks')
        else:
            self.store.delete(IN_PROGRESS_KEY)
            logger.info(f'Background task {task_name} completed')

        return result


class Job(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    due: float = 0.0


class TaskQueue:
    """
    Durable queue of named jobs with optional delays
    """

    def __init__(self, store: StateStore, runner: BackgroundTaskRunner, progress: ProgressTracker):
        self.store = store
        self.runner = runner
        self.progress = progress
        self.handlers: Dict[str, Handler] = {}
        self._running: Optional[str] = None
        self._lock = asyncio.Lock()


    def register(self, name: str, handler: Handler) -> None:
        self.handlers[name] = handler


    def jobs(self) -> List[Job]:
        return [Job.model_validate(j) for j in self.store.get(QUEUE_KEY, [])]


    def _save(self, jobs: List[Job]) -> None:
        self.store.set(QUEUE_KEY, [j.model_dump() for j in jobs])


    def enqueue(self, name: str, args: Optional[Dict[str, Any]] = None, delay: float = 0) -> str:
        """
        Add a job, unless an identical one is already pending. Returns the
        id of the pending job.
        """

        args = args or {}
        jobs = self.jobs()

        for job in jobs:
            # the running job is removed once it finishes, so a handler
            # may queue its own continuation
            if job.id != self._running and job.name == name and job.args == args:
                logger.debug(f'Job {name} {args} already queued as {job.id}')
                return job.id

        job = Job(name=name, args=args, due=time.time() + delay)
        jobs.append(job)
        self._save(jobs)

        logger.info(f'Queued job {name} {args} in {delay}s')
        return job.id


    def cancel(self, name: str, args: Optional[Dict[str, Any]] = None) -> int:
        """
        Remove pending jobs with the given name, and args if given
        """

        jobs = self.jobs()
        keep = [j for j in jobs if not (j.name == name and (args is None or j.args == args))]
        removed = len(jobs) - len(keep)
        if removed:
            self._save(keep)
            logger.info(f'Cancelled {removed} {name} job(s)')
        return removed


    def _remove(self, job_id: str) -> None:
        jobs = self.jobs()
        self._save([j for j in jobs if j.id != job_id])


    async def run_job(self, job: Job) -> Any:
        handler = self.handlers.get(job.name)
        if handler is None:
            logger.error(f'No handler registered for job {job.name}, dropping it')
            self._remove(job.id)
            return None

        self._running = job.id
        try:
            return await self.runner.run(job.name, lambda: handler(**job.args), self.progress)
        except Exception as e:
            logger.error(f'Job {job.name} {job.id} failed: {e}')
            return None
        finally:
            self._running = None
            self._remove(job.id)


    async def run_pending(self, now: Optional[float] = None) -> int:
        """
        Run every job that is due. Returns the number of jobs run.
        """

        async with self._lock:
            now = time.time() if now is None else now
            due = sorted((j for j in self.jobs() if j.due <= now), key=lambda j: j.due)

            count = 0
            for job in due:
                # an earlier job may have cancelled this one
                if any(j.id == job.id for j in self.jobs()):
                    await self.run_job(job)
                    count += 1

            return count


    async def worker(self, interval: float = 5.0) -> None:
        """
        Poll for due jobs until cancelled
        """

        logger.info(f'Task worker polling every {interval}s')
        while True:
            try:
                await self.run_pending()
            except Exception as e:
                logger.error(f'Task worker pass failed: {e}', exc_info=True)
            await asyncio.sleep(interval)


# The end.
