"""
Worker pool with extensible job queue system.

Owns the single RestorationSession and runs every job on one worker thread, so
restore() calls on the session are never overlapping. Supports:
- Restore jobs
- Reload jobs (re-initialize a failed session, recreate a released one)
- Custom job types

The queue is extensible - other parts of the app can submit jobs.
"""

import logging
import os
import queue
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from PIL import Image

from backends.errors import SessionStateError
from backends.sampler import ProgressSink
from backends.session import RestorationSession, SessionState

logger = logging.getLogger(__name__)


class SessionFactory(Protocol):
    """Protocol for session creation functions."""
    def __call__(self) -> RestorationSession:
        """Create an (uninitialized) restoration session."""
        ...


class JobType(Enum):
    """Types of jobs that can be queued."""
    RESTORE = "restore"
    RELOAD = "reload"
    CUSTOM = "custom"


@dataclass
class Job(ABC):
    """
    Base class for all job types.

    Extensible job system - subclass this to create new job types.
    """
    job_type: JobType = field(init=False)
    fut: Future = field(init=False, default=None)  # Result future

    def __post_init__(self):
        if self.fut is None:
            self.fut = Future()

    @abstractmethod
    def execute(self, session: Optional[RestorationSession]) -> Any:
        """
        Execute the job.

        Args:
            session: Current session (may be None after shutdown)

        Returns:
            Job result
        """
        pass


@dataclass
class RestoreJob(Job):
    """Job for one restoration run."""
    image: Image.Image
    steps: Optional[int] = None
    max_size: Optional[int] = None
    seed: Optional[int] = None
    progress: Optional[ProgressSink] = None
    cancel_event: Optional[threading.Event] = None

    def __post_init__(self):
        super().__post_init__()
        self.job_type = JobType.RESTORE

    def execute(self, session: Optional[RestorationSession]) -> Any:
        """Run restore; a failed Result becomes the future's exception."""
        if session is None:
            raise SessionStateError("No session available for restoration")
        return session.restore(
            self.image,
            steps=self.steps,
            max_dim=self.max_size,
            progress=self.progress,
            seed=self.seed,
            cancel_event=self.cancel_event,
        ).unwrap()


@dataclass
class ReloadJob(Job):
    """
    Job for re-initializing the session.

    With recreate=True the pool releases the current session and builds a new
    one from the factory, picking up configuration changes.
    """
    on_complete: Optional[Callable] = None
    recreate: bool = False

    def __post_init__(self):
        super().__post_init__()
        self.job_type = JobType.RELOAD

    def execute(self, session: Optional[RestorationSession]) -> Any:
        """
        Re-initialize in place.

        The pool swaps in a fresh session first when the old one was released.
        """
        if session is None:
            raise SessionStateError("No session to reload")
        session.initialize().unwrap()
        if self.on_complete:
            self.on_complete(session)
        return {"state": session.state.value, "status": "reloaded"}


@dataclass
class CustomJob(Job):
    """
    Extensible custom job.

    Allows other parts of the app to queue arbitrary work that must not
    overlap with restorations.
    """
    handler: Callable
    args: tuple = ()
    kwargs: dict = None

    def __post_init__(self):
        super().__post_init__()
        self.job_type = JobType.CUSTOM
        if self.kwargs is None:
            self.kwargs = {}

    def execute(self, session: Optional[RestorationSession]) -> Any:
        """Execute custom handler."""
        return self.handler(*self.args, **self.kwargs)


class WorkerPool:
    """
    Manages session lifecycle and extensible job queue.

    Features:
    - Single worker thread, single session (restorations are single-flight)
    - Extensible job queue (restore, reload, custom)
    - Failed model loads leave the pool running; restore jobs then fail with
      SessionStateError until a reload succeeds
    - Dependency injection support for testing
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        queue_max: int = 16,
        eager: bool = True,
    ):
        """
        Initialize worker pool.

        Args:
            session_factory: Creates the RestorationSession this pool owns
            queue_max: Maximum queue size
            eager: Initialize models immediately (False defers to the
                   session's lazy loading or an explicit reload)
        """
        self.queue_max = queue_max
        self.q: queue.Queue[Job] = queue.Queue(maxsize=queue_max)
        self._stop = threading.Event()
        self._session: Optional[RestorationSession] = None
        self._worker_thread: Optional[threading.Thread] = None
        self._session_factory = session_factory

        self._load_session(eager=eager)
        self._start_worker_thread()

    def _load_session(self, eager: bool = True):
        """Create the session and, if eager, load its models."""
        logger.info("[WorkerPool] Creating restoration session")
        self._session = self._session_factory()

        if not eager:
            return

        result = self._session.initialize()
        if result.ok:
            logger.info("[WorkerPool] Session ready")
        else:
            logger.error(
                f"[WorkerPool] Session failed to initialize ({result.error_kind}): {result.error}. "
                "Restore jobs will fail until a reload succeeds."
            )

    def _release_session(self):
        """Release current session and its models."""
        if self._session is None:
            return
        logger.info(f"[WorkerPool] Releasing session (state: {self._session.state.value})")
        self._session.release()
        self._session = None

    def _start_worker_thread(self):
        """Start worker thread for processing jobs."""
        if self._worker_thread is not None and self._worker_thread.is_alive():
            logger.warning("[WorkerPool] Worker thread already running")
            return

        self._worker_thread = threading.Thread(
            target=self._worker_loop,
            daemon=True,
            name="RestoreWorker",
        )
        self._worker_thread.start()
        logger.info("[WorkerPool] Worker thread started")

    def _worker_loop(self):
        """Main worker loop - processes jobs from queue."""
        logger.info("[WorkerPool] Worker loop started")

        while not self._stop.is_set():
            try:
                # Get job with timeout to allow checking stop flag
                job = self.q.get(timeout=0.1)
            except queue.Empty:
                continue

            if job.fut.cancelled():
                self.q.task_done()
                continue

            try:
                if isinstance(job, ReloadJob) and (
                    job.recreate or self._session is None or self._session.state == SessionState.RELEASED
                ):
                    self._release_session()
                    self._session = self._session_factory()

                result = job.execute(self._session)
                if not job.fut.done():
                    job.fut.set_result(result)

            except Exception as e:
                logger.error(f"[WorkerPool] Job failed: {e}", exc_info=not hasattr(e, "kind"))
                if not job.fut.done():
                    job.fut.set_exception(e)
            finally:
                self.q.task_done()

        logger.info("[WorkerPool] Worker loop stopped")

    def submit_job(self, job: Job) -> Future:
        """
        Submit a job to the queue.

        Extensible - accepts any Job subclass.

        Args:
            job: Job to execute

        Returns:
            Future for job result

        Raises:
            queue.Full if queue is full
        """
        try:
            self.q.put_nowait(job)
            logger.debug(f"[WorkerPool] Job queued: {job.job_type.value}")
            return job.fut
        except queue.Full:
            raise queue.Full(
                f"Job queue full (max: {self.queue_max}). "
                "Try again later or increase QUEUE_MAX."
            )

    def reload(self, recreate: bool = False) -> Future:
        """Queue a session reload; recreate=True rebuilds it from the factory."""
        logger.info(f"[WorkerPool] Queueing session reload (recreate={recreate})")
        return self.submit_job(ReloadJob(recreate=recreate))

    @property
    def session(self) -> Optional[RestorationSession]:
        return self._session

    def get_session_state(self) -> Optional[str]:
        """Get current session state name."""
        return self._session.state.value if self._session is not None else None

    def get_queue_size(self) -> int:
        """Get current queue size."""
        return self.q.qsize()

    def shutdown(self):
        """Shutdown worker pool."""
        logger.info("[WorkerPool] Shutting down")

        self._stop.set()

        # Drain queue
        while True:
            try:
                job = self.q.get_nowait()
            except queue.Empty:
                break
            if not job.fut.done():
                job.fut.set_exception(RuntimeError("Worker pool shutting down"))
            self.q.task_done()

        # Wait for worker thread
        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_thread.join(timeout=5.0)

        self._release_session()

        logger.info("[WorkerPool] Shutdown complete")


# Global worker pool instance
_worker_pool: Optional[WorkerPool] = None


def get_worker_pool(session_factory: Optional[SessionFactory] = None, eager: bool = True) -> WorkerPool:
    """
    Get global worker pool instance.

    The first call must supply a session factory; later calls return the same
    pool and ignore the argument.

    Raises:
        RuntimeError if the pool does not exist yet and no factory is given
    """
    global _worker_pool
    if _worker_pool is None:
        if session_factory is None:
            raise RuntimeError("Worker pool not created yet; pass a session_factory")
        queue_max = int(os.environ.get("QUEUE_MAX", "16"))
        _worker_pool = WorkerPool(session_factory=session_factory, queue_max=queue_max, eager=eager)
    return _worker_pool


def reset_worker_pool():
    """
    Reset global worker pool instance.

    Useful for testing to ensure clean state between tests.
    Should NOT be used in production code.
    """
    global _worker_pool
    if _worker_pool is not None:
        try:
            _worker_pool.shutdown()
        except Exception as e:
            logger.warning(f"[WorkerPool] Shutdown during reset failed: {e!r}")
    _worker_pool = None
