"""OpsQueue Worker - Job Execution Loop.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from opsqueue_core.queue.job import Job, JobState, QueueName
from opsqueue_core.storage.backend import StorageBackend
from opsqueue_core.worker.retry import RetryPolicy

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    """Worker operational states."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


@dataclass
class WorkerConfig:
    """Worker configuration.

    Attributes:
        concurrency: Max jobs of the queue active at once, across all workers
        poll_interval_ms: Sleep between claims when the queue is idle
        stall_timeout_seconds: Heartbeat age after which an active job is stalled
        heartbeat_interval_seconds: How often in-flight jobs are touched
    """

    concurrency: int = 1
    poll_interval_ms: int = 500
    stall_timeout_seconds: int = 30
    heartbeat_interval_seconds: int = 5

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.stall_timeout_seconds <= self.heartbeat_interval_seconds:
            raise ValueError("stall_timeout_seconds must exceed heartbeat_interval_seconds")


@dataclass
class WorkerStats:
    """Worker statistics."""

    worker_id: str
    queue_name: str
    state: WorkerState = WorkerState.STOPPED
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_retried: int = 0
    jobs_stalled: int = 0
    active: int = 0
    started_at: Optional[datetime] = None
    avg_processing_time_ms: float = 0.0


class JobContext:
    """What a processor sees of the job it is running.

    Progress and log lines go straight to the store; they never change
    the job's state.
    """

    def __init__(
        self,
        job: Job,
        store: StorageBackend,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.job = job
        self.store = store
        self.clock = clock

    @property
    def payload(self) -> Dict[str, Any]:
        return self.job.payload

    def log(self, line: str) -> None:
        self.job.logs.append(line)
        self.store.append_log(self.job.queue_name, self.job.id, line, self.clock())

    def update_progress(self, progress: int) -> None:
        progress = max(0, min(100, int(progress)))
        self.job.progress = progress
        self.store.set_progress(self.job.queue_name, self.job.id, progress, self.clock())


Processor = Callable[[JobContext], Any]


class Worker:
    """Pulls jobs for one queue and runs them through a processor.

    The concurrency limit is enforced by the store at claim time, so it
    holds across every worker sharing the store, not just this one.
    """

    def __init__(
        self,
        queue: QueueName,
        processor: Processor,
        store: StorageBackend,
        config: Optional[WorkerConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = datetime.now,
        worker_id: Optional[str] = None,
    ):
        """Initialize worker.

        Args:
            queue: Queue to consume
            processor: Called with a JobContext; its return value is stored
            store: Queue store
            config: Worker configuration
            retry_policy: Backoff handling for failed attempts
            clock: Source of the current time
            worker_id: Unique worker identifier
        """
        self.queue = QueueName.parse(queue)
        self.processor = processor
        self.store = store
        self.config = config or WorkerConfig()
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self.worker_id = worker_id or f"{self.queue.value}-{uuid.uuid4().hex[:8]}"

        self._state = WorkerState.STOPPED
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._in_flight: Dict[str, Future] = {}
        self._processing_times: List[float] = []
        self._stats = WorkerStats(worker_id=self.worker_id, queue_name=self.queue.value)

        self._on_completed: List[Callable[[Job, Any], None]] = []
        self._on_failed: List[Callable[[Job, str], None]] = []

    @property
    def state(self) -> WorkerState:
        return self._state

    def on_completed(self, callback: Callable[[Job, Any], None]) -> "Worker":
        """Register a callback for successful jobs."""
        self._on_completed.append(callback)
        return self

    def on_failed(self, callback: Callable[[Job, str], None]) -> "Worker":
        """Register a callback for jobs that ran out of attempts."""
        self._on_failed.append(callback)
        return self

    def process_next(self) -> Optional[Job]:
        """Claim one job and run it in the calling thread.

        Returns:
            The job in its resulting state, or None if nothing was claimed
        """
        job = self.store.claim_next(self.queue.value, self.clock(), self.config.concurrency)
        if job is None:
            return None
        return self._run(job)

    def _run(self, job: Job) -> Job:
        logger.debug(f"Worker {self.worker_id} running {job!r}")
        context = JobContext(job, self.store, self.clock)
        start_time = time.time()

        try:
            result = self.processor(context)
        except Exception as e:
            self._fail(job, str(e) or type(e).__name__)
        else:
            self._complete(job, result)
        finally:
            self._record_time((time.time() - start_time) * 1000)

        return job

    def _complete(self, job: Job, result: Any) -> None:
        now = self.clock()
        job.state = JobState.COMPLETED
        job.return_value = result
        job.finished_at = now
        job.heartbeat_at = None
        self.store.save_job(job)
        self.store.trim_finished(job.queue_name, JobState.COMPLETED, job.remove_on_complete, now)

        self._stats.jobs_completed += 1
        logger.info(f"Job {job.queue_name}/{job.id} ({job.name}) completed")
        self._notify(self._on_completed, job, result)

    def _fail(
        self,
        job: Job,
        reason: str,
        expected_heartbeat: Optional[datetime] = None,
        guarded: bool = False,
    ) -> bool:
        """Record a failure; with `guarded`, only if the job is still the
        ACTIVE record last seen with `expected_heartbeat`.

        Returns:
            False if a guarded write lost to a newer update
        """
        now = self.clock()
        state = self.retry_policy.record_failure(job, reason, now)
        if guarded:
            if not self.store.save_job_if(job, JobState.ACTIVE, expected_heartbeat):
                return False
        else:
            self.store.save_job(job)

        if state == JobState.FAILED:
            self._stats.jobs_failed += 1
            self.store.trim_finished(job.queue_name, JobState.FAILED, job.remove_on_fail, now)
            self._notify(self._on_failed, job, reason)
        else:
            self._stats.jobs_retried += 1
        return True

    def _notify(self, callbacks: List[Callable], job: Job, value: Any) -> None:
        for callback in callbacks:
            try:
                callback(job, value)
            except Exception as e:
                logger.error(f"Worker {self.worker_id} callback error for job {job.id}: {e}")

    def _record_time(self, elapsed_ms: float) -> None:
        with self._lock:
            self._processing_times.append(elapsed_ms)
            if len(self._processing_times) > 100:
                self._processing_times = self._processing_times[-100:]
            self._stats.avg_processing_time_ms = sum(self._processing_times) / len(
                self._processing_times
            )

    def recover_stalled(self) -> List[Job]:
        """Fail active jobs whose heartbeat is older than the stall timeout.

        Stalled jobs take the same retry path as a processor error. A job
        that completed or sent a heartbeat after it was listed is left
        alone.
        """
        now = self.clock()
        cutoff = now - timedelta(seconds=self.config.stall_timeout_seconds)
        with self._lock:
            mine = set(self._in_flight)

        stalled = []
        for job in self.store.list_jobs(self.queue.value, [JobState.ACTIVE]):
            if job.id in mine:
                continue
            last_seen = job.heartbeat_at or job.processed_at or job.created_at
            if last_seen >= cutoff:
                continue
            seen_heartbeat = job.heartbeat_at
            if not self._fail(job, "job stalled", seen_heartbeat, guarded=True):
                logger.debug(f"Job {job.queue_name}/{job.id} changed since listed, not stalled")
                continue
            logger.warning(f"Job {job.queue_name}/{job.id} stalled (last heartbeat {last_seen})")
            self._stats.jobs_stalled += 1
            stalled.append(job)
        return stalled

    def start(self) -> None:
        """Start the polling loop."""
        with self._lock:
            if self._state != WorkerState.STOPPED:
                return

            self._state = WorkerState.RUNNING
            self._stats.started_at = datetime.now()
            self._stop_event.clear()
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.concurrency,
                thread_name_prefix=f"{self.worker_id}-job",
            )
            self._thread = threading.Thread(
                target=self._poll_loop,
                daemon=True,
                name=f"{self.worker_id}-poll",
            )
            self._thread.start()

        logger.info(
            f"Worker {self.worker_id} started on {self.queue.value} "
            f"(concurrency={self.config.concurrency})"
        )

    def stop(self, graceful: bool = True, timeout: float = 30.0) -> None:
        """Stop the worker.

        Args:
            graceful: Let in-flight jobs finish
            timeout: Maximum time to wait for the poll loop
        """
        with self._lock:
            if self._state == WorkerState.STOPPED:
                return
            self._state = WorkerState.STOPPING
            self._stop_event.set()

        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self._executor:
            self._executor.shutdown(wait=graceful, cancel_futures=not graceful)
            self._executor = None

        with self._lock:
            self._state = WorkerState.STOPPED
        logger.info(f"Worker {self.worker_id} stopped")

    def _poll_loop(self) -> None:
        last_heartbeat = time.monotonic()
        while not self._stop_event.is_set():
            try:
                claimed = self._fill_slots()
                if time.monotonic() - last_heartbeat >= self.config.heartbeat_interval_seconds:
                    self._heartbeat()
                    self.recover_stalled()
                    last_heartbeat = time.monotonic()
            except Exception as e:
                logger.error(f"Worker {self.worker_id} poll error: {e}")
                claimed = 0

            if not claimed:
                self._stop_event.wait(self.config.poll_interval_ms / 1000)

    def _fill_slots(self) -> int:
        claimed = 0
        while not self._stop_event.is_set():
            with self._lock:
                if len(self._in_flight) >= self.config.concurrency:
                    break
            job = self.store.claim_next(self.queue.value, self.clock(), self.config.concurrency)
            if job is None:
                break

            future = self._executor.submit(self._run, job)
            with self._lock:
                self._in_flight[job.id] = future
            future.add_done_callback(lambda f, job_id=job.id: self._release(job_id, f))
            claimed += 1
        return claimed

    def _release(self, job_id: str, future: Future) -> None:
        with self._lock:
            self._in_flight.pop(job_id, None)
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Worker {self.worker_id} lost job {job_id}: {future.exception()}")

    def _heartbeat(self) -> None:
        with self._lock:
            job_ids = list(self._in_flight)
        now = self.clock()
        for job_id in job_ids:
            self.store.heartbeat(self.queue.value, job_id, now)

    def get_stats(self) -> WorkerStats:
        """Get worker statistics."""
        with self._lock:
            self._stats.state = self._state
            self._stats.active = len(self._in_flight)
        return self._stats

    def __repr__(self) -> str:
        return f"Worker(id={self.worker_id!r}, queue={self.queue.value}, state={self._state.name})"


__all__ = ["Worker", "WorkerState", "WorkerConfig", "WorkerStats", "JobContext", "Processor"]
