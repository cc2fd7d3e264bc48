from __future__ import annotations

import logging
import os
import socket
import threading

from casefolio.application.services.document_worker import DocumentWorker
from casefolio.application.services.engine_pool import RecognitionEnginePool
from casefolio.domain.models.job import Job
from casefolio.infrastructure.queue.job_queue import JobQueue

logger = logging.getLogger(__name__)


class WorkerPool:
    """N consumer threads, each running one document job at a time.

    A maintenance thread renews heartbeats for the jobs this process holds and
    hands jobs whose owner stopped heartbeating back to the queue.
    """

    def __init__(
        self,
        *,
        job_queue: JobQueue,
        document_worker: DocumentWorker,
        engine_pool: RecognitionEnginePool,
        size: int = 2,
        poll_seconds: float = 1.0,
        heartbeat_seconds: float = 5.0,
        stall_timeout_seconds: float = 30.0,
    ) -> None:
        self.job_queue = job_queue
        self.document_worker = document_worker
        self.engine_pool = engine_pool
        self.size = max(1, int(size))
        self.poll_seconds = poll_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.stall_timeout_seconds = stall_timeout_seconds
        self._stop = threading.Event()
        self._maintenance_stop = threading.Event()
        self._active_lock = threading.Lock()
        self._active: dict[str, str] = {}
        self._threads: list[threading.Thread] = []
        self._maintenance: threading.Thread | None = None
        self._worker_prefix = f"{socket.gethostname()}:{os.getpid()}"

    def active_jobs(self) -> dict[str, str]:
        with self._active_lock:
            return dict(self._active)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Worker pool already started")
        self._stop.clear()
        self._maintenance_stop.clear()
        for index in range(self.size):
            worker_id = f"{self._worker_prefix}:{index}"
            thread = threading.Thread(
                target=self._worker_loop,
                args=(worker_id,),
                daemon=True,
                name=f"document-worker-{index}",
            )
            thread.start()
            self._threads.append(thread)
        self._maintenance = threading.Thread(
            target=self._maintenance_loop,
            daemon=True,
            name="document-worker-maintenance",
        )
        self._maintenance.start()
        logger.info("Worker pool started with %s workers", self.size)

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Shutdown requested; draining in-flight jobs")
        self._stop.set()
        self.job_queue.wake()

    def wait(self, poll_seconds: float = 0.5) -> None:
        while not self._stop.wait(poll_seconds):
            pass

    def shutdown(self, timeout: float | None = None) -> None:
        self.request_stop()
        for thread in self._threads:
            thread.join(timeout=timeout)
        still_running = [thread.name for thread in self._threads if thread.is_alive()]
        if still_running:
            logger.warning("Workers still busy after drain timeout: %s", ", ".join(still_running))
        self._maintenance_stop.set()
        if self._maintenance is not None:
            self._maintenance.join(timeout=max(self.heartbeat_seconds, 1.0) * 2)
        self.engine_pool.shutdown()
        self.job_queue.close()
        self._threads = []
        self._maintenance = None
        logger.info("Worker pool stopped")

    def run_pending(self, *, worker_id: str | None = None, max_jobs: int | None = None) -> int:
        """Process ready jobs on the calling thread until the queue has none."""
        resolved_id = worker_id or f"{self._worker_prefix}:inline"
        processed = 0
        while max_jobs is None or processed < max_jobs:
            job = self.job_queue.claim_next(resolved_id)
            if job is None:
                break
            self._run_job(job, resolved_id)
            processed += 1
        return processed

    def _worker_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                job = self.job_queue.claim_next(worker_id)
            except Exception:
                logger.exception("Worker %s could not claim a job", worker_id)
                self._stop.wait(self.poll_seconds)
                continue
            if job is None:
                self.job_queue.wait_for_work(self.poll_seconds)
                continue
            try:
                self._run_job(job, worker_id)
            except Exception:
                logger.exception("Worker %s could not report job %s", worker_id, job.id)
                self._stop.wait(self.poll_seconds)

    def _run_job(self, job: Job, worker_id: str) -> None:
        with self._active_lock:
            self._active[worker_id] = job.id

        def on_progress(progress: int) -> None:
            self.job_queue.update_progress(job.id, progress)

        try:
            self.document_worker.run(job.payload, progress_callback=on_progress)
        except Exception as exc:
            logger.error("Job %s failed - document: %s: %s", job.id, job.payload.display_name, exc)
            self.job_queue.fail(job.id, str(exc) or exc.__class__.__name__, worker_id=worker_id)
        else:
            self.job_queue.complete(job.id, worker_id=worker_id)
        finally:
            with self._active_lock:
                self._active.pop(worker_id, None)

    def _maintenance_loop(self) -> None:
        while not self._maintenance_stop.wait(self.heartbeat_seconds):
            try:
                self.job_queue.heartbeat(self.active_jobs().values())
                self.job_queue.requeue_stalled(self.stall_timeout_seconds)
            except Exception:
                logger.exception("Worker pool maintenance pass failed")
