"""
Bounded pool of import supervisors fed from the task queue.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from import_engine.core.config import settings
from import_engine.domain.imports.jobs import find_stranded_jobs
from import_engine.domain.imports.queue import (
    ack_import_task,
    enqueue_import_task,
    lease_import_tasks,
    retry_import_task,
)
from import_engine.domain.imports.supervisor import ImportSupervisor

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 30
RECOVERY_EVERY_POLLS = 30


def process_job_inline(job_id: str, **supervisor_kwargs: Any) -> Optional[Dict[str, Any]]:
    """Run the supervisor for a job on the calling thread."""
    return ImportSupervisor(job_id, **supervisor_kwargs).run()


class ImportWorkerPool:
    """
    Leases queued processing triggers and runs one supervisor per task on a
    ThreadPoolExecutor. Never leases more tasks than it has free slots.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        *,
        poll_interval: Optional[float] = None,
        lease_seconds: Optional[float] = None,
        supervisor_factory: Callable[[str], ImportSupervisor] = ImportSupervisor,
    ):
        self.max_workers = max_workers or settings.import_max_concurrent_jobs
        self.poll_interval = settings.import_worker_poll_seconds if poll_interval is None else poll_interval
        self.lease_seconds = lease_seconds
        self._supervisor_factory = supervisor_factory
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="import-worker")
        self._running: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()

    def free_slots(self) -> int:
        with self._lock:
            self._running = {task_id: f for task_id, f in self._running.items() if not f.done()}
            return self.max_workers - len(self._running)

    def poll_once(self) -> int:
        """Lease and dispatch as many tasks as there are free slots. Returns how many were dispatched."""
        slots = self.free_slots()
        if slots <= 0:
            return 0
        tasks = lease_import_tasks(slots, lease_seconds=self.lease_seconds)
        for task in tasks:
            future = self._executor.submit(self._run_task, task)
            with self._lock:
                self._running[task["id"]] = future
        return len(tasks)

    def _run_task(self, task: Dict[str, Any]) -> None:
        job_id = task["job_id"]
        try:
            job = self._supervisor_factory(job_id).run()
        except Exception as exc:
            logger.exception("Import task %s for job %s crashed; requeueing", task["id"], job_id)
            retry_import_task(task["id"], task["lease_token"], str(exc), delay_seconds=RETRY_DELAY_SECONDS)
            return

        if not ack_import_task(task["id"], task["lease_token"]):
            logger.warning("Import task %s: lease expired before acknowledgement", task["id"])
        if job is not None:
            logger.info("Import task %s done: job %s is %s", task["id"], job_id, job["status"])

    def recover_stranded_jobs(self) -> int:
        """Re-enqueue jobs that nobody is making progress on."""
        stranded = find_stranded_jobs()
        for job in stranded:
            logger.warning("Recovering stranded import job %s (status=%s)", job["id"], job["status"])
            enqueue_import_task(job["id"])
        return len(stranded)

    def wait_idle(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            futures = list(self._running.values())
        wait_futures(futures, timeout=timeout)

    def run_until_idle(self, max_rounds: int = 1000) -> None:
        """Dispatch and wait until the queue has nothing deliverable."""
        for _ in range(max_rounds):
            dispatched = self.poll_once()
            self.wait_idle()
            if dispatched == 0:
                return

    def run_forever(self) -> None:
        logger.info("Import worker pool started (max %d concurrent job(s))", self.max_workers)
        polls = 0
        while not self._stop.is_set():
            try:
                if polls % RECOVERY_EVERY_POLLS == 0:
                    self.recover_stranded_jobs()
            except SQLAlchemyError:
                logger.exception("Stranded job recovery failed")
            polls += 1
            try:
                self.poll_once()
            except SQLAlchemyError:
                logger.exception("Import worker poll failed; retrying in %.1fs", self.poll_interval)
            self._stop.wait(self.poll_interval)
        logger.info("Import worker pool stopping")

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        self._executor.shutdown(wait=wait)
