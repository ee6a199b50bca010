from __future__ import annotations
import threading
import traceback

from .broker import BrokerError, JobBroker
from .errors import AuditWriteFailure
from .executor import JobExecutor
from .logging_config import logger
from .models import AuditStatus, Job


class Worker:
    """Single pull loop draining the broker into the job executor.

    Jobs are acknowledged on any terminal outcome and never requeued here;
    retry policy belongs to the queue technology.
    """

    def __init__(self, broker: JobBroker, executor: JobExecutor, poll_seconds: float = 1.0):
        self.broker = broker
        self.executor = executor
        self.poll_seconds = poll_seconds
        self.stop_event = threading.Event()
        self.processed = 0
        self.broker_errors = 0
        self.worker_thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self.worker_thread is not None and self.worker_thread.is_alive()

    def start(self) -> bool:
        """Start the loop. Returns False (and starts nothing) if the broker is unreachable."""
        try:
            self.broker.ping()
        except BrokerError as e:
            logger.warning(f"Worker not started, broker unreachable: {e}")
            return False
        self.stop_event.clear()
        self.worker_thread = threading.Thread(target=self._worker_loop, name="shellrunner-worker", daemon=True)
        self.worker_thread.start()
        logger.info("Worker started")
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        if self.worker_thread is not None:
            self.worker_thread.join(timeout)

    def _worker_loop(self):
        while not self.stop_event.is_set():
            try:
                payload = self.broker.dequeue(self.poll_seconds)
            except BrokerError as e:
                self.broker_errors += 1
                logger.error(f"Worker dequeue failed, retrying in {self.poll_seconds}s: {e}")
                self.stop_event.wait(self.poll_seconds)
                continue
            if payload is None:
                continue
            try:
                self.process(payload)
            finally:
                try:
                    self.broker.ack(payload)
                except BrokerError as e:
                    logger.error(f"Worker could not acknowledge job payload: {e}")

    def process(self, payload: bytes) -> None:
        try:
            job = Job.from_payload(payload)
        except ValueError as e:
            self._audit_undecodable(e)
            return
        try:
            self.executor.run(job)
        except Exception:
            # already audited as failed by the executor
            logger.error(f"Job {job.id} failed in worker:\n{traceback.format_exc()}")
        finally:
            self.processed += 1

    def _audit_undecodable(self, error: Exception) -> None:
        logger.error(f"Dropping undecodable job payload: {error}")
        try:
            self.executor.audits.append("unknown", "unknown", AuditStatus.failed, f"Undecodable job payload: {error}")
        except AuditWriteFailure as e:
            logger.error(f"Failed to log audit for undecodable job: {e}")
