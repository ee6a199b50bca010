from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from .broker import JobBroker
from .executor import JobExecutor
from .logging_config import logger
from .models import ExecutionResult, Job


@dataclass
class DispatchOutcome:
    job_id: str
    mode: str
    result: Optional[ExecutionResult] = None

    @property
    def queued(self) -> bool:
        return self.mode == "queued"


class InlineDispatch:
    """Run the job in the caller's thread; the caller waits for the result."""

    mode = "inline"

    def __init__(self, executor: JobExecutor):
        self.executor = executor

    def submit(self, job: Job) -> DispatchOutcome:
        result = self.executor.run(job)
        return DispatchOutcome(job_id=job.id, mode=self.mode, result=result)


class QueuedDispatch:
    """Hand the job to the broker and acknowledge immediately."""

    mode = "queued"

    def __init__(self, broker: JobBroker):
        self.broker = broker

    def submit(self, job: Job) -> DispatchOutcome:
        # caller credentials stay in this process; the worker uses the service identity
        self.broker.enqueue(job.to_payload())
        logger.info(f"Job {job.id} enqueued: {job.action}")
        return DispatchOutcome(job_id=job.id, mode=self.mode)


class DispatchRouter:
    def __init__(self, strategy: InlineDispatch | QueuedDispatch):
        self.strategy = strategy

    @property
    def mode(self) -> str:
        return self.strategy.mode

    def submit(self, job: Job) -> DispatchOutcome:
        return self.strategy.submit(job)
