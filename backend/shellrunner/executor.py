from __future__ import annotations
import time
from typing import Any

import orjson

from .actions import ActionCatalog, default_catalog
from .errors import AuditWriteFailure
from .logging_config import logger
from .models import AuditStatus, ExecutionResult, Job, utcnow_iso
from .session import SessionManager
from .storage import AuditStore


def _decode_json(text: str) -> Any:
    stripped = text.strip()
    if not stripped:
        return None
    try:
        return orjson.loads(stripped)
    except orjson.JSONDecodeError:
        return None


def _params_details(params: Any) -> str:
    try:
        return orjson.dumps({"params": params}).decode()
    except TypeError:
        # orjson refuses e.g. integers beyond 64 bits
        return orjson.dumps({"params": repr(params)}).decode()


class JobExecutor:
    """Runs one job against the shared session and writes its audit trail.

    Every call to ``run`` produces exactly one ``started`` record followed by
    exactly one terminal record, whichever path (inline or worker) called it.
    """

    def __init__(self, sessions: SessionManager, audits: AuditStore, catalog: ActionCatalog | None = None):
        self.sessions = sessions
        self.audits = audits
        self.catalog = catalog or default_catalog()

    def _audit(self, job: Job, status: AuditStatus, details: str) -> None:
        try:
            self.audits.append(job.id, job.action, status, details)
        except AuditWriteFailure as e:
            logger.error(f"AUDIT GAP job={job.id} action={job.action} status={status.value}: {e}")

    def run(self, job: Job) -> ExecutionResult:
        self._audit(job, AuditStatus.started, _params_details(job.params))
        logger.info(f"Job {job.id} started: {job.action}")
        try:
            invocation = self.catalog.build(job.action, job.params)
            handle = self.sessions.acquire(job.credentials)
            started_at = utcnow_iso()
            t0 = time.monotonic()
            output = self.sessions.execute(handle, invocation.command, job_id=job.id, display=invocation.display)
            duration_ms = int((time.monotonic() - t0) * 1000)
        except Exception as e:
            self._audit(job, AuditStatus.failed, f"{type(e).__name__}: {e}")
            logger.warning(f"Job {job.id} failed: {type(e).__name__}: {e}")
            raise

        result = ExecutionResult(
            output=output,
            started_at=started_at,
            finished_at=utcnow_iso(),
            duration_ms=duration_ms,
            data=_decode_json(output) if invocation.json_output else None,
        )
        self._audit(job, AuditStatus.completed, result.summary())
        logger.info(f"Job {job.id} completed in {duration_ms} ms")
        return result
