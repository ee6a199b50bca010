"""Engine wiring: the one place that owns the session, the audit store and the
dispatch strategy. The HTTP layer receives an ``Engine`` and never looks
anything up globally."""
from __future__ import annotations
from typing import Callable, Optional

from .actions import ActionCatalog
from .adapter import ShellTransport, powershell_factory
from .broker import JobBroker, probe_broker
from .dispatch import DispatchRouter, InlineDispatch, QueuedDispatch
from .executor import JobExecutor
from .logging_config import logger
from .session import SessionManager
from .storage import AuditStore
from .worker import Worker


class Engine:
    def __init__(
        self,
        settings,
        audits: AuditStore,
        sessions: SessionManager,
        executor: JobExecutor,
        broker_probe: Callable[[], Optional[JobBroker]] | None = None,
    ):
        self.settings = settings
        self.audits = audits
        self.sessions = sessions
        self.executor = executor
        self.broker_probe = broker_probe or (lambda: probe_broker(settings))
        self.broker: JobBroker | None = None
        self.worker: Worker | None = None
        self.queue_available = False
        self.router = DispatchRouter(InlineDispatch(executor))
        self.started = False

    def start(self) -> None:
        """Probe queue infrastructure once and pick the dispatch strategy for good."""
        if self.started:
            return
        self.started = True
        broker = self.broker_probe()
        if broker is not None:
            worker = Worker(broker, self.executor, poll_seconds=self.settings.WORKER_POLL_SECONDS)
            if worker.start():
                self.broker, self.worker = broker, worker
                self.queue_available = True
                self.router = DispatchRouter(QueuedDispatch(broker))
            else:
                broker.close()
        logger.info(f"Dispatch mode: {self.router.mode}")

    def stop(self) -> None:
        if self.worker is not None:
            self.worker.stop()
        if self.broker is not None:
            self.broker.close()
        self.sessions.close()
        self.audits.close()
        self.started = False


def build_engine(
    settings,
    transport_factory: Callable[[], ShellTransport] | None = None,
    catalog: ActionCatalog | None = None,
    broker_probe: Callable[[], Optional[JobBroker]] | None = None,
) -> Engine:
    audits = AuditStore(settings.AUDIT_DB_PATH)
    sessions = SessionManager(
        transport_factory or powershell_factory(settings),
        connect_retries=settings.SESSION_CONNECT_RETRIES,
        retry_delay=settings.SESSION_RETRY_DELAY_SECONDS,
        command_timeout=settings.COMMAND_TIMEOUT_SECONDS,
        max_output_chars=settings.LIVE_OUTPUT_MAX_CHARS,
    )
    executor = JobExecutor(sessions, audits, catalog)
    return Engine(settings, audits, sessions, executor, broker_probe=broker_probe)
