"""Single persistent session to the remote shell.

The manager owns at most one transport and admits one command at a time,
in FIFO order. ``peek`` and ``reset`` never wait for the command holder:
live output and state live behind a separate short-lived lock that is never
held across remote I/O.
"""
from __future__ import annotations
import threading
import time
from typing import Callable, Optional

from .adapter import ShellTransport
from .errors import (
    RemoteCommandError,
    RemoteExecutionError,
    SessionResetError,
    SessionUnavailable,
    TransportError,
)
from .logging_config import logger
from .models import Credentials, LiveOutput, LiveStatus, SessionState, utcnow_iso

# remote error text that means the connection itself is gone
CONNECTION_ERROR_PATTERNS: tuple[str, ...] = (
    "session is not valid",
    "session has expired",
    "session is closed",
    "not connected",
    "connect-exchangeonline",
    "token has expired",
    "access token is expired",
    "the pipeline has been stopped",
    "runspace",
    "connection was closed",
    "remote server returned an error: (401)",
)


def classify_remote_error(message: str) -> bool:
    """True when an error reported by the shell indicates a dead connection."""
    text = (message or "").lower()
    return any(pattern in text for pattern in CONNECTION_ERROR_PATTERNS)


class SessionHandle:
    """Proof of exclusive access, valid until released or abandoned by reset."""

    def __init__(self, ticket: int, generation: int, transport: ShellTransport):
        self.ticket = ticket
        self.generation = generation
        self.transport = transport
        self.released = False
        self.abandoned = False


class SessionManager:
    def __init__(
        self,
        transport_factory: Callable[[], ShellTransport],
        connect_retries: int = 3,
        retry_delay: float = 2.0,
        command_timeout: float | None = 600.0,
        max_output_chars: int = 65536,
    ):
        self.transport_factory = transport_factory
        self.connect_retries = max(1, connect_retries)
        self.retry_delay = retry_delay
        self.command_timeout = command_timeout
        self.max_output_chars = max_output_chars

        # handle admission: ticket lock, FIFO by arrival
        self._turn = threading.Condition()
        self._next_ticket = 0
        self._serving = 0
        self._holder: SessionHandle | None = None

        # state, transport and live output; never held during remote calls
        self._state_lock = threading.Lock()
        self._state = SessionState.absent
        self._transport: ShellTransport | None = None
        self._identity: tuple[str | None, str | None] | None = None
        self._generation = 0
        self._live = LiveOutput()

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self._state

    # -- admission -----------------------------------------------------------

    def _wait_turn(self) -> int:
        with self._turn:
            ticket = self._next_ticket
            self._next_ticket += 1
            while self._serving != ticket:
                self._turn.wait()
            return ticket

    def _release(self, handle: SessionHandle) -> None:
        with self._turn:
            if handle.released:
                return
            handle.released = True
            if handle.abandoned:
                # reset already advanced the line past this holder
                return
            if self._holder is handle:
                self._holder = None
            self._serving += 1
            self._turn.notify_all()

    def _pass_turn(self, ticket: int) -> None:
        """Give up a turn that never became a handle (connect failure)."""
        with self._turn:
            if self._serving == ticket and self._holder is None:
                self._serving += 1
                self._turn.notify_all()

    def acquire(self, credentials: Optional[Credentials] = None) -> SessionHandle:
        """Block until it is this caller's turn, connecting first if needed."""
        ticket = self._wait_turn()
        try:
            transport, generation = self._ensure_connected(credentials)
        except BaseException:
            self._pass_turn(ticket)
            raise
        handle = SessionHandle(ticket, generation, transport)
        with self._turn:
            if self._serving != ticket:
                # reset() ran while connecting and moved the line on
                handle.abandoned = True
            else:
                self._holder = handle
        if handle.abandoned:
            handle.released = True
            raise SessionUnavailable("Session was reset while connecting")
        return handle

    def _ensure_connected(self, credentials: Optional[Credentials]) -> tuple[ShellTransport, int]:
        wanted = credentials.identity() if credentials is not None and any(credentials.identity()) else None
        with self._state_lock:
            reusable = (
                self._state == SessionState.ready
                and self._transport is not None
                and self._transport.alive
                and (wanted is None or wanted == self._identity)
            )
            if reusable:
                return self._transport, self._generation
            stale = self._transport
            self._transport = None
            self._state = SessionState.connecting
            generation = self._generation

        if stale is not None:
            logger.info("Replacing existing session before reconnect")
            self._close_quietly(stale)

        last_error: Exception | None = None
        for attempt in range(1, self.connect_retries + 1):
            transport = self.transport_factory()
            try:
                transport.connect(credentials)
            except (TransportError, OSError) as e:
                last_error = e
                logger.warning(f"Session connect attempt {attempt}/{self.connect_retries} failed: {e}")
                self._close_quietly(transport)
                if attempt < self.connect_retries and self.retry_delay > 0:
                    time.sleep(self.retry_delay)
                continue
            with self._state_lock:
                orphaned = self._generation != generation
                if not orphaned:
                    self._transport = transport
                    self._identity = wanted if wanted is not None else (None, None)
                    self._state = SessionState.ready
            if orphaned:
                # reset happened meanwhile; this connection belongs to nobody
                self._close_quietly(transport)
                raise SessionUnavailable("Session was reset while connecting")
            logger.info(f"Session ready (attempt {attempt})")
            return transport, generation

        with self._state_lock:
            if self._generation == generation:
                self._state = SessionState.broken
        raise SessionUnavailable(
            f"Could not establish session after {self.connect_retries} attempts: {last_error}"
        )

    # -- execution -----------------------------------------------------------

    def execute(
        self,
        handle: SessionHandle,
        command: str,
        job_id: str | None = None,
        display: str | None = None,
    ) -> str:
        """Run one command on the held session, streaming output into the live buffer."""
        if handle.released:
            raise RemoteExecutionError("Session handle already released")
        try:
            with self._state_lock:
                if handle.generation == self._generation:
                    self._state = SessionState.busy
                    now = utcnow_iso()
                    self._live = LiveOutput(
                        status=LiveStatus.running,
                        job_id=job_id,
                        command=display or command,
                        output="",
                        started_at=now,
                        updated_at=now,
                    )

            def on_output(chunk: str) -> None:
                with self._state_lock:
                    if handle.generation != self._generation:
                        return
                    out = self._live.output + chunk
                    if len(out) > self.max_output_chars:
                        out = out[-self.max_output_chars:]
                    self._live.output = out
                    self._live.updated_at = utcnow_iso()

            try:
                output = handle.transport.run(command, on_output=on_output, timeout=self.command_timeout)
            except TransportError as e:
                self._finish(handle, LiveStatus.failed, broken=True)
                self._raise_if_reset(handle)
                raise RemoteExecutionError(f"Transport failure: {e}", connection_level=True) from e
            except RemoteCommandError as e:
                connection_level = classify_remote_error(str(e))
                self._finish(handle, LiveStatus.failed, broken=connection_level)
                self._raise_if_reset(handle)
                raise RemoteExecutionError(str(e), connection_level=connection_level) from e
            except Exception as e:
                # unknown transport behaviour: do not trust the connection any more
                self._finish(handle, LiveStatus.failed, broken=True)
                self._raise_if_reset(handle)
                raise RemoteExecutionError(f"Unexpected transport error: {e}", connection_level=True) from e

            self._finish(handle, LiveStatus.finished, broken=False)
            self._raise_if_reset(handle)
            return output
        finally:
            self._release(handle)

    def _finish(self, handle: SessionHandle, status: LiveStatus, broken: bool) -> None:
        stale = None
        with self._state_lock:
            if handle.generation != self._generation:
                return
            self._live.status = status
            self._live.updated_at = utcnow_iso()
            if broken:
                self._state = SessionState.broken
                stale, self._transport = self._transport, None
            else:
                self._state = SessionState.ready
        if stale is not None:
            logger.warning("Session marked broken after connection-level failure")
            self._close_quietly(stale)

    def _raise_if_reset(self, handle: SessionHandle) -> None:
        if handle.abandoned or handle.generation != self._generation:
            raise SessionResetError()

    # -- observers and escape hatch -------------------------------------------

    def peek(self) -> dict:
        """Snapshot of the live output; never waits for a running command."""
        with self._state_lock:
            snap = self._live.snapshot()
            snap["session_state"] = self._state.value
        return snap

    def reset(self) -> None:
        """Abandon the current session immediately, whatever it is doing."""
        with self._state_lock:
            self._generation += 1
            stale, self._transport = self._transport, None
            self._state = SessionState.absent
            self._identity = None
            self._live = LiveOutput()
        with self._turn:
            holder = self._holder
            if holder is not None:
                holder.abandoned = True
                self._holder = None
                self._serving += 1
                self._turn.notify_all()
        logger.warning(f"Session reset (in-flight command abandoned: {holder is not None})")
        if stale is not None:
            threading.Thread(target=self._close_quietly, args=(stale,), daemon=True).start()

    def close(self) -> None:
        with self._state_lock:
            stale, self._transport = self._transport, None
            self._state = SessionState.absent
        if stale is not None:
            self._close_quietly(stale)

    @staticmethod
    def _close_quietly(transport: ShellTransport) -> None:
        try:
            transport.close()
        except Exception as e:
            logger.warning(f"Error while closing shell transport: {e}")
