"""Error taxonomy of the execution engine.

Everything raised while running a job derives from ``EngineError`` so the
executor and the HTTP layer can catch one type and still report the concrete
class name in the audit trail.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for job-terminal errors."""


class SessionUnavailable(EngineError):
    """The remote session could not be (re)established within the retry budget."""


class UnknownAction(EngineError):
    def __init__(self, action: str):
        super().__init__(f"Unknown action: {action}")
        self.action = action


class InvalidParameters(EngineError):
    """Job parameters cannot be rendered into a remote invocation."""


class RemoteExecutionError(EngineError):
    """The remote surface failed an otherwise valid command.

    ``connection_level`` is True for transport/protocol failures (the session was
    marked broken) and False for domain rejections (the session is still usable).
    """

    def __init__(self, message: str, *, connection_level: bool = False):
        super().__init__(message)
        self.connection_level = connection_level


class SessionResetError(RemoteExecutionError):
    """The session was reset while the command was in flight; its result is discarded."""

    def __init__(self, message: str = "Command result discarded after session reset"):
        super().__init__(message, connection_level=True)


class AuditWriteFailure(EngineError):
    """The audit sink rejected a write. Logged, never fatal to the job."""


# transport level, raised by shell transports and translated by the session manager

class TransportError(Exception):
    """The shell process or its pipe is unusable."""


class RemoteCommandError(Exception):
    """The shell ran the command and reported an error for it."""
