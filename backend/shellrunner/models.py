from __future__ import annotations
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Optional

import orjson
from pydantic import BaseModel, Field

from .errors import InvalidParameters

SUMMARY_MAX_CHARS = 2000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    # fixed-width microsecond ISO strings sort lexicographically
    return utcnow().isoformat(timespec="microseconds")


class AuditStatus(str, Enum):
    started = "started"
    completed = "completed"
    failed = "failed"


class SessionState(str, Enum):
    absent = "absent"
    connecting = "connecting"
    ready = "ready"
    busy = "busy"
    broken = "broken"


class LiveStatus(str, Enum):
    idle = "idle"
    running = "running"
    finished = "finished"
    failed = "failed"


class Credentials(BaseModel):
    """Caller's delegated identity. Used to open the session, never stored."""
    token: Optional[str] = None
    token_type: str = "Bearer"
    organization: Optional[str] = None
    user_upn: Optional[str] = None

    def identity(self) -> tuple[str | None, str | None]:
        return (self.organization, self.user_upn)

    def __repr__(self) -> str:
        masked = "***" if self.token else None
        return f"Credentials(token={masked!r}, organization={self.organization!r}, user_upn={self.user_upn!r})"

    __str__ = __repr__


class RunRequest(BaseModel):
    action: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    credentials: Optional[Credentials] = None


class OrgConfigRequest(BaseModel):
    credentials: Optional[Credentials] = None


@dataclass
class Job:
    action: str
    params: dict = field(default_factory=dict)
    credentials: Optional[Credentials] = field(default=None, repr=False)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=utcnow_iso)

    def to_payload(self) -> bytes:
        """Queue wire format. Credentials are deliberately left out."""
        try:
            return orjson.dumps({
                "id": self.id,
                "action": self.action,
                "params": self.params,
                "created_at": self.created_at,
            })
        except TypeError as e:
            raise InvalidParameters(f"Job params cannot be queued: {e}") from e

    @classmethod
    def from_payload(cls, raw: bytes | str) -> "Job":
        data = orjson.loads(raw)
        if not isinstance(data, dict) or not data.get("id") or not data.get("action"):
            raise ValueError("job payload must be an object with id and action")
        params = data.get("params") or {}
        if not isinstance(params, dict):
            raise ValueError("job params must be an object")
        return cls(
            id=str(data["id"]),
            action=str(data["action"]),
            params=params,
            created_at=str(data.get("created_at") or utcnow_iso()),
        )


@dataclass(frozen=True)
class AuditRecord:
    job_id: str
    action: str
    status: AuditStatus
    details: str
    timestamp: str
    id: Optional[int] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class LiveOutput:
    status: LiveStatus = LiveStatus.idle
    job_id: Optional[str] = None
    command: Optional[str] = None
    output: str = ""
    started_at: Optional[str] = None
    updated_at: Optional[str] = None

    def snapshot(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class ExecutionResult:
    output: str
    started_at: str
    finished_at: str
    duration_ms: int
    data: Any = None

    def to_dict(self) -> dict:
        return asdict(self)

    def summary(self, limit: int = SUMMARY_MAX_CHARS) -> str:
        """Bounded JSON summary for the completed audit record."""
        text = self.output if len(self.output) <= limit else self.output[:limit] + "...[truncated]"
        return orjson.dumps({
            "duration_ms": self.duration_ms,
            "output_chars": len(self.output),
            "json": self.data is not None,
            "output": text,
        }).decode()
