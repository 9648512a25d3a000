from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------
# Commands (opaque to the scheduler, dispatched on `kind` by the pool)
# ---------------------------------------------------------------------

class ShellCommand(BaseModel):
    """Run a script with the local shell."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["shell"] = "shell"
    script: str
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)


class ContainerCommand(BaseModel):
    """Run an image through the docker CLI."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["container"] = "container"
    image: str
    args: List[str] = Field(default_factory=list)
    workdir: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    volumes: List[str] = Field(default_factory=list)


class HttpCommand(BaseModel):
    """Submit the job to a remote API; success is decided by the response code."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["http"] = "http"
    url: str
    method: str = "POST"
    payload: Dict[str, Any] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    # None means any 2xx
    success_codes: Optional[List[int]] = None


Command = Annotated[
    Union[ShellCommand, ContainerCommand, HttpCommand],
    Field(discriminator="kind"),
]


class JobDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    command: Command
    # IDs this job depends on, in declaration order
    needs: Tuple[str, ...] = ()

    weight: int = Field(default=1, ge=1)
    concurrency_label: Optional[str] = None
    max_retries: int = Field(default=0, ge=0)
    timeout_s: Optional[float] = Field(default=None, gt=0)

    @field_validator("id")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v or v.strip() == "":
            raise ValueError("id must be non-empty")
        return v.strip()

    @field_validator("needs", mode="before")
    @classmethod
    def _ordered_set(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        seen: Dict[str, None] = {}
        for dep in v:
            seen.setdefault(dep.strip() if isinstance(dep, str) else dep, None)
        return tuple(seen)


# ---------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    reason: Optional[str] = None
    exit_code: Optional[int] = None
    output: str = ""

    @classmethod
    def success(cls, *, exit_code: Optional[int] = None, output: str = "") -> "Outcome":
        return cls(OutcomeKind.SUCCESS, exit_code=exit_code, output=output)

    @classmethod
    def failure(cls, reason: str, *, exit_code: Optional[int] = None, output: str = "") -> "Outcome":
        return cls(OutcomeKind.FAILURE, reason=reason, exit_code=exit_code, output=output)

    @classmethod
    def timed_out(cls, timeout_s: float, *, output: str = "") -> "Outcome":
        return cls(OutcomeKind.TIMED_OUT, reason=f"timed out after {timeout_s:g}s", output=output)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"kind": self.kind.value}
        if self.reason is not None:
            result["reason"] = self.reason
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        return result


@dataclass(frozen=True)
class Attempt:
    """One execution try of a job. `number` is 1-based."""
    number: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcome: Optional[Outcome] = None

    @property
    def duration_s(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "number": self.number,
            "started_at": self.started_at.isoformat(),
        }
        if self.finished_at is not None:
            result["finished_at"] = self.finished_at.isoformat()
        if self.outcome is not None:
            result["outcome"] = self.outcome.to_dict()
        return result


@dataclass(frozen=True)
class RunState:
    """Immutable view of one job's state, as returned by snapshots."""
    job_id: str
    status: JobStatus
    attempts: int = 0
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    reason: Optional[str] = None
    history: Tuple[Attempt, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "history": [a.to_dict() for a in self.history],
        }
        for name in ("queued_at", "started_at", "finished_at"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value.isoformat()
        if self.last_error is not None:
            result["last_error"] = self.last_error
        if self.reason is not None:
            result["reason"] = self.reason
        return result


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RunResult:
    run_id: str
    status: RunStatus
    states: Dict[str, RunState]
    started_at: datetime
    finished_at: datetime
    cancel_reason: Optional[str] = None
    dispatch_order: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def jobs_in(self, status: JobStatus) -> List[str]:
        return sorted(jid for jid, st in self.states.items() if st.status is status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "cancel_reason": self.cancel_reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "dispatch_order": list(self.dispatch_order),
            "jobs": {jid: st.to_dict() for jid, st in sorted(self.states.items())},
        }
