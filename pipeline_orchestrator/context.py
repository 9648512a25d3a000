from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional, Union

import anyio
from anyio.streams.memory import MemoryObjectSendStream

from .config import OrchestratorConfig
from .graph import DependencyGraph
from .models import Outcome
from .state import RunStateTracker
from .store import JobDescriptorStore

if TYPE_CHECKING:
    from .workers import WorkerPool


@dataclass(frozen=True)
class JobCompleted:
    job_id: str
    attempt: int
    outcome: Outcome


@dataclass(frozen=True)
class Wakeup:
    reason: str = ""


SchedulerEvent = Union[JobCompleted, Wakeup]


def new_run_id() -> str:
    return uuid.uuid4().hex


@dataclass
class RunContext:
    """
    Everything one pipeline run needs, passed explicitly to each component so
    several runs can share a process without sharing state.
    """
    store: JobDescriptorStore
    graph: DependencyGraph
    tracker: RunStateTracker
    config: OrchestratorConfig
    run_id: str = field(default_factory=new_run_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    cancel_reason: Optional[str] = None
    dispatch_order: List[str] = field(default_factory=list)

    # Set by the scheduler while the run is active
    worker_pool: Optional["WorkerPool"] = None
    events: Optional[MemoryObjectSendStream] = None

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_reason is not None

    @property
    def active(self) -> bool:
        return self.events is not None

    def wake(self, reason: str = "") -> None:
        """Nudge the scheduler loop so it re-evaluates the run."""
        if self.events is None:
            return
        try:
            self.events.send_nowait(Wakeup(reason))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            pass
