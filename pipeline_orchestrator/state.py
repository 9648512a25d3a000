"""
Run State Tracker: the authoritative job -> status mapping for one run.

Every mutation goes through `transition`, which consults the transition table
below and is serialized per job (one lock per entry, no global lock).
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from .errors import InvalidTransition, OrchestratorError
from .models import Attempt, JobStatus, Outcome, RunState

logger = structlog.get_logger(__name__)


class TransitionEvent(str, Enum):
    PROMOTE = "promote"      # all dependencies succeeded
    SKIP = "skip"            # a dependency failed, was skipped or cancelled
    DISPATCH = "dispatch"    # handed to a worker
    SUCCEED = "succeed"
    RETRY = "retry"          # failed with retries remaining
    FAIL = "fail"            # failed with retries exhausted
    CANCEL = "cancel"


S, E = JobStatus, TransitionEvent

TRANSITIONS: Dict[tuple, JobStatus] = {
    (S.PENDING, E.PROMOTE): S.READY,
    (S.PENDING, E.SKIP): S.SKIPPED,
    (S.READY, E.DISPATCH): S.RUNNING,
    (S.RUNNING, E.SUCCEED): S.SUCCEEDED,
    (S.RUNNING, E.RETRY): S.READY,
    (S.RUNNING, E.FAIL): S.FAILED,
    (S.RUNNING, E.CANCEL): S.CANCELLED,
    (S.READY, E.CANCEL): S.CANCELLED,
    (S.PENDING, E.CANCEL): S.CANCELLED,
}

Listener = Callable[[str, JobStatus, JobStatus], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Entry:
    job_id: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    reason: Optional[str] = None
    history: List[Attempt] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def freeze(self) -> RunState:
        return RunState(
            job_id=self.job_id,
            status=self.status,
            attempts=self.attempts,
            queued_at=self.queued_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            last_error=self.last_error,
            reason=self.reason,
            history=tuple(self.history),
        )


class RunStateTracker:
    def __init__(self, job_ids: Iterable[str]):
        self._entries: Dict[str, _Entry] = {jid: _Entry(jid) for jid in sorted(job_ids)}
        self._listeners: List[Listener] = []

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._entries

    def _entry(self, job_id: str) -> _Entry:
        try:
            return self._entries[job_id]
        except KeyError:
            raise OrchestratorError(f"Unknown job {job_id!r}") from None

    def transition(
        self,
        job_id: str,
        event: TransitionEvent,
        *,
        outcome: Optional[Outcome] = None,
        reason: Optional[str] = None,
    ) -> JobStatus:
        """
        Apply `event` to the job and return its new status.

        Raises InvalidTransition (leaving the entry untouched) when the event is
        not allowed from the job's current status.
        """
        entry = self._entry(job_id)
        with entry.lock:
            old = entry.status
            new = TRANSITIONS.get((old, event))
            if new is None:
                raise InvalidTransition(job_id, old.value, event.value)

            now = _now()
            if event is E.PROMOTE:
                entry.queued_at = now
            elif event is E.DISPATCH:
                entry.attempts += 1
                entry.started_at = now
                entry.history.append(Attempt(number=entry.attempts, started_at=now))
            elif old is S.RUNNING and entry.history:
                entry.history[-1] = replace(entry.history[-1], finished_at=now, outcome=outcome)

            if outcome is not None and not outcome.ok:
                entry.last_error = outcome.reason
            if reason is not None:
                entry.reason = reason
            if new.terminal:
                entry.finished_at = now
            entry.status = new

        for listener in list(self._listeners):
            try:
                listener(job_id, old, new)
            except Exception:
                logger.exception("state.listener_error", job_id=job_id)
        return new

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call `listener(job_id, old, new)` after every accepted transition."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ----------------------------------------------------------------
    # Read side
    # ----------------------------------------------------------------

    def status(self, job_id: str) -> JobStatus:
        return self._entry(job_id).status

    def get(self, job_id: str) -> RunState:
        entry = self._entry(job_id)
        with entry.lock:
            return entry.freeze()

    def ids_in(self, *statuses: JobStatus) -> List[str]:
        """Ids of jobs currently in any of `statuses`, ascending."""
        wanted = set(statuses)
        return [jid for jid, e in self._entries.items() if e.status in wanted]

    def all_terminal(self) -> bool:
        return all(e.status.terminal for e in self._entries.values())

    def snapshot(self) -> Dict[str, RunState]:
        result: Dict[str, RunState] = {}
        for jid, entry in self._entries.items():
            with entry.lock:
                result[jid] = entry.freeze()
        return result
