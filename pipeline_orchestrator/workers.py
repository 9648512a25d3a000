"""
Worker Pool: runs job attempts concurrently inside the scheduler's task group.

`execute` returns a WorkerHandle immediately. When the attempt ends, its
Outcome is stored on the handle and a JobCompleted message is sent on the
scheduler's event stream; the scheduler never awaits a worker directly.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

import anyio
import structlog
from anyio import CancelScope
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectSendStream

from .context import JobCompleted
from .executors import Executor
from .models import JobDescriptor, Outcome

logger = structlog.get_logger(__name__)


@dataclass(eq=False)
class WorkerHandle:
    job_id: str
    attempt: int
    weight: int
    label: Optional[str] = None
    timeout_s: Optional[float] = None
    outcome: Optional[Outcome] = None
    stop_requested: bool = False
    _scope: CancelScope = field(default_factory=CancelScope, repr=False)
    _done: anyio.Event = field(default_factory=anyio.Event, repr=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def stop(self) -> None:
        """Ask the attempt to stop; the executor terminates its process cooperatively."""
        if self.done:
            return
        self.stop_requested = True
        self._scope.cancel()

    async def wait(self) -> Outcome:
        await self._done.wait()
        assert self.outcome is not None
        return self.outcome


class WorkerPool:
    def __init__(
        self,
        task_group: TaskGroup,
        executors: Mapping[str, Executor],
        events: MemoryObjectSendStream,
        *,
        run_id: str,
    ):
        self._tg = task_group
        self._executors = dict(executors)
        self._events = events
        self.run_id = run_id
        self._in_flight: Dict[str, WorkerHandle] = {}

    @property
    def in_flight(self) -> Dict[str, WorkerHandle]:
        return dict(self._in_flight)

    def used_capacity(self) -> int:
        return sum(h.weight for h in self._in_flight.values())

    def label_in_use(self, label: str) -> int:
        return sum(1 for h in self._in_flight.values() if h.label == label)

    def handle_for(self, job_id: str) -> Optional[WorkerHandle]:
        return self._in_flight.get(job_id)

    def execute(
        self,
        job: JobDescriptor,
        attempt: int,
        timeout: Optional[float],
        *,
        weight: Optional[int] = None,
    ) -> WorkerHandle:
        if job.id in self._in_flight:
            raise RuntimeError(f"Job {job.id!r} already has an attempt in flight")
        handle = WorkerHandle(
            job_id=job.id,
            attempt=attempt,
            weight=weight if weight is not None else job.weight,
            label=job.concurrency_label,
            timeout_s=timeout,
        )
        self._in_flight[job.id] = handle
        self._tg.start_soon(self._run, job, handle, name=f"job:{job.id}#{attempt}")
        return handle

    def stop_all(self) -> None:
        for handle in list(self._in_flight.values()):
            handle.stop()

    async def _run(self, job: JobDescriptor, handle: WorkerHandle) -> None:
        executor = self._executors.get(job.command.kind)
        outcome: Optional[Outcome] = None
        logger.info("job.start", run_id=self.run_id, job_id=job.id, attempt=handle.attempt)
        try:
            with handle._scope as scope:
                if handle.timeout_s is not None:
                    scope.deadline = anyio.current_time() + handle.timeout_s
                if executor is None:
                    outcome = Outcome.failure(f"no executor registered for command kind {job.command.kind!r}")
                else:
                    try:
                        outcome = await executor.execute(job, handle.attempt, run_id=self.run_id)
                    except Exception as e:
                        logger.warning("job.executor_error", job_id=job.id, attempt=handle.attempt, error=repr(e))
                        outcome = Outcome.failure(f"{type(e).__name__}: {e}")
        finally:
            if self._in_flight.get(job.id) is handle:
                del self._in_flight[job.id]

        if outcome is None:
            if handle.stop_requested:
                outcome = Outcome.failure("stopped: cancellation requested")
            else:
                outcome = Outcome.timed_out(handle.timeout_s or 0.0)

        handle.outcome = outcome
        handle._done.set()
        logger.info(
            "job.finish",
            run_id=self.run_id,
            job_id=job.id,
            attempt=handle.attempt,
            outcome=outcome.kind.value,
            reason=outcome.reason,
        )
        try:
            self._events.send_nowait(JobCompleted(job.id, handle.attempt, outcome))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("job.report_dropped", job_id=job.id, attempt=handle.attempt)
