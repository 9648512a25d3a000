"""
Scheduler: the per-run control loop.

One task per run consumes JobCompleted / Wakeup messages from a memory-object
stream and reacts to each by promoting, skipping, retrying or dispatching jobs.
Workers run as sibling tasks and report back over the same stream, so the loop
never awaits a worker directly.
"""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

import anyio
import structlog
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream

from .cancellation import CancellationCoordinator
from .config import ErrorPolicy
from .context import JobCompleted, RunContext, SchedulerEvent, Wakeup
from .errors import InvalidTransition, OrchestratorError
from .executors import Executor
from .models import JobDescriptor, JobStatus, RunResult, RunState, RunStatus
from .retry import RetryController
from .state import TransitionEvent
from .workers import WorkerPool

logger = structlog.get_logger(__name__)


def run_status(states: Mapping[str, RunState]) -> RunStatus:
    statuses = {s.status for s in states.values()}
    if JobStatus.FAILED in statuses:
        return RunStatus.FAILED
    if JobStatus.CANCELLED in statuses:
        return RunStatus.CANCELLED
    return RunStatus.SUCCEEDED


class Scheduler:
    def __init__(
        self,
        executors: Mapping[str, Executor],
        retry: Optional[RetryController] = None,
        coordinator: Optional[CancellationCoordinator] = None,
    ):
        self.executors = dict(executors)
        self.retry = retry or RetryController()
        self.coordinator = coordinator or CancellationCoordinator()

    async def dispatch(self, ctx: RunContext, max_concurrency: Optional[int] = None) -> RunResult:
        """Drive every job of `ctx` to a terminal status and return the run result."""
        limit = max_concurrency if max_concurrency is not None else ctx.config.max_concurrency
        if limit < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {limit}")

        started_at = datetime.now(timezone.utc)
        send, receive = anyio.create_memory_object_stream(math.inf)
        self.coordinator.register(ctx)
        logger.info("run.start", run_id=ctx.run_id, jobs=len(ctx.store), max_concurrency=limit)
        try:
            async with send, receive:
                async with anyio.create_task_group() as workers:
                    pool = WorkerPool(workers, self.executors, send, run_id=ctx.run_id)
                    ctx.worker_pool = pool
                    ctx.events = send
                    await _RunLoop(self, ctx, pool, receive, limit).run()
        finally:
            self.coordinator.unregister(ctx.run_id)
            ctx.events = None
            ctx.worker_pool = None

        states = ctx.tracker.snapshot()
        result = RunResult(
            run_id=ctx.run_id,
            status=run_status(states),
            states=states,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            cancel_reason=ctx.cancel_reason,
            dispatch_order=list(ctx.dispatch_order),
        )
        logger.info(
            "run.finish",
            run_id=ctx.run_id,
            status=result.status.value,
            cancel_reason=result.cancel_reason,
        )
        return result


class _RunLoop:
    def __init__(
        self,
        scheduler: Scheduler,
        ctx: RunContext,
        pool: WorkerPool,
        receive: MemoryObjectReceiveStream,
        limit: int,
    ):
        self.scheduler = scheduler
        self.ctx = ctx
        self.pool = pool
        self.receive = receive
        self.limit = limit
        # Jobs that are Ready but still waiting out a retry backoff
        self.backoff: Dict[str, float] = {}
        self._timers: Optional[TaskGroup] = None

    @property
    def tracker(self):
        return self.ctx.tracker

    async def run(self) -> None:
        async with anyio.create_task_group() as timers:
            self._timers = timers
            for job_id in self.ctx.graph.roots():
                if self.tracker.status(job_id) is JobStatus.PENDING:
                    self._apply(job_id, TransitionEvent.PROMOTE)
            self._pump()

            while not self.tracker.all_terminal():
                self._check_stalled()
                event = await self.receive.receive()
                self._handle(event)
                self._pump()

            timers.cancel_scope.cancel()

        await self._drain()

    async def _drain(self) -> None:
        """Consume the reports of attempts still winding down after the run ended."""
        while self.pool.in_flight or self.receive.statistics().current_buffer_used:
            self._handle(await self.receive.receive())

    def _check_stalled(self) -> None:
        if self.pool.in_flight or self.backoff:
            return
        if self.receive.statistics().current_buffer_used:
            return
        waiting = self.tracker.ids_in(JobStatus.PENDING, JobStatus.READY)
        raise OrchestratorError(f"Run {self.ctx.run_id} stalled with jobs waiting: {waiting}")

    # ----------------------------------------------------------------
    # Event handling
    # ----------------------------------------------------------------

    def _handle(self, event: SchedulerEvent) -> None:
        if isinstance(event, JobCompleted):
            self._on_completed(event)
        elif isinstance(event, Wakeup):
            logger.debug("scheduler.wakeup", run_id=self.ctx.run_id, reason=event.reason)

    def _on_completed(self, event: JobCompleted) -> None:
        job = self.ctx.store[event.job_id]
        outcome = event.outcome
        log = logger.bind(run_id=self.ctx.run_id, job_id=job.id, attempt=event.attempt)
        try:
            if outcome.ok:
                self.tracker.transition(job.id, TransitionEvent.SUCCEED, outcome=outcome)
                log.info("job.succeeded")
                self._promote_successors(job.id)
                return

            retry = self.scheduler.retry
            if retry.should_retry(job.id, event.attempt - 1, job.max_retries):
                self.tracker.transition(job.id, TransitionEvent.RETRY, outcome=outcome)
                delay = retry.next_delay(event.attempt - 1)
                log.warning("job.retry", reason=outcome.reason, delay_s=round(delay, 3))
                self._schedule_wakeup(job.id, delay)
                return

            self.tracker.transition(job.id, TransitionEvent.FAIL, outcome=outcome)
            log.error("job.failed", reason=outcome.reason)
        except InvalidTransition as e:
            log.warning("transition.rejected", error=str(e))
            return

        self._skip_descendants(job.id, JobStatus.FAILED)
        if self.ctx.config.error_policy == ErrorPolicy.FAIL_FAST:
            self.scheduler.coordinator.cancel(self.ctx.run_id, f"fail-fast: job {job.id!r} failed")

    def _apply(self, job_id: str, event: TransitionEvent, reason: Optional[str] = None) -> None:
        try:
            self.tracker.transition(job_id, event, reason=reason)
        except InvalidTransition as e:
            logger.warning("transition.rejected", run_id=self.ctx.run_id, job_id=job_id, error=str(e))

    def _promote_successors(self, job_id: str) -> None:
        graph = self.ctx.graph
        for succ in graph.successors(job_id):
            if self.tracker.status(succ) is not JobStatus.PENDING:
                continue
            if all(self.tracker.status(p) is JobStatus.SUCCEEDED for p in graph.predecessors(succ)):
                self._apply(succ, TransitionEvent.PROMOTE)

    def _skip_descendants(self, job_id: str, status: JobStatus) -> None:
        reason = f"dependency {job_id!r} {status.value}"
        for desc in self.ctx.graph.descendants(job_id):
            if not self.tracker.status(desc).terminal:
                self._apply(desc, TransitionEvent.SKIP, reason=reason)
                logger.info("job.skipped", run_id=self.ctx.run_id, job_id=desc, reason=reason)

    def _schedule_wakeup(self, job_id: str, delay: float) -> None:
        self.backoff[job_id] = anyio.current_time() + delay
        assert self._timers is not None
        self._timers.start_soon(self._backoff_elapsed, job_id, delay)

    async def _backoff_elapsed(self, job_id: str, delay: float) -> None:
        await anyio.sleep(delay)
        self.backoff.pop(job_id, None)
        self.ctx.wake(f"backoff elapsed for {job_id}")

    # ----------------------------------------------------------------
    # Dispatch
    # ----------------------------------------------------------------

    def _pump(self) -> None:
        """Start Ready jobs, lowest id first, while capacity allows."""
        if self.ctx.cancel_requested:
            return
        limits = self.ctx.config.per_label_limits
        for job_id in self.tracker.ids_in(JobStatus.READY):
            if job_id in self.backoff:
                continue
            job = self.ctx.store[job_id]
            label = job.concurrency_label
            if label is not None and label in limits and self.pool.label_in_use(label) >= limits[label]:
                continue
            weight = min(job.weight, self.limit)
            if self.pool.used_capacity() + weight > self.limit:
                break
            self._start(job, weight)

    def _start(self, job: JobDescriptor, weight: int) -> None:
        self.tracker.transition(job.id, TransitionEvent.DISPATCH)
        attempt = self.tracker.get(job.id).attempts
        timeout = job.timeout_s if job.timeout_s is not None else self.ctx.config.default_timeout_s
        self.ctx.dispatch_order.append(job.id)
        logger.info(
            "job.dispatch",
            run_id=self.ctx.run_id,
            job_id=job.id,
            attempt=attempt,
            weight=weight,
            timeout_s=timeout,
        )
        self.pool.execute(job, attempt, timeout, weight=weight)
