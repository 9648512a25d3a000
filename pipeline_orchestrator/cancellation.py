from __future__ import annotations

from typing import Dict, List, Optional

import structlog

from .context import RunContext
from .errors import InvalidTransition
from .models import JobStatus, Outcome
from .state import TransitionEvent

logger = structlog.get_logger(__name__)


class CancellationCoordinator:
    """
    Tracks active runs by id and cancels them on request.

    Must be called from the event loop thread that runs the scheduler; the CLI
    signal watcher and the web API both do so.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunContext] = {}

    def register(self, ctx: RunContext) -> None:
        self._runs[ctx.run_id] = ctx

    def unregister(self, run_id: str) -> None:
        self._runs.pop(run_id, None)

    def get(self, run_id: str) -> Optional[RunContext]:
        return self._runs.get(run_id)

    @property
    def active_run_ids(self) -> List[str]:
        return sorted(self._runs)

    def cancel(self, run_id: str, reason: str) -> None:
        ctx = self._runs.get(run_id)
        if ctx is None:
            logger.info("run.cancel_ignored", run_id=run_id, reason=reason)
            return
        self.cancel_context(ctx, reason)

    def cancel_context(self, ctx: RunContext, reason: str) -> None:
        """Cancel every non-terminal job of `ctx`; only the first call has any effect."""
        if ctx.cancel_requested:
            logger.debug("run.cancel_repeated", run_id=ctx.run_id, reason=reason)
            return
        ctx.cancel_reason = reason
        logger.warning("run.cancel", run_id=ctx.run_id, reason=reason)

        pool = ctx.worker_pool
        for job_id in ctx.tracker.ids_in(JobStatus.PENDING, JobStatus.READY, JobStatus.RUNNING):
            handle = pool.handle_for(job_id) if pool is not None else None
            # Close the open attempt of a running job with the cancellation as its outcome
            outcome = None
            if ctx.tracker.status(job_id) is JobStatus.RUNNING:
                outcome = Outcome.failure(f"cancelled: {reason}")
            try:
                ctx.tracker.transition(job_id, TransitionEvent.CANCEL, outcome=outcome, reason=reason)
            except InvalidTransition:
                # Reached a terminal status in the meantime
                continue
            if handle is not None:
                handle.stop()

        ctx.wake("cancel")
