"""
PipelineOrchestrator: wires the store, graph, tracker, scheduler and
coordinator together for callers (CLI, web API, embedding applications).

    orch = PipelineOrchestrator(OrchestratorConfig(max_concurrency=2))
    result = await orch.run([
        JobDescriptor(id="build", command=ShellCommand(script="make")),
        JobDescriptor(id="test", command=ShellCommand(script="make test"), needs=["build"]),
    ])
"""
from __future__ import annotations

import random
from collections import OrderedDict
from typing import Dict, Iterable, List, Mapping, Optional

import structlog

from .cancellation import CancellationCoordinator
from .config import OrchestratorConfig
from .context import RunContext
from .executors import Executor, default_executors
from .graph import build_graph
from .models import JobDescriptor, RunResult, RunState
from .retry import RetryController
from .scheduler import Scheduler
from .state import RunStateTracker
from .store import JobDescriptorStore

logger = structlog.get_logger(__name__)


class PipelineOrchestrator:
    def __init__(
        self,
        cfg: Optional[OrchestratorConfig] = None,
        executors: Optional[Mapping[str, Executor]] = None,
        *,
        rng: Optional[random.Random] = None,
        keep_results: int = 100,
    ):
        self.cfg = cfg or OrchestratorConfig()
        self.executors: Dict[str, Executor] = dict(executors) if executors is not None else default_executors(self.cfg)
        self.coordinator = CancellationCoordinator()
        self.retry = RetryController(self.cfg.retry, rng=rng)
        self.scheduler = Scheduler(self.executors, self.retry, self.coordinator)
        self.keep_results = keep_results
        self._pending: Dict[str, RunContext] = {}
        self._results: "OrderedDict[str, RunResult]" = OrderedDict()

    def prepare(self, descriptors: Iterable[JobDescriptor]) -> RunContext:
        """
        Validate the job set and build a fresh RunContext.

        Raises a DefinitionError (DuplicateJob, UnknownDependency, CycleDetected)
        before anything runs.
        """
        store = JobDescriptorStore(descriptors)
        graph = build_graph(store)
        ctx = RunContext(
            store=store,
            graph=graph,
            tracker=RunStateTracker(store.ids()),
            config=self.cfg,
        )
        self._pending[ctx.run_id] = ctx
        logger.info("run.prepared", run_id=ctx.run_id, jobs=len(store))
        return ctx

    async def execute(self, ctx: RunContext, max_concurrency: Optional[int] = None) -> RunResult:
        try:
            result = await self.scheduler.dispatch(ctx, max_concurrency)
        finally:
            self._pending.pop(ctx.run_id, None)
        self._results[result.run_id] = result
        while len(self._results) > self.keep_results:
            self._results.popitem(last=False)
        return result

    async def run(self, descriptors: Iterable[JobDescriptor], max_concurrency: Optional[int] = None) -> RunResult:
        return await self.execute(self.prepare(descriptors), max_concurrency)

    def cancel(self, run_id: str, reason: str) -> None:
        """Cancel an active or prepared run; finished or unknown ids are ignored."""
        ctx = self._pending.get(run_id)
        if ctx is not None and not ctx.active:
            self.coordinator.cancel_context(ctx, reason)
            return
        self.coordinator.cancel(run_id, reason)

    def snapshot(self, run_id: str) -> Optional[Dict[str, RunState]]:
        ctx = self._pending.get(run_id)
        if ctx is not None:
            return ctx.tracker.snapshot()
        result = self._results.get(run_id)
        return dict(result.states) if result is not None else None

    def context(self, run_id: str) -> Optional[RunContext]:
        return self._pending.get(run_id)

    def result(self, run_id: str) -> Optional[RunResult]:
        return self._results.get(run_id)

    @property
    def active_runs(self) -> List[str]:
        return sorted(self._pending)

    @property
    def results(self) -> List[RunResult]:
        return list(self._results.values())
