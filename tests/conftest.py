"""Shared fixtures: a scripted in-memory executor and job/orchestrator factories."""
from __future__ import annotations

import random
from collections import Counter
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import anyio
import pytest
import structlog

from pipeline_orchestrator.config import OrchestratorConfig, RetryPolicy
from pipeline_orchestrator.models import JobDescriptor, Outcome, ShellCommand
from pipeline_orchestrator.orchestrator import PipelineOrchestrator


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    # The CLI binds structlog to the runner's stderr; don't leak that into later tests
    structlog.reset_defaults()


class ScriptedExecutor:
    """
    Executor stand-in for the "shell" kind.

    `script` maps a job id to the steps of its successive attempts; the last step
    repeats. Steps: "ok", "fail", "hang" (until cancelled) or "raise".
    """

    def __init__(self, script: Optional[Dict[str, Sequence[str]]] = None, delay: float = 0.0):
        self.script = {jid: list(steps) for jid, steps in (script or {}).items()}
        self.delay = delay
        self.calls: List[Tuple[str, int]] = []
        self.running = 0
        self.max_running = 0
        self.labels: Counter = Counter()
        self.max_per_label: Counter = Counter()

    def step_for(self, job_id: str, attempt: int) -> str:
        steps = self.script.get(job_id, ["ok"])
        return steps[min(attempt - 1, len(steps) - 1)]

    async def execute(self, job: JobDescriptor, attempt: int, *, run_id: str) -> Outcome:
        self.calls.append((job.id, attempt))
        label = job.concurrency_label
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        if label is not None:
            self.labels[label] += 1
            self.max_per_label[label] = max(self.max_per_label[label], self.labels[label])
        try:
            step = self.step_for(job.id, attempt)
            if step == "hang":
                await anyio.sleep_forever()
            await anyio.sleep(self.delay)
            if step == "raise":
                raise RuntimeError("boom")
            if step == "fail":
                return Outcome.failure("exit code 1", exit_code=1)
            return Outcome.success(exit_code=0)
        finally:
            self.running -= 1
            if label is not None:
                self.labels[label] -= 1

    def attempts_of(self, job_id: str) -> int:
        return sum(1 for jid, _ in self.calls if jid == job_id)


@pytest.fixture
def make_job() -> Callable[..., JobDescriptor]:
    def _make(job_id: str, needs: Sequence[str] = (), **kwargs) -> JobDescriptor:
        return JobDescriptor(id=job_id, command=ShellCommand(script="true"), needs=tuple(needs), **kwargs)

    return _make


@pytest.fixture
def make_orchestrator() -> Callable[..., PipelineOrchestrator]:
    """Build an orchestrator around a ScriptedExecutor with zero backoff."""

    def _make(executor: ScriptedExecutor, **cfg) -> PipelineOrchestrator:
        cfg.setdefault("max_concurrency", 4)
        cfg.setdefault("retry", RetryPolicy(base_delay_s=0.0, jitter=0.0))
        return PipelineOrchestrator(
            OrchestratorConfig(**cfg),
            executors={"shell": executor},
            rng=random.Random(7),
        )

    return _make


@pytest.fixture
def wait_until():
    async def _wait(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
        with anyio.fail_after(timeout):
            while not predicate():
                await anyio.sleep(0.01)

    return _wait
