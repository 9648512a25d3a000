"""
Error hierarchy for the orchestration engine.

- DefinitionError: the pipeline cannot run at all (raised before any job starts)
- InvalidTransition: a state change the job state machine does not allow
- ConfigError: orchestrator configuration could not be loaded

Job execution failures are not exceptions; workers report them as Outcome values.
"""
from __future__ import annotations

from typing import List, Optional, Sequence


class OrchestratorError(Exception):
    pass


class ConfigError(OrchestratorError):
    pass


class DefinitionError(OrchestratorError):
    pass


class DuplicateJob(DefinitionError):
    def __init__(self, job_ids: Sequence[str]):
        self.job_ids: List[str] = sorted(job_ids)
        super().__init__(f"Duplicate job ids found: {self.job_ids}")


class UnknownDependency(DefinitionError):
    def __init__(self, dependency: str, job_id: Optional[str] = None):
        self.dependency = dependency
        self.job_id = job_id
        if job_id is None:
            msg = f"Unknown dependency {dependency!r}"
        else:
            msg = f"Job {job_id!r} depends on unknown job {dependency!r}"
        super().__init__(msg)


class CycleDetected(DefinitionError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle: List[str] = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Cycle detected in job graph: {path}")


class PipelineFileError(DefinitionError):
    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class InvalidTransition(OrchestratorError):
    def __init__(self, job_id: str, status: str, event: str):
        self.job_id = job_id
        self.status = status
        self.event = event
        super().__init__(f"Job {job_id!r}: event {event!r} not allowed from status {status!r}")
