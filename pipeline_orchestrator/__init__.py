"""Pipeline Orchestrator - dependency-ordered job scheduling for CI/CD pipelines."""

__version__ = "0.1.0"

from .cancellation import CancellationCoordinator
from .config import ErrorPolicy, OrchestratorConfig, RetryPolicy, load_config
from .context import RunContext
from .errors import (
    ConfigError,
    CycleDetected,
    DefinitionError,
    DuplicateJob,
    InvalidTransition,
    OrchestratorError,
    PipelineFileError,
    UnknownDependency,
)
from .graph import DependencyGraph, build_graph
from .loader import load_pipeline
from .models import (
    Attempt,
    ContainerCommand,
    HttpCommand,
    JobDescriptor,
    JobStatus,
    Outcome,
    RunResult,
    RunState,
    RunStatus,
    ShellCommand,
)
from .orchestrator import PipelineOrchestrator
from .retry import RetryController
from .scheduler import Scheduler
from .state import RunStateTracker, TransitionEvent
from .store import JobDescriptorStore
from .workers import WorkerHandle, WorkerPool

__all__ = [
    "__version__",
    "Attempt",
    "CancellationCoordinator",
    "ConfigError",
    "ContainerCommand",
    "CycleDetected",
    "DefinitionError",
    "DependencyGraph",
    "DuplicateJob",
    "ErrorPolicy",
    "HttpCommand",
    "InvalidTransition",
    "JobDescriptor",
    "JobDescriptorStore",
    "JobStatus",
    "OrchestratorConfig",
    "OrchestratorError",
    "Outcome",
    "PipelineFileError",
    "PipelineOrchestrator",
    "RetryController",
    "RetryPolicy",
    "RunContext",
    "RunResult",
    "RunState",
    "RunStateTracker",
    "RunStatus",
    "Scheduler",
    "ShellCommand",
    "TransitionEvent",
    "UnknownDependency",
    "WorkerHandle",
    "WorkerPool",
    "build_graph",
    "load_config",
    "load_pipeline",
]
