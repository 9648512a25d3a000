"""
Pipeline definition files.

A small YAML (or JSON) format mapping job ids to descriptors:

    defaults:
      max_retries: 1
      timeout_s: 600
    jobs:
      build:
        run: make build            # shorthand for a shell command
      test:
        needs: [build]
        command:
          kind: container
          image: python:3.12
          args: [pytest, -q]
      notify:
        needs: test
        command: {kind: http, url: "https://ci.example.com/hooks/done"}

`jobs` may also be a list of mappings carrying an `id` key.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple, Union

import yaml
from pydantic import ValidationError

from .errors import PipelineFileError
from .models import JobDescriptor

DEFAULT_KEYS = frozenset({"max_retries", "timeout_s", "weight", "concurrency_label"})
SHELL_SHORTHAND_KEYS = ("cwd", "env")


def _describe(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def _job_entries(jobs: Any, source: str) -> Iterable[Tuple[Any, Dict[str, Any]]]:
    if isinstance(jobs, dict):
        for job_id, body in jobs.items():
            if body is None:
                body = {}
            if not isinstance(body, dict):
                raise PipelineFileError(source, f"job {job_id!r} must be a mapping")
            yield job_id, body
    elif isinstance(jobs, list):
        for i, body in enumerate(jobs):
            if not isinstance(body, dict) or "id" not in body:
                raise PipelineFileError(source, f"jobs[{i}] must be a mapping with an 'id'")
            yield body["id"], {k: v for k, v in body.items() if k != "id"}
    else:
        raise PipelineFileError(source, "'jobs' must be a mapping or a list")


def parse_pipeline(data: Any, source: str = "<pipeline>") -> List[JobDescriptor]:
    if not isinstance(data, dict):
        raise PipelineFileError(source, "top level must be a mapping")
    if not data.get("jobs"):
        raise PipelineFileError(source, "no jobs defined")

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise PipelineFileError(source, "'defaults' must be a mapping")
    unknown = sorted(set(defaults) - DEFAULT_KEYS)
    if unknown:
        raise PipelineFileError(source, f"unsupported keys in 'defaults': {unknown}")

    descriptors: List[JobDescriptor] = []
    for job_id, body in _job_entries(data["jobs"], source):
        fields: Dict[str, Any] = dict(defaults)
        fields.update(body)
        fields["id"] = str(job_id)

        if "run" in fields:
            if "command" in fields:
                raise PipelineFileError(source, f"job {job_id!r}: use either 'run' or 'command', not both")
            command: Dict[str, Any] = {"kind": "shell", "script": fields.pop("run")}
            for key in SHELL_SHORTHAND_KEYS:
                if key in fields:
                    command[key] = fields.pop(key)
            fields["command"] = command

        try:
            descriptors.append(JobDescriptor.model_validate(fields))
        except ValidationError as e:
            raise PipelineFileError(source, f"job {job_id!r}: {_describe(e)}") from e
    return descriptors


def load_pipeline(path: Union[str, Path]) -> List[JobDescriptor]:
    """Read a pipeline file; YAML is a superset of JSON so both are accepted."""
    path = Path(path)
    if not path.is_file():
        raise PipelineFileError(str(path), "file not found")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise PipelineFileError(str(path), f"invalid YAML syntax: {e}") from e
    return parse_pipeline(data, source=str(path))
