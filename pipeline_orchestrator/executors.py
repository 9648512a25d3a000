"""
Command executors, one per command `kind`.

An executor runs one attempt of a job and returns an Outcome. Non-zero exits,
HTTP errors and missing tools are reported as Failure outcomes; cancellation
(timeout or stop request) propagates after the child process is terminated.
"""
from __future__ import annotations

import codecs
import os
import re
import signal
import subprocess
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Union

import anyio
import httpx
import structlog
from anyio import CancelScope, move_on_after
from anyio.abc import Process
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential, wait_random

from .config import OrchestratorConfig
from .models import ContainerCommand, HttpCommand, JobDescriptor, Outcome, ShellCommand

logger = structlog.get_logger(__name__)


class Executor(Protocol):
    async def execute(self, job: JobDescriptor, attempt: int, *, run_id: str) -> Outcome:
        ...


def _tail(text: str, limit: int) -> str:
    return text[-limit:] if limit > 0 else ""


class OutputTail:
    """Keeps the last `limit` characters of a UTF-8 byte stream fed in arbitrary chunks."""

    def __init__(self, limit: int):
        self.limit = limit
        self.text = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes) -> None:
        self.text = _tail(self.text + self._decoder.decode(chunk), self.limit)

    def close(self) -> str:
        self.text = _tail(self.text + self._decoder.decode(b"", final=True), self.limit)
        return self.text


def _signal_tree(process: Process, sig: int) -> None:
    try:
        if os.name == "posix":
            os.killpg(process.pid, sig)
        elif sig == getattr(signal, "SIGKILL", None):
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        pass


async def terminate_process(process: Process, grace_s: float) -> None:
    """SIGTERM the process group, then SIGKILL it if it outlives the grace period."""
    with CancelScope(shield=True):
        if process.returncode is not None:
            return
        _signal_tree(process, signal.SIGTERM)
        with move_on_after(grace_s) as scope:
            await process.wait()
        if scope.cancelled_caught:
            logger.warning("process.kill", pid=process.pid, grace_s=grace_s)
            _signal_tree(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            await process.wait()


async def run_process(
    command: Union[str, Sequence[str]],
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    grace_s: float = 10.0,
    tail_chars: int = 4000,
) -> Outcome:
    """Run `command` (a shell string or an argv list) with stdout+stderr captured."""
    full_env = os.environ.copy()
    full_env.update(env or {})

    process = await anyio.open_process(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        cwd=cwd,
        env=full_env,
        start_new_session=(os.name == "posix"),
    )
    assert process.stdout is not None
    tail = OutputTail(tail_chars)
    try:
        async for chunk in process.stdout:
            tail.feed(chunk)
        returncode = await process.wait()
    except BaseException:
        # Cancelled by a timeout or a stop request: take the child down with us
        await terminate_process(process, grace_s)
        raise
    finally:
        with CancelScope(shield=True):
            await process.stdout.aclose()

    output = tail.close()
    if returncode == 0:
        return Outcome.success(exit_code=0, output=output)
    return Outcome.failure(f"exit code {returncode}", exit_code=returncode, output=output)


class ShellExecutor:
    def __init__(self, grace_s: float = 10.0, tail_chars: int = 4000):
        self.grace_s = grace_s
        self.tail_chars = tail_chars

    async def execute(self, job: JobDescriptor, attempt: int, *, run_id: str) -> Outcome:
        cmd = job.command
        assert isinstance(cmd, ShellCommand)
        if cmd.cwd is not None and not os.path.isdir(cmd.cwd):
            return Outcome.failure(f"working directory not found: {cmd.cwd}")
        env = dict(cmd.env)
        env.update(
            PIPELINE_RUN_ID=run_id,
            PIPELINE_JOB_ID=job.id,
            PIPELINE_ATTEMPT=str(attempt),
        )
        return await run_process(
            cmd.script, cwd=cmd.cwd, env=env, grace_s=self.grace_s, tail_chars=self.tail_chars
        )


_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]+")


class ContainerExecutor:
    def __init__(self, grace_s: float = 10.0, tail_chars: int = 4000, docker: str = "docker"):
        self.grace_s = grace_s
        self.tail_chars = tail_chars
        self.docker = docker

    @staticmethod
    def container_name(run_id: str, job_id: str, attempt: int) -> str:
        return _NAME_UNSAFE.sub("-", f"pipeline-{run_id[:8]}-{job_id}-{attempt}")

    def build_argv(self, job: JobDescriptor, name: str) -> List[str]:
        cmd = job.command
        assert isinstance(cmd, ContainerCommand)
        argv = [self.docker, "run", "--rm", "--name", name]
        for volume in cmd.volumes:
            argv += ["-v", volume]
        if cmd.workdir:
            argv += ["-w", cmd.workdir]
        for key, value in sorted(cmd.env.items()):
            argv += ["-e", f"{key}={value}"]
        argv.append(cmd.image)
        argv.extend(cmd.args)
        return argv

    async def execute(self, job: JobDescriptor, attempt: int, *, run_id: str) -> Outcome:
        name = self.container_name(run_id, job.id, attempt)
        argv = self.build_argv(job, name)
        try:
            return await run_process(argv, grace_s=self.grace_s, tail_chars=self.tail_chars)
        except FileNotFoundError:
            return Outcome.failure(f"{self.docker} not found: install Docker and ensure it is on PATH")
        except anyio.get_cancelled_exc_class():
            with CancelScope(shield=True), move_on_after(self.grace_s):
                try:
                    await anyio.run_process([self.docker, "rm", "-f", name], check=False)
                except OSError as e:
                    logger.warning("container.cleanup_failed", container=name, error=str(e))
            raise


class HttpExecutor:
    def __init__(
        self,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        request_timeout_s: float = 30.0,
        transport_attempts: int = 3,
        transport_backoff_s: float = 0.5,
        tail_chars: int = 4000,
    ):
        self._transport = transport
        self.request_timeout_s = request_timeout_s
        self.transport_attempts = transport_attempts
        self.transport_backoff_s = transport_backoff_s
        self.tail_chars = tail_chars

    async def execute(self, job: JobDescriptor, attempt: int, *, run_id: str) -> Outcome:
        cmd = job.command
        assert isinstance(cmd, HttpCommand)
        headers = {
            "X-Pipeline-Run": run_id,
            "X-Pipeline-Job": job.id,
            "X-Pipeline-Attempt": str(attempt),
            **cmd.headers,
        }

        retryer = AsyncRetrying(
            stop=stop_after_attempt(self.transport_attempts),
            wait=wait_exponential(multiplier=self.transport_backoff_s, max=8.0)
            + wait_random(0, self.transport_backoff_s),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        async with httpx.AsyncClient(transport=self._transport, timeout=self.request_timeout_s) as client:
            try:
                async for try_ in retryer:
                    with try_:
                        response = await client.request(
                            cmd.method,
                            cmd.url,
                            json=cmd.payload if cmd.payload else None,
                            headers=headers,
                        )
            except httpx.TransportError as e:
                return Outcome.failure(f"transport error: {e!r}")

        body = _tail(response.text, self.tail_chars)
        if cmd.success_codes is not None:
            ok = response.status_code in cmd.success_codes
        else:
            ok = response.is_success
        if ok:
            return Outcome.success(exit_code=response.status_code, output=body)
        return Outcome.failure(
            f"HTTP {response.status_code} {response.reason_phrase}",
            exit_code=response.status_code,
            output=body,
        )


def default_executors(cfg: Optional[OrchestratorConfig] = None) -> Dict[str, Executor]:
    cfg = cfg or OrchestratorConfig()
    return {
        "shell": ShellExecutor(grace_s=cfg.termination_grace_s, tail_chars=cfg.output_tail_chars),
        "container": ContainerExecutor(grace_s=cfg.termination_grace_s, tail_chars=cfg.output_tail_chars),
        "http": HttpExecutor(tail_chars=cfg.output_tail_chars),
    }
